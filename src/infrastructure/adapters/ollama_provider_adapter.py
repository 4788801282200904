"""Ollama chat adapter.

Streaming format: newline-delimited JSON. Each line is a full chunk with
``message.content``; tool calls arrive whole (name + parsed arguments) and
the final chunk has ``done: true`` plus token counts.

With ``stream: false`` Ollama returns a single JSON object of the same
shape, parsed through ``parse_whole`` as a one-chunk stream.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

from application.providers import ProviderAdapter
from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import CanonicalDelta, CanonicalRequest, DeltaType, Message, MessageRole, ProviderCredential, ProviderRequest

logger = logging.getLogger(__name__)


class OllamaProviderAdapter(ProviderAdapter):
    """Adapter for the Ollama ``/api/chat`` endpoint."""

    DEFAULT_BASE_URL = "http://localhost:11434"

    @property
    def provider_type(self) -> str:
        return "ollama"

    def translate_request(self, request: CanonicalRequest, credential: ProviderCredential) -> ProviderRequest:
        stream = request.stream and credential.stream
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for message in request.messages:
            messages.extend(self._translate_message(message))

        body: dict[str, Any] = {
            "model": request.model or credential.model,
            "messages": messages,
            "stream": stream,
        }
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options:
            body["options"] = options
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {"name": tool.name, "description": tool.description, "parameters": tool.parameters},
                }
                for tool in request.tools
            ]
        body.update(request.extra)

        headers = {"Content-Type": "application/json"}
        secret = credential.resolve_secret()
        if secret:
            headers["Authorization"] = f"Bearer {secret}"

        base_url = (credential.base_url or self.DEFAULT_BASE_URL).rstrip("/")
        return ProviderRequest(url=f"{base_url}/api/chat", body=body, headers=headers, stream=stream)

    @staticmethod
    def _translate_message(message: Message) -> list[dict[str, Any]]:
        if message.role == MessageRole.TOOL:
            return [{"role": "tool", "content": result.content_as_text(), "tool_name": result.tool_name} for result in message.tool_results]

        entry: dict[str, Any] = {"role": message.role.value, "content": message.text}
        if message.role == MessageRole.ASSISTANT and message.tool_calls:
            entry["tool_calls"] = [{"function": {"name": call.name, "arguments": call.arguments}} for call in message.tool_calls]
        return [entry]

    # =========================================================================
    # Response parsing
    # =========================================================================

    async def parse_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[CanonicalDelta]:
        call_index = 0
        saw_done = False
        done_reason: str | None = None

        async for line in lines:
            if not line.strip():
                continue
            try:
                chunk = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse Ollama chunk: {line[:200]}")
                continue

            if "error" in chunk:
                raise self._error_from_payload(chunk["error"])

            for delta in self._chunk_content(chunk, call_index):
                if delta.type == DeltaType.TOOL_CALL_START:
                    call_index += 1
                yield delta

            if chunk.get("done"):
                saw_done = True
                done_reason = chunk.get("done_reason") or "stop"
                yield CanonicalDelta.usage(chunk.get("prompt_eval_count", 0), chunk.get("eval_count", 0))
                break

        yield CanonicalDelta.done(done_reason, truncated=not saw_done)

    def parse_whole(self, body: dict[str, Any]) -> list[CanonicalDelta]:
        if "error" in body:
            raise self._error_from_payload(body["error"])
        deltas = self._chunk_content(body, 0)
        deltas.append(CanonicalDelta.usage(body.get("prompt_eval_count", 0), body.get("eval_count", 0)))
        deltas.append(CanonicalDelta.done(body.get("done_reason") or "stop"))
        return deltas

    @staticmethod
    def _chunk_content(chunk: dict[str, Any], first_index: int) -> list[CanonicalDelta]:
        """Text and complete tool calls carried by one chunk."""
        deltas: list[CanonicalDelta] = []
        message = chunk.get("message") or {}
        if message.get("content"):
            deltas.append(CanonicalDelta.text(message["content"]))
        for offset, tool_call in enumerate(message.get("tool_calls") or []):
            function = tool_call.get("function") or {}
            call_id = tool_call.get("id") or f"call_{uuid4().hex[:24]}"
            arguments = function.get("arguments", {})
            deltas.append(CanonicalDelta.tool_call_start(call_id, function.get("name", ""), first_index + offset))
            deltas.append(CanonicalDelta.tool_call_args(call_id, arguments if isinstance(arguments, str) else json.dumps(arguments)))
            deltas.append(CanonicalDelta.tool_call_end(call_id))
        return deltas

    @staticmethod
    def _error_from_payload(error: Any) -> ProviderError:
        message = str(error)
        lowered = message.lower()
        if "not found" in lowered:
            kind = ProviderErrorKind.FATAL
        elif "busy" in lowered or "overloaded" in lowered:
            kind = ProviderErrorKind.RATE_LIMIT
        else:
            kind = ProviderErrorKind.TRANSIENT
        return ProviderError(message=f"Ollama error: {message}", kind=kind)
