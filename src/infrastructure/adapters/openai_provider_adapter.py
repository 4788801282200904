"""OpenAI chat completions adapter.

Speaks the OpenAI-compatible ``/chat/completions`` API (OpenAI, Azure-style
gateways, vLLM, LiteLLM proxies...).

Streaming format: Server-Sent Events, one ``data: {json}`` chunk per line,
terminated by ``data: [DONE]``. Tool calls arrive as fragments keyed by
``index``: the first fragment carries id and name, later ones append to
``function.arguments``.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

from application.providers import ProviderAdapter, iter_sse_data
from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import CanonicalDelta, CanonicalRequest, Message, MessageRole, ProviderCredential, ProviderRequest

logger = logging.getLogger(__name__)

# OpenAI error codes that map to something more specific than "fatal"
_ERROR_CODE_KINDS = {
    "rate_limit_exceeded": ProviderErrorKind.RATE_LIMIT,
    "insufficient_quota": ProviderErrorKind.RATE_LIMIT,
    "content_filter": ProviderErrorKind.CONTENT_POLICY,
    "content_policy_violation": ProviderErrorKind.CONTENT_POLICY,
    "invalid_api_key": ProviderErrorKind.AUTH,
    "server_error": ProviderErrorKind.TRANSIENT,
}


class OpenAiProviderAdapter(ProviderAdapter):
    """Adapter for OpenAI-compatible chat completion endpoints."""

    DEFAULT_BASE_URL = "https://api.openai.com/v1"

    @property
    def provider_type(self) -> str:
        return "openai"

    # =========================================================================
    # Request translation
    # =========================================================================

    def translate_request(self, request: CanonicalRequest, credential: ProviderCredential) -> ProviderRequest:
        stream = request.stream and credential.stream
        body: dict[str, Any] = {
            "model": request.model or credential.model,
            "messages": self._translate_messages(request),
            "stream": stream,
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
        if stream:
            body["stream_options"] = {"include_usage": True}
        body.update(request.extra)

        headers = {"Content-Type": "application/json", "Accept": "text/event-stream" if stream else "application/json"}
        secret = credential.resolve_secret()
        if secret:
            headers["Authorization"] = f"Bearer {secret}"

        base_url = (credential.base_url or self.DEFAULT_BASE_URL).rstrip("/")
        return ProviderRequest(url=f"{base_url}/chat/completions", body=body, headers=headers, stream=stream)

    def _translate_messages(self, request: CanonicalRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for message in request.messages:
            messages.extend(self._translate_message(message))
        return messages

    @staticmethod
    def _translate_message(message: Message) -> list[dict[str, Any]]:
        if message.role == MessageRole.TOOL:
            # One OpenAI "tool" message per result
            return [{"role": "tool", "tool_call_id": result.call_id, "content": result.content_as_text()} for result in message.tool_results]

        if message.role == MessageRole.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in message.tool_calls
                ]
            return [entry]

        return [{"role": message.role.value, "content": message.text}]

    # =========================================================================
    # Response parsing
    # =========================================================================

    async def parse_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[CanonicalDelta]:
        open_calls: dict[int, str] = {}  # index -> call_id
        finish_reason: str | None = None
        saw_done_marker = False

        async for data in iter_sse_data(lines):
            if data == "[DONE]":
                saw_done_marker = True
                break

            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse OpenAI chunk: {data[:200]}")
                continue

            if "error" in chunk:
                raise self._error_from_payload(chunk["error"])

            usage = chunk.get("usage")
            if usage:
                yield CanonicalDelta.usage(
                    input_tokens=usage.get("prompt_tokens", 0),
                    output_tokens=usage.get("completion_tokens", 0),
                )

            choices = chunk.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}

            content = delta.get("content")
            if content:
                yield CanonicalDelta.text(content)

            for tool_call in delta.get("tool_calls") or []:
                index = tool_call.get("index", 0)
                function = tool_call.get("function") or {}
                if index not in open_calls:
                    call_id = tool_call.get("id") or f"call_{uuid4().hex[:24]}"
                    open_calls[index] = call_id
                    yield CanonicalDelta.tool_call_start(call_id, function.get("name", ""), index)
                arguments = function.get("arguments")
                if arguments:
                    yield CanonicalDelta.tool_call_args(open_calls[index], arguments)

            if choice.get("finish_reason"):
                finish_reason = choice["finish_reason"]
                # "length" means the model was cut off, possibly mid-arguments
                truncated = finish_reason == "length"
                for index in sorted(open_calls):
                    yield CanonicalDelta.tool_call_end(open_calls[index], truncated=truncated)
                open_calls.clear()

        # Stream ended without a finish_reason: anything still open is incomplete
        for index in sorted(open_calls):
            yield CanonicalDelta.tool_call_end(open_calls[index], truncated=True)

        yield CanonicalDelta.done(finish_reason, truncated=finish_reason is None and not saw_done_marker)

    def parse_whole(self, body: dict[str, Any]) -> list[CanonicalDelta]:
        if "error" in body:
            raise self._error_from_payload(body["error"])

        deltas: list[CanonicalDelta] = []
        choices = body.get("choices") or []
        finish_reason = None
        if choices:
            choice = choices[0]
            finish_reason = choice.get("finish_reason")
            message = choice.get("message") or {}
            if message.get("content"):
                deltas.append(CanonicalDelta.text(message["content"]))
            for index, tool_call in enumerate(message.get("tool_calls") or []):
                function = tool_call.get("function") or {}
                call_id = tool_call.get("id") or f"call_{uuid4().hex[:24]}"
                deltas.append(CanonicalDelta.tool_call_start(call_id, function.get("name", ""), index))
                arguments = function.get("arguments")
                if arguments:
                    deltas.append(CanonicalDelta.tool_call_args(call_id, arguments if isinstance(arguments, str) else json.dumps(arguments)))
                deltas.append(CanonicalDelta.tool_call_end(call_id, truncated=finish_reason == "length"))

        usage = body.get("usage")
        if usage:
            deltas.append(CanonicalDelta.usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)))
        deltas.append(CanonicalDelta.done(finish_reason))
        return deltas

    @staticmethod
    def _error_from_payload(error: Any) -> ProviderError:
        if not isinstance(error, dict):
            return ProviderError(message=str(error), kind=ProviderErrorKind.FATAL)
        code = str(error.get("code") or error.get("type") or "")
        kind = _ERROR_CODE_KINDS.get(code, ProviderErrorKind.FATAL)
        return ProviderError(
            message=error.get("message", "OpenAI reported an error"),
            kind=kind,
            details={"provider_error_code": code} if code else {},
        )
