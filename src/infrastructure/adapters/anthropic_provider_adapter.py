"""Anthropic Messages API adapter.

Streaming format: event-typed Server-Sent Events. Each ``data:`` payload
carries a ``type``:

- message_start: input token usage
- content_block_start: a text block or a tool_use block (id, name)
- content_block_delta: ``text_delta`` or ``input_json_delta`` fragments
- content_block_stop: the block at ``index`` is complete
- message_delta: stop_reason and cumulative output usage
- message_stop: end of stream
- error: provider-side failure mid-stream
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from application.providers import ProviderAdapter, iter_sse_data
from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import CanonicalDelta, CanonicalRequest, Message, MessageRole, ProviderCredential, ProviderRequest

logger = logging.getLogger(__name__)

_ERROR_TYPE_KINDS = {
    "overloaded_error": ProviderErrorKind.TRANSIENT,
    "api_error": ProviderErrorKind.TRANSIENT,
    "rate_limit_error": ProviderErrorKind.RATE_LIMIT,
    "authentication_error": ProviderErrorKind.AUTH,
    "permission_error": ProviderErrorKind.AUTH,
    "invalid_request_error": ProviderErrorKind.FATAL,
    "not_found_error": ProviderErrorKind.FATAL,
}


class AnthropicProviderAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
    DEFAULT_MAX_TOKENS = 4096

    def __init__(self, client: httpx.AsyncClient | None = None, api_version: str = "2023-06-01") -> None:
        super().__init__(client)
        self._api_version = api_version

    @property
    def provider_type(self) -> str:
        return "anthropic"

    # =========================================================================
    # Request translation
    # =========================================================================

    def translate_request(self, request: CanonicalRequest, credential: ProviderCredential) -> ProviderRequest:
        stream = request.stream and credential.stream
        system_parts = [request.system_prompt] if request.system_prompt else []
        system_parts.extend(message.text for message in request.messages if message.role == MessageRole.SYSTEM)

        body: dict[str, Any] = {
            "model": request.model or credential.model,
            "messages": self._translate_messages(request.messages),
            "max_tokens": request.max_tokens or self.DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.tools:
            body["tools"] = [{"name": tool.name, "description": tool.description, "input_schema": tool.parameters} for tool in request.tools]
        body.update(request.extra)

        headers = {
            "Content-Type": "application/json",
            "anthropic-version": self._api_version,
        }
        secret = credential.resolve_secret()
        if secret:
            headers["x-api-key"] = secret

        base_url = (credential.base_url or self.DEFAULT_BASE_URL).rstrip("/")
        return ProviderRequest(url=f"{base_url}/messages", body=body, headers=headers, stream=stream)

    @staticmethod
    def _translate_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages, merging consecutive tool results into one user turn.

        The Messages API requires user/assistant alternation and expects tool
        results as ``tool_result`` blocks inside a user message.
        """
        translated: list[dict[str, Any]] = []
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                continue

            if message.role == MessageRole.TOOL:
                blocks = [
                    {
                        "type": "tool_result",
                        "tool_use_id": result.call_id,
                        "content": result.content_as_text(),
                        "is_error": result.is_error,
                    }
                    for result in message.tool_results
                ]
                previous = translated[-1] if translated else None
                if previous and previous["role"] == "user" and isinstance(previous["content"], list) and all(block.get("type") == "tool_result" for block in previous["content"]):
                    previous["content"].extend(blocks)
                else:
                    translated.append({"role": "user", "content": blocks})
                continue

            if message.role == MessageRole.ASSISTANT:
                content: list[dict[str, Any]] = []
                if message.text:
                    content.append({"type": "text", "text": message.text})
                for call in message.tool_calls:
                    content.append({"type": "tool_use", "id": call.call_id, "name": call.name, "input": call.arguments})
                translated.append({"role": "assistant", "content": content or [{"type": "text", "text": ""}]})
                continue

            translated.append({"role": "user", "content": message.text})
        return translated

    # =========================================================================
    # Response parsing
    # =========================================================================

    async def parse_stream(self, lines: AsyncIterator[str]) -> AsyncIterator[CanonicalDelta]:
        open_calls: dict[int, str] = {}  # content block index -> tool_use id
        # Stopped tool_use blocks wait for the stop reason: max_tokens also closes a cut-off block
        stopped_calls: list[str] = []
        input_tokens = 0
        output_tokens = 0
        stop_reason: str | None = None
        saw_message_stop = False

        async for data in iter_sse_data(lines):
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse Anthropic event: {data[:200]}")
                continue

            event_type = event.get("type", "")

            if event_type == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                input_tokens = usage.get("input_tokens", 0)
                output_tokens = usage.get("output_tokens", 0)
                yield CanonicalDelta.usage(input_tokens, output_tokens)

            elif event_type == "content_block_start":
                index = event.get("index", 0)
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    open_calls[index] = block.get("id", f"toolu_{index}")
                    yield CanonicalDelta.tool_call_start(open_calls[index], block.get("name", ""), index)
                elif block.get("type") == "text" and block.get("text"):
                    yield CanonicalDelta.text(block["text"])

            elif event_type == "content_block_delta":
                index = event.get("index", 0)
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield CanonicalDelta.text(delta["text"])
                elif delta.get("type") == "input_json_delta" and delta.get("partial_json") and index in open_calls:
                    yield CanonicalDelta.tool_call_args(open_calls[index], delta["partial_json"])

            elif event_type == "content_block_stop":
                index = event.get("index", 0)
                if index in open_calls:
                    stopped_calls.append(open_calls.pop(index))

            elif event_type == "message_delta":
                stop_reason = (event.get("delta") or {}).get("stop_reason") or stop_reason
                if stop_reason is not None:
                    for call_id in stopped_calls:
                        yield CanonicalDelta.tool_call_end(call_id, truncated=stop_reason == "max_tokens")
                    stopped_calls.clear()
                usage = event.get("usage") or {}
                if "output_tokens" in usage:
                    output_tokens = max(output_tokens, usage["output_tokens"])
                    yield CanonicalDelta.usage(input_tokens, output_tokens)

            elif event_type == "message_stop":
                saw_message_stop = True
                break

            elif event_type == "error":
                raise self._error_from_payload(event.get("error") or {})

        for call_id in stopped_calls:
            yield CanonicalDelta.tool_call_end(call_id, truncated=stop_reason == "max_tokens" or not saw_message_stop)
        for index in sorted(open_calls):
            yield CanonicalDelta.tool_call_end(open_calls[index], truncated=True)

        yield CanonicalDelta.done(stop_reason, truncated=not saw_message_stop)

    def parse_whole(self, body: dict[str, Any]) -> list[CanonicalDelta]:
        if body.get("type") == "error":
            raise self._error_from_payload(body.get("error") or {})

        deltas: list[CanonicalDelta] = []
        stop_reason = body.get("stop_reason")
        for index, block in enumerate(body.get("content") or []):
            if block.get("type") == "text" and block.get("text"):
                deltas.append(CanonicalDelta.text(block["text"]))
            elif block.get("type") == "tool_use":
                call_id = block.get("id", f"toolu_{index}")
                deltas.append(CanonicalDelta.tool_call_start(call_id, block.get("name", ""), index))
                deltas.append(CanonicalDelta.tool_call_args(call_id, json.dumps(block.get("input") or {})))
                deltas.append(CanonicalDelta.tool_call_end(call_id, truncated=stop_reason == "max_tokens"))

        usage = body.get("usage") or {}
        if usage:
            deltas.append(CanonicalDelta.usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)))
        deltas.append(CanonicalDelta.done(stop_reason))
        return deltas

    @staticmethod
    def _error_from_payload(error: dict[str, Any]) -> ProviderError:
        error_type = error.get("type", "")
        return ProviderError(
            message=error.get("message", "Anthropic reported an error"),
            kind=_ERROR_TYPE_KINDS.get(error_type, ProviderErrorKind.FATAL),
            details={"provider_error_code": error_type} if error_type else {},
        )
