"""Unit tests for AnthropicProviderAdapter.

Tests cover:
- Request translation (system prompt, tool results merged into user turns)
- Event stream parsing: text blocks, tool_use blocks, usage, stop reason
- Missing message_stop and mid-stream error events
- Whole response parsing
"""

import json

import httpx
import pytest

from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import CanonicalRequest, DeltaType, Message, MessageRole, ToolCallBlock, ToolResultBlock, ToolSpec
from infrastructure.adapters import AnthropicProviderAdapter
from tests.fixtures.factories import CredentialFactory, async_lines


def event(event_type: str, **payload) -> list[str]:
    return [f"event: {event_type}", f"data: {json.dumps({'type': event_type, **payload})}", ""]


@pytest.fixture
def adapter():
    return AnthropicProviderAdapter(api_version="2023-06-01")


@pytest.fixture
def credential():
    return CredentialFactory.create(provider_id="anthropic-primary", provider_type="anthropic", model="claude-test", base_url="https://anthropic.test/v1")


class TestAnthropicTranslateRequest:
    def test_system_and_tool_results(self, adapter, credential):
        system = Message.create_system_message("c", "Pinned instructions")
        question = Message.create_user_message("c", "Two cities?", parent_id=system.id)
        calls = Message.create(
            "c",
            MessageRole.ASSISTANT,
            [ToolCallBlock(call_id="toolu_1", name="get_weather", arguments={"city": "Oslo"}), ToolCallBlock(call_id="toolu_2", name="get_weather", arguments={"city": "Rome"})],
        )
        first = Message.create_tool_result_message("c", ToolResultBlock(call_id="toolu_1", tool_name="get_weather", content="cold"))
        second = Message.create_tool_result_message("c", ToolResultBlock(call_id="toolu_2", tool_name="get_weather", is_error=True, error={"message": "timeout"}))
        request = CanonicalRequest(
            messages=[system, question, calls, first, second],
            tools=[ToolSpec(name="get_weather", description="Weather")],
            system_prompt="Be brief.",
        )

        provider_request = adapter.translate_request(request, credential)
        body = provider_request.body

        assert provider_request.url == "https://anthropic.test/v1/messages"
        assert provider_request.headers["x-api-key"] == "sk-test"
        assert provider_request.headers["anthropic-version"] == "2023-06-01"
        assert body["system"] == "Be brief.\n\nPinned instructions"
        assert body["max_tokens"] == 4096
        assert [message["role"] for message in body["messages"]] == ["user", "assistant", "user"]
        assert body["messages"][1]["content"][0] == {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Oslo"}}
        results = body["messages"][2]["content"]
        assert [block["tool_use_id"] for block in results] == ["toolu_1", "toolu_2"]
        assert results[1]["is_error"] is True
        assert results[1]["content"] == "Error: timeout"
        assert body["tools"][0]["input_schema"] == {"type": "object", "properties": {}}


class TestAnthropicParseStream:
    @pytest.mark.asyncio
    async def test_text_and_tool_use(self, adapter):
        lines = [
            *event("message_start", message={"usage": {"input_tokens": 25, "output_tokens": 1}}),
            *event("content_block_start", index=0, content_block={"type": "text", "text": ""}),
            *event("content_block_delta", index=0, delta={"type": "text_delta", "text": "Let me check."}),
            *event("content_block_stop", index=0),
            *event("content_block_start", index=1, content_block={"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}}),
            *event("content_block_delta", index=1, delta={"type": "input_json_delta", "partial_json": '{"city": '}),
            *event("content_block_delta", index=1, delta={"type": "input_json_delta", "partial_json": '"Oslo"}'}),
            *event("content_block_stop", index=1),
            *event("message_delta", delta={"stop_reason": "tool_use"}, usage={"output_tokens": 30}),
            *event("message_stop"),
        ]

        deltas = [delta async for delta in adapter.parse_stream(async_lines(lines))]

        assert [delta.type for delta in deltas] == [
            DeltaType.USAGE,
            DeltaType.TEXT,
            DeltaType.TOOL_CALL_START,
            DeltaType.TOOL_CALL_ARGS,
            DeltaType.TOOL_CALL_ARGS,
            DeltaType.TOOL_CALL_END,
            DeltaType.USAGE,
            DeltaType.DONE,
        ]
        assert deltas[2].payload == {"call_id": "toolu_1", "name": "get_weather", "index": 1}
        assert deltas[6].payload == {"input_tokens": 25, "output_tokens": 30}
        assert deltas[-1].payload == {"finish_reason": "tool_use", "truncated": False}

    @pytest.mark.asyncio
    async def test_missing_message_stop_is_truncated(self, adapter):
        lines = [
            *event("content_block_start", index=0, content_block={"type": "tool_use", "id": "toolu_1", "name": "calc"}),
            *event("content_block_delta", index=0, delta={"type": "input_json_delta", "partial_json": '{"expr'}),
        ]

        deltas = [delta async for delta in adapter.parse_stream(async_lines(lines))]

        assert deltas[-2].payload == {"call_id": "toolu_1", "truncated": True}
        assert deltas[-1].payload["truncated"] is True

    @pytest.mark.asyncio
    async def test_max_tokens_marks_stopped_tool_call_truncated(self, adapter):
        lines = [
            *event("content_block_start", index=0, content_block={"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}}),
            *event("content_block_delta", index=0, delta={"type": "input_json_delta", "partial_json": '{"city": "Par'}),
            *event("content_block_stop", index=0),
            *event("message_delta", delta={"stop_reason": "max_tokens"}, usage={"output_tokens": 16}),
            *event("message_stop"),
        ]

        deltas = [delta async for delta in adapter.parse_stream(async_lines(lines))]

        ends = [delta.payload for delta in deltas if delta.type == DeltaType.TOOL_CALL_END]
        assert ends == [{"call_id": "toolu_1", "truncated": True}]
        assert deltas[-1].payload == {"finish_reason": "max_tokens", "truncated": False}

    @pytest.mark.asyncio
    async def test_overloaded_error_event_is_transient(self, adapter):
        lines = [*event("error", error={"type": "overloaded_error", "message": "Overloaded"})]

        with pytest.raises(ProviderError) as exc_info:
            async for _ in adapter.parse_stream(async_lines(lines)):
                pass

        assert exc_info.value.kind == ProviderErrorKind.TRANSIENT
        assert exc_info.value.details == {"provider_error_code": "overloaded_error"}


class TestAnthropicParseWhole:
    def test_content_blocks(self, adapter):
        deltas = adapter.parse_whole(
            {
                "type": "message",
                "content": [{"type": "text", "text": "Sure"}, {"type": "tool_use", "id": "toolu_9", "name": "calculate", "input": {"expression": "2*3"}}],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 4, "output_tokens": 9},
            }
        )

        assert [delta.type for delta in deltas] == [
            DeltaType.TEXT,
            DeltaType.TOOL_CALL_START,
            DeltaType.TOOL_CALL_ARGS,
            DeltaType.TOOL_CALL_END,
            DeltaType.USAGE,
            DeltaType.DONE,
        ]
        assert json.loads(deltas[2].payload["fragment"]) == {"expression": "2*3"}

    def test_error_body(self, adapter):
        with pytest.raises(ProviderError) as exc_info:
            adapter.parse_whole({"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}})

        assert exc_info.value.kind == ProviderErrorKind.AUTH


class TestAnthropicHttpExchange:
    @pytest.mark.asyncio
    async def test_overloaded_529_is_transient(self, credential):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = AnthropicProviderAdapter(client)
            request = CanonicalRequest(messages=[Message.create_user_message("c", "hi")])
            with pytest.raises(ProviderError) as exc_info:
                async for _ in adapter.stream(request, credential):
                    pass

        assert exc_info.value.kind == ProviderErrorKind.TRANSIENT
        assert exc_info.value.provider_id == "anthropic-primary"
