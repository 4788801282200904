"""Unit tests for OpenAiProviderAdapter.

Tests cover:
- Request translation (messages, tools, auth header, stream options)
- SSE stream parsing: text, indexed tool call fragments, usage, [DONE]
- Truncated streams and provider-reported errors
- Whole (non-streamed) response parsing
- HTTP exchange through httpx.MockTransport, including error classification
"""

import json

import httpx
import pytest

from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import CanonicalRequest, DeltaType, Message, MessageRole, TextBlock, ToolCallBlock, ToolResultBlock, ToolSpec
from infrastructure.adapters import OpenAiProviderAdapter
from tests.fixtures.factories import CredentialFactory, async_lines


def sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}"


async def collect(adapter: OpenAiProviderAdapter, lines: list[str]):
    return [delta async for delta in adapter.parse_stream(async_lines(lines))]


@pytest.fixture
def adapter():
    return OpenAiProviderAdapter()


@pytest.fixture
def request_with_history():
    question = Message.create_user_message("conv-1", "Weather in Oslo?")
    call = Message.create("conv-1", MessageRole.ASSISTANT, [ToolCallBlock(call_id="call_1", name="get_weather", arguments={"city": "Oslo"})], parent_id=question.id)
    result = Message.create_tool_result_message("conv-1", ToolResultBlock(call_id="call_1", tool_name="get_weather", content={"temperature_c": 18}), parent_id=call.id)
    return CanonicalRequest(
        messages=[question, call, result],
        tools=[ToolSpec(name="get_weather", description="Weather", parameters={"type": "object", "properties": {"city": {"type": "string"}}})],
        system_prompt="Be brief.",
        temperature=0.2,
        max_tokens=256,
    )


class TestOpenAiTranslateRequest:
    """Test canonical request translation."""

    def test_translates_messages_and_tools(self, adapter, request_with_history):
        provider_request = adapter.translate_request(request_with_history, CredentialFactory.create())
        body = provider_request.body

        assert provider_request.url == "https://llm.test/v1/chat/completions"
        assert provider_request.headers["Authorization"] == "Bearer sk-test"
        assert body["model"] == "gpt-4o-mini"
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 256
        assert [message["role"] for message in body["messages"]] == ["system", "user", "assistant", "tool"]
        assert body["messages"][2]["tool_calls"][0]["function"] == {"name": "get_weather", "arguments": '{"city": "Oslo"}'}
        assert body["messages"][3] == {"role": "tool", "tool_call_id": "call_1", "content": '{"temperature_c": 18}'}
        assert body["tools"][0]["function"]["name"] == "get_weather"

    def test_request_model_overrides_credential(self, adapter):
        request = CanonicalRequest(messages=[Message.create_user_message("c", "hi")], model="gpt-4.1")

        assert adapter.translate_request(request, CredentialFactory.create()).body["model"] == "gpt-4.1"

    def test_non_streaming_credential(self, adapter):
        request = CanonicalRequest(messages=[Message.create_user_message("c", "hi")])

        provider_request = adapter.translate_request(request, CredentialFactory.create(stream=False))

        assert provider_request.stream is False
        assert "stream_options" not in provider_request.body

    def test_default_base_url(self, adapter):
        request = CanonicalRequest(messages=[Message.create("c", MessageRole.USER, [TextBlock(text="hi")])])

        provider_request = adapter.translate_request(request, CredentialFactory.create(base_url=""))

        assert provider_request.url == "https://api.openai.com/v1/chat/completions"


class TestOpenAiParseStream:
    """Test SSE stream parsing."""

    @pytest.mark.asyncio
    async def test_text_and_usage(self, adapter):
        deltas = await collect(
            adapter,
            [
                sse({"choices": [{"delta": {"role": "assistant", "content": ""}}]}),
                "",
                sse({"choices": [{"delta": {"content": "Hel"}}]}),
                sse({"choices": [{"delta": {"content": "lo"}, "finish_reason": None}]}),
                sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}),
                sse({"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 2}}),
                "data: [DONE]",
            ],
        )

        assert [delta.type for delta in deltas] == [DeltaType.TEXT, DeltaType.TEXT, DeltaType.USAGE, DeltaType.DONE]
        assert "".join(delta.payload["text"] for delta in deltas[:2]) == "Hello"
        assert deltas[2].payload == {"input_tokens": 12, "output_tokens": 2}
        assert deltas[-1].payload == {"finish_reason": "stop", "truncated": False}

    @pytest.mark.asyncio
    async def test_tool_call_fragments_keyed_by_index(self, adapter):
        deltas = await collect(
            adapter,
            [
                sse({"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "get_weather", "arguments": ""}}]}}]}),
                sse({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"city":'}}]}}]}),
                sse({"choices": [{"delta": {"tool_calls": [{"index": 1, "id": "call_b", "function": {"name": "calculate", "arguments": '{"expression": "1+1"}'}}]}}]}),
                sse({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ' "Oslo"}'}}]}}]}),
                sse({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}),
                "data: [DONE]",
            ],
        )

        starts = [delta.payload for delta in deltas if delta.type == DeltaType.TOOL_CALL_START]
        assert starts == [{"call_id": "call_a", "name": "get_weather", "index": 0}, {"call_id": "call_b", "name": "calculate", "index": 1}]
        args_a = "".join(delta.payload["fragment"] for delta in deltas if delta.type == DeltaType.TOOL_CALL_ARGS and delta.payload["call_id"] == "call_a")
        assert json.loads(args_a) == {"city": "Oslo"}
        ends = [delta.payload for delta in deltas if delta.type == DeltaType.TOOL_CALL_END]
        assert ends == [{"call_id": "call_a", "truncated": False}, {"call_id": "call_b", "truncated": False}]
        assert deltas[-1].payload["finish_reason"] == "tool_calls"

    @pytest.mark.asyncio
    async def test_stream_cut_off_is_truncated(self, adapter):
        """Test that a stream ending without finish_reason or [DONE] is marked truncated."""
        deltas = await collect(
            adapter,
            [
                sse({"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "calc", "arguments": '{"expr'}}]}}]}),
            ],
        )

        assert deltas[-2].type == DeltaType.TOOL_CALL_END
        assert deltas[-2].payload == {"call_id": "call_a", "truncated": True}
        assert deltas[-1].type == DeltaType.DONE
        assert deltas[-1].payload["truncated"] is True

    @pytest.mark.asyncio
    async def test_length_finish_truncates_open_calls(self, adapter):
        deltas = await collect(
            adapter,
            [
                sse({"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_a", "function": {"name": "calc", "arguments": "{"}}]}}]}),
                sse({"choices": [{"delta": {}, "finish_reason": "length"}]}),
                "data: [DONE]",
            ],
        )

        assert {"call_id": "call_a", "truncated": True} in [delta.payload for delta in deltas if delta.type == DeltaType.TOOL_CALL_END]
        assert deltas[-1].payload == {"finish_reason": "length", "truncated": False}

    @pytest.mark.asyncio
    async def test_error_chunk_raises(self, adapter):
        with pytest.raises(ProviderError) as exc_info:
            await collect(adapter, [sse({"error": {"message": "Too many requests", "code": "rate_limit_exceeded"}})])

        assert exc_info.value.kind == ProviderErrorKind.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_malformed_chunks_skipped(self, adapter):
        deltas = await collect(adapter, ["data: {not json", sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]}), "data: [DONE]"])

        assert [delta.type for delta in deltas] == [DeltaType.TEXT, DeltaType.DONE]


class TestOpenAiParseWhole:
    """Test non-streamed response parsing."""

    def test_text_tool_calls_and_usage(self, adapter):
        deltas = adapter.parse_whole(
            {
                "choices": [
                    {
                        "message": {
                            "content": "Checking",
                            "tool_calls": [{"id": "call_1", "function": {"name": "get_weather", "arguments": '{"city": "Oslo"}'}}],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 5, "completion_tokens": 7},
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
        assert deltas[2].payload["fragment"] == '{"city": "Oslo"}'
        assert deltas[-1].payload["finish_reason"] == "tool_calls"

    def test_error_body_raises(self, adapter):
        with pytest.raises(ProviderError) as exc_info:
            adapter.parse_whole({"error": {"message": "bad key", "code": "invalid_api_key"}})

        assert exc_info.value.kind == ProviderErrorKind.AUTH


class TestOpenAiHttpExchange:
    """Test the HTTP exchange through a mocked transport."""

    @pytest.mark.asyncio
    async def test_streams_deltas_from_response(self):
        body = "\n".join(
            [
                sse({"choices": [{"delta": {"content": "Hi"}}]}),
                "",
                sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}),
                "",
                "data: [DONE]",
                "",
            ]
        )
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = OpenAiProviderAdapter(client)
            request = CanonicalRequest(messages=[Message.create_user_message("c", "hello")])
            deltas = [delta async for delta in adapter.stream(request, CredentialFactory.create())]

        assert [delta.type for delta in deltas] == [DeltaType.TEXT, DeltaType.DONE]
        assert seen[0].headers["authorization"] == "Bearer sk-test"
        assert json.loads(seen[0].content)["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_http_429_raises_rate_limit_before_any_delta(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": {"message": "slow down", "code": "rate_limit_exceeded"}}, headers={"Retry-After": "3"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = OpenAiProviderAdapter(client)
            request = CanonicalRequest(messages=[Message.create_user_message("c", "hello")])
            with pytest.raises(ProviderError) as exc_info:
                async for _ in adapter.stream(request, CredentialFactory.create()):
                    pass

        error = exc_info.value
        assert error.kind == ProviderErrorKind.RATE_LIMIT
        assert error.retry_after == 3.0
        assert error.status_code == 429
        assert error.provider_id == "openai-primary"

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = OpenAiProviderAdapter(client)
            request = CanonicalRequest(messages=[Message.create_user_message("c", "hello")])
            with pytest.raises(ProviderError) as exc_info:
                async for _ in adapter.stream(request, CredentialFactory.create()):
                    pass

        assert exc_info.value.kind == ProviderErrorKind.TRANSIENT
        assert exc_info.value.error_code == "provider_connection_error"

    @pytest.mark.asyncio
    async def test_non_streaming_response_parsed_whole(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"choices": [{"message": {"content": "Whole answer"}, "finish_reason": "stop"}]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = OpenAiProviderAdapter(client)
            request = CanonicalRequest(messages=[Message.create_user_message("c", "hello")])
            deltas = [delta async for delta in adapter.stream(request, CredentialFactory.create(stream=False))]

        assert deltas[0].payload == {"text": "Whole answer"}
        assert deltas[-1].type == DeltaType.DONE
