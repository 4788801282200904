"""Tests for the chat websocket session.

Tests cover:
- Client message validation
- Cancel acknowledgments and protocol errors
- Forwarding turn frames as JSON
- Closing the socket cancelling running turns
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocketDisconnect
from pydantic import ValidationError

from api.controllers.websocket_controller import ChatSocketSession, ClientMessage
from application.services import CancellationToken
from application.services.chat_service import MessageNotFoundError, TurnHandle
from application.streaming import StreamMultiplexer
from domain.models import CanonicalDelta


def make_handle() -> TurnHandle:
    token = CancellationToken()
    stream = StreamMultiplexer(heartbeat_interval=0, on_disconnect=token.cancel)
    return TurnHandle(conversation_id="conv-1", token=token, stream=stream, task=MagicMock())


@pytest.fixture
def websocket() -> MagicMock:
    socket = MagicMock()
    socket.send_json = AsyncMock()
    socket.receive_json = AsyncMock()
    return socket


@pytest.fixture
def chat_service() -> MagicMock:
    service = MagicMock()
    service.start_turn = AsyncMock()
    return service


@pytest.fixture
def session(websocket: MagicMock, chat_service: MagicMock) -> ChatSocketSession:
    return ChatSocketSession(websocket, chat_service, "conv-1")


def sent_types(websocket: MagicMock) -> list[str]:
    return [call.args[0]["type"] for call in websocket.send_json.call_args_list]


class TestClientMessage:
    def test_message(self):
        message = ClientMessage.model_validate({"type": "message", "content": "Hi", "model": "openai"})

        assert message.content == "Hi"
        assert message.attachments == []

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            ClientMessage.model_validate({"type": "subscribe"})


class TestReceiveLoop:
    @pytest.mark.asyncio
    async def test_cancel_and_protocol_errors(self, session: ChatSocketSession, websocket: MagicMock, chat_service: MagicMock):
        chat_service.cancel.return_value = False
        websocket.receive_json.side_effect = [
            {"type": "cancel"},
            {"type": "bogus"},
            {"type": "message"},
            WebSocketDisconnect(code=1000),
        ]

        with pytest.raises(WebSocketDisconnect):
            await session.receive_loop()

        assert sent_types(websocket) == ["cancel_ack", "protocol_error", "protocol_error"]
        assert websocket.send_json.call_args_list[0].args[0]["data"] == {"cancelled": False}
        chat_service.start_turn.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_parent_reported(self, session: ChatSocketSession, websocket: MagicMock, chat_service: MagicMock):
        chat_service.start_turn.side_effect = MessageNotFoundError("conv-1", "missing")

        await session.start_turn(ClientMessage(type="message", content="Hi", parent_id="missing"))

        payload = websocket.send_json.call_args.args[0]
        assert payload["type"] == "protocol_error"
        assert payload["data"]["error_code"] == "message_not_found"


class TestForwarding:
    @pytest.mark.asyncio
    async def test_frames_forwarded_in_order(self, session: ChatSocketSession, websocket: MagicMock, chat_service: MagicMock):
        handle = make_handle()
        chat_service.start_turn.return_value = handle
        await handle.stream.send_delta(CanonicalDelta.text("Hi"))
        await handle.stream.send_delta(CanonicalDelta.done("stop"))

        await session.start_turn(ClientMessage(type="message", content="Hi"))
        await asyncio.wait_for(asyncio.gather(*list(session._turns)), timeout=5.0)

        assert sent_types(websocket) == ["text", "done"]
        assert websocket.send_json.call_args_list[0].args[0]["data"] == {"text": "Hi"}

    @pytest.mark.asyncio
    async def test_send_failure_cancels_turn(self, session: ChatSocketSession, websocket: MagicMock):
        handle = make_handle()
        websocket.send_json.side_effect = WebSocketDisconnect(code=1001)
        await handle.stream.send_delta(CanonicalDelta.text("Hi"))

        await session._forward(handle)

        assert handle.token.reason == "websocket_closed"

    @pytest.mark.asyncio
    async def test_close_cancels_running_turns(self, session: ChatSocketSession, chat_service: MagicMock):
        handle = make_handle()
        chat_service.start_turn.return_value = handle
        await session.start_turn(ClientMessage(type="message", content="Hi"))

        await session.close()

        assert handle.token.is_cancelled
        assert handle.stream.is_disconnected
