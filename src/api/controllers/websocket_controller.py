"""WebSocket endpoint for chat.

Client → server:
    {"type": "message", "content": "...", "model": "...", "parent_id": "..."}
    {"type": "cancel"}

Server → client:
    {"type": "connected", "data": {"conversation_id": "..."}}
    frames of the running turn: {"type": <event>, "kind": ..., "data": {...}}
    {"type": "cancel_ack", "data": {"cancelled": true|false}}
    {"type": "protocol_error", "data": {"message": "..."}}

Closing the socket cancels the running turn.
"""

import asyncio
import logging
import uuid
from typing import Any, Literal

from fastapi import Query, WebSocket, WebSocketDisconnect
from fastapi.routing import APIRouter
from pydantic import BaseModel, Field, ValidationError

from api.controllers.chat_controller import AttachmentModel
from api.dependencies import get_ws_chat_service
from application.services.chat_service import ChatService, MessageNotFoundError, TurnHandle

log = logging.getLogger(__name__)

router = APIRouter(tags=["WebSocket"])


class ClientMessage(BaseModel):
    """A message received from the websocket client."""

    type: Literal["message", "cancel"]
    content: str | None = None
    model: str | None = None
    parent_id: str | None = None
    attachments: list[AttachmentModel] = Field(default_factory=list)


class ChatSocketSession:
    """One websocket connection bound to one conversation."""

    def __init__(self, websocket: WebSocket, chat_service: ChatService, conversation_id: str) -> None:
        self.websocket = websocket
        self.chat_service = chat_service
        self.conversation_id = conversation_id
        self._turns: dict[asyncio.Task, TurnHandle] = {}

    async def send(self, message_type: str, data: dict[str, Any]) -> None:
        await self.websocket.send_json({"type": message_type, "data": data})

    async def receive_loop(self) -> None:
        while True:
            data = await self.websocket.receive_json()
            try:
                message = ClientMessage.model_validate(data)
            except ValidationError as e:
                log.warning(f"Unparseable websocket message in conversation {self.conversation_id}: {e}")
                await self.send("protocol_error", {"message": "Invalid message", "errors": e.errors(include_url=False, include_context=False)})
                continue

            if message.type == "cancel":
                cancelled = self.chat_service.cancel(self.conversation_id)
                await self.send("cancel_ack", {"cancelled": cancelled})
            elif not message.content:
                await self.send("protocol_error", {"message": "A message needs content"})
            else:
                await self.start_turn(message)

    async def start_turn(self, message: ClientMessage) -> None:
        try:
            handle = await self.chat_service.start_turn(
                self.conversation_id,
                message.content or "",
                model=message.model,
                parent_id=message.parent_id,
                attachments=[attachment.to_ref() for attachment in message.attachments],
            )
        except MessageNotFoundError as e:
            await self.send("protocol_error", e.to_dict())
            return
        forwarder = asyncio.create_task(self._forward(handle))
        self._turns[forwarder] = handle
        forwarder.add_done_callback(lambda task: self._turns.pop(task, None))

    async def _forward(self, handle: TurnHandle) -> None:
        try:
            async for frame in handle.stream.frames():
                await self.websocket.send_json(frame.to_dict())
        except (WebSocketDisconnect, RuntimeError) as e:
            log.info(f"WebSocket closed while streaming conversation {self.conversation_id}: {e}")
            await handle.stream.disconnect("websocket_closed")

    async def close(self) -> None:
        """Disconnect every running turn's stream (cancelling the turns)."""
        for forwarder, handle in list(self._turns.items()):
            await handle.stream.disconnect("websocket_closed")
            forwarder.cancel()
        if self._turns:
            await asyncio.gather(*list(self._turns), return_exceptions=True)


@router.websocket("/chat/ws")
async def chat_websocket(
    websocket: WebSocket,
    conversation_id: str | None = Query(None, alias="conversationId", description="Conversation to join"),
) -> None:
    """WebSocket channel for chat turns of one conversation.

    Close Codes:
        1000: Normal close
        1011: Internal error
    """
    chat_service = get_ws_chat_service(websocket)
    if chat_service is None:
        log.error("ChatService not available for websocket connection")
        await websocket.close(code=1011, reason="Chat service not configured")
        return

    await websocket.accept()
    session = ChatSocketSession(websocket, chat_service, conversation_id or str(uuid.uuid4()))
    log.info(f"🔌 WebSocket connected for conversation {session.conversation_id}")
    try:
        await session.send("connected", {"conversation_id": session.conversation_id})
        await session.receive_loop()
    except WebSocketDisconnect as e:
        log.info(f"WebSocket disconnected: conversation {session.conversation_id} (code: {e.code})")
    except Exception as e:
        log.exception(f"Error in websocket receive loop: {e}")
    finally:
        await session.close()


class WebSocketController:
    """Container for the websocket router.

    WebSocket endpoints use a raw APIRouter; ``main.py`` includes it in the
    API sub-app.
    """

    router = router
