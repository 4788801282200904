"""Chat API controller.

Provides endpoints for:
- Running a turn and streaming its events over Server-Sent Events
- Cancelling the running turn of a conversation

Every stream carries exactly one terminal event (``done`` or ``error``).
Closing the connection before it arrives cancels the turn.
"""

import logging
import uuid
from collections.abc import AsyncIterator

from classy_fastapi.decorators import post
from fastapi import HTTPException, status
from fastapi.responses import StreamingResponse
from neuroglia.dependency_injection import ServiceProviderBase
from neuroglia.mapping import Mapper
from neuroglia.mediation import Mediator
from neuroglia.mvc import ControllerBase
from pydantic import BaseModel, Field

from application.services.chat_service import ChatService, MessageNotFoundError, TurnHandle
from domain.models import AttachmentRef

log = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


# ============================================================================
# REQUEST MODELS
# ============================================================================


class AttachmentModel(BaseModel):
    """Reference to a file already uploaded to the blob store."""

    attachment_id: str
    mime_type: str
    name: str | None = None

    def to_ref(self) -> AttachmentRef:
        return AttachmentRef(attachment_id=self.attachment_id, mime_type=self.mime_type, name=self.name)


class ChatRequest(BaseModel):
    """Request to run one turn."""

    message: str = Field(..., min_length=1, description="The user's message")
    conversation_id: str | None = Field(default=None, description="Conversation to extend (a new one is started if omitted)")
    model: str | None = Field(default=None, description='Model selector, e.g. "anthropic:claude-sonnet-4-5"')
    parent_id: str | None = Field(default=None, description="Branch from this message instead of the active leaf")
    attachments: list[AttachmentModel] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "message": "What's 17 * 23, and what time is it in Tokyo?",
                "conversation_id": "c0ffee00-0000-4000-8000-000000000001",
                "model": "openai-primary:gpt-4o-mini",
            }
        }


# ============================================================================
# STREAMING
# ============================================================================


async def sse_frames(handle: TurnHandle) -> AsyncIterator[str]:
    """Render a turn's frames as SSE, cancelling the turn if the client leaves early."""
    completed = False
    try:
        async for frame in handle.stream.frames():
            yield frame.to_sse()
        completed = True
    finally:
        if not completed:
            log.info(f"SSE client left before the end of the turn in conversation {handle.conversation_id}")
            await handle.stream.disconnect("client_disconnected")


class ChatController(ControllerBase):
    """Controller for running and cancelling turns."""

    def __init__(self, service_provider: ServiceProviderBase, mapper: Mapper, mediator: Mediator):
        super().__init__(service_provider, mapper, mediator)

    @property
    def chat_service(self) -> ChatService:
        return self.service_provider.get_required_service(ChatService)

    @post("/stream", response_class=StreamingResponse)
    async def stream_chat(self, body: ChatRequest):
        """Run a turn and stream its events.

        Events:
        - ``text``, ``tool-call-start``, ``tool-call-args``, ``tool-call-end``, ``usage``: model output
        - ``message``: a persisted tool-result message
        - ``heartbeat``: keep-alive while the turn is quiet
        - ``done`` or ``error``: the single terminal event
        """
        conversation_id = body.conversation_id or str(uuid.uuid4())
        try:
            handle = await self.chat_service.start_turn(
                conversation_id,
                body.message,
                model=body.model,
                parent_id=body.parent_id,
                attachments=[attachment.to_ref() for attachment in body.attachments],
            )
        except MessageNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

        return StreamingResponse(
            sse_frames(handle),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Conversation-Id": conversation_id},
        )

    @post("/{conversation_id}/cancel")
    async def cancel_turn(self, conversation_id: str):
        """Cancel the running turn of a conversation.

        The turn's stream ends with an ``error`` event of kind ``cancelled``;
        content produced so far is kept as a partial message.
        """
        if not self.chat_service.cancel(conversation_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No active turn for conversation {conversation_id}")
        return {"conversation_id": conversation_id, "cancelled": True}
