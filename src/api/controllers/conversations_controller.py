"""Conversations API controller.

Provides endpoints for:
- Reading the active branch of a conversation
- Reading a single message
- Switching the active branch (regeneration from an earlier message)
"""

from classy_fastapi.decorators import get, post
from fastapi import HTTPException, status
from neuroglia.dependency_injection import ServiceProviderBase
from neuroglia.mapping import Mapper
from neuroglia.mediation import Mediator
from neuroglia.mvc import ControllerBase
from pydantic import BaseModel, Field

from application.queries import GetActivePathQuery, GetMessageQuery
from application.services.chat_service import ChatService, MessageNotFoundError


class SetActiveLeafRequest(BaseModel):
    """Request to make a message the leaf of the active branch."""

    message_id: str = Field(..., description="Message that becomes the active leaf")


class ConversationsController(ControllerBase):
    """Controller for conversation history."""

    def __init__(self, service_provider: ServiceProviderBase, mapper: Mapper, mediator: Mediator):
        super().__init__(service_provider, mapper, mediator)

    @get("/{conversation_id}/messages")
    async def get_active_path(self, conversation_id: str):
        """Messages of the active branch, root first."""
        result = await self.mediator.execute_async(GetActivePathQuery(conversation_id=conversation_id))
        return self.process(result)

    @get("/{conversation_id}/messages/{message_id}")
    async def get_message(self, conversation_id: str, message_id: str):
        """A single message of the conversation, on any branch."""
        result = await self.mediator.execute_async(GetMessageQuery(conversation_id=conversation_id, message_id=message_id))
        return self.process(result)

    @post("/{conversation_id}/active-leaf")
    async def set_active_leaf(self, conversation_id: str, body: SetActiveLeafRequest):
        """Switch the conversation to the branch ending at ``message_id``.

        The next turn continues from that message.
        """
        chat_service = self.service_provider.get_required_service(ChatService)
        try:
            path = await chat_service.set_active_leaf(conversation_id, body.message_id)
        except MessageNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
        return [message.to_dict() for message in path]
