"""Conversation read queries.

Provides queries for:
- GetActivePathQuery: Messages of the conversation's active branch, root first
- GetMessageQuery: A single persisted message
"""

import logging
from dataclasses import dataclass
from typing import Any

from neuroglia.core import OperationResult
from neuroglia.mediation import Query, QueryHandler
from neuroglia.observability.tracing import add_span_attributes

from domain.models import Message
from domain.repositories import MessageStore

log = logging.getLogger(__name__)


# =============================================================================
# Get Active Path Query
# =============================================================================


@dataclass
class GetActivePathQuery(Query[OperationResult[list[dict[str, Any]]]]):
    """Query to get the active branch of a conversation."""

    conversation_id: str
    """ID of the conversation."""


class GetActivePathQueryHandler(QueryHandler[GetActivePathQuery, OperationResult[list[dict[str, Any]]]]):
    """Handler for GetActivePathQuery."""

    def __init__(self, message_store: MessageStore):
        super().__init__()
        self.message_store = message_store

    async def handle_async(self, request: GetActivePathQuery) -> OperationResult[list[dict[str, Any]]]:
        add_span_attributes({"conversation.id": request.conversation_id})

        try:
            path = await self.message_store.read_active_path_async(request.conversation_id)
            if not path:
                return self.not_found(Message, request.conversation_id)
            return self.ok([message.to_dict() for message in path])

        except Exception as e:
            log.exception(f"Error reading active path of conversation {request.conversation_id}: {e}")
            return self.internal_server_error(f"Failed to read conversation: {str(e)}")


# =============================================================================
# Get Message Query
# =============================================================================


@dataclass
class GetMessageQuery(Query[OperationResult[dict[str, Any]]]):
    """Query to get a single message by ID."""

    conversation_id: str
    message_id: str


class GetMessageQueryHandler(QueryHandler[GetMessageQuery, OperationResult[dict[str, Any]]]):
    """Handler for GetMessageQuery."""

    def __init__(self, message_store: MessageStore):
        super().__init__()
        self.message_store = message_store

    async def handle_async(self, request: GetMessageQuery) -> OperationResult[dict[str, Any]]:
        add_span_attributes({"conversation.id": request.conversation_id, "message.id": request.message_id})

        message = await self.message_store.get_async(request.message_id)
        if message is None or message.conversation_id != request.conversation_id:
            return self.not_found(Message, request.message_id)
        return self.ok(message.to_dict())
