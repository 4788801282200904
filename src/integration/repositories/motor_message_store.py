"""MongoDB implementation of MessageStore using motor."""

import logging
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from domain.models import Message
from domain.repositories import MessageStore

logger = logging.getLogger(__name__)


class MotorMessageStore(MessageStore):
    """MongoDB-backed message store.

    Collections:
        - messages: one immutable document per message, ``_id`` = message id
        - conversations: ``{_id: conversation_id, active_leaf_id}``

    The active path is rebuilt by walking ``parent_id`` links from the
    active leaf; the path itself is never stored.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        messages_collection: str = "messages",
        conversations_collection: str = "conversations",
    ) -> None:
        self._messages = database[messages_collection]
        self._conversations = database[conversations_collection]

    @classmethod
    def from_connection_string(cls, connection_string: str, database_name: str) -> "MotorMessageStore":
        client: AsyncIOMotorClient = AsyncIOMotorClient(connection_string)
        return cls(client[database_name])

    async def ensure_indexes_async(self) -> None:
        await self._messages.create_index([("conversation_id", 1), ("created_at", 1)])
        await self._messages.create_index("parent_id")

    async def append_async(self, message: Message) -> None:
        document = self._to_document(message)
        await self._messages.insert_one(document)
        await self._conversations.update_one(
            {"_id": message.conversation_id},
            {"$set": {"active_leaf_id": message.id}},
            upsert=True,
        )
        logger.debug(f"Appended message {message.id} to conversation {message.conversation_id}")

    async def read_active_path_async(self, conversation_id: str) -> list[Message]:
        conversation = await self._conversations.find_one({"_id": conversation_id})
        if not conversation or not conversation.get("active_leaf_id"):
            return []

        # Load the conversation once and walk parent links in memory
        by_id: dict[str, dict[str, Any]] = {}
        async for document in self._messages.find({"conversation_id": conversation_id}):
            by_id[document["_id"]] = document

        path: list[Message] = []
        current_id = conversation["active_leaf_id"]
        while current_id is not None:
            document = by_id.get(current_id)
            if document is None:
                raise KeyError(f"Dangling message reference {current_id} in conversation {conversation_id}")
            path.append(self._from_document(document))
            current_id = document.get("parent_id")
        path.reverse()
        return path

    async def get_async(self, message_id: str) -> Message | None:
        document = await self._messages.find_one({"_id": message_id})
        return self._from_document(document) if document else None

    async def set_active_leaf_async(self, conversation_id: str, message_id: str) -> None:
        document = await self._messages.find_one({"_id": message_id, "conversation_id": conversation_id})
        if document is None:
            raise KeyError(f"Message {message_id} not found in conversation {conversation_id}")
        await self._conversations.update_one(
            {"_id": conversation_id},
            {"$set": {"active_leaf_id": message_id}},
            upsert=True,
        )

    @staticmethod
    def _to_document(message: Message) -> dict[str, Any]:
        document = message.to_dict()
        document["_id"] = document.pop("id")
        return document

    @staticmethod
    def _from_document(document: dict[str, Any]) -> Message:
        data = dict(document)
        data["id"] = data.pop("_id")
        return Message.from_dict(data)
