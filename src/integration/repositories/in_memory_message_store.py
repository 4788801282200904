"""In-memory implementation of MessageStore."""

import asyncio

from domain.models import Message, MessageTree
from domain.repositories import MessageStore


class InMemoryMessageStore(MessageStore):
    """In-memory implementation of MessageStore for testing and single-node use."""

    def __init__(self) -> None:
        self._trees: dict[str, MessageTree] = {}
        self._leaves: dict[str, str | None] = {}
        self._index: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def append_async(self, message: Message) -> None:
        """Store a message and move the conversation's leaf to it."""
        async with self._lock:
            tree = self._trees.setdefault(message.conversation_id, MessageTree())
            tree.add(message)
            self._index[message.id] = message.conversation_id
            self._leaves[message.conversation_id] = message.id

    async def read_active_path_async(self, conversation_id: str) -> list[Message]:
        tree = self._trees.get(conversation_id)
        if tree is None:
            return []
        return tree.active_path(self._leaves.get(conversation_id))

    async def get_async(self, message_id: str) -> Message | None:
        conversation_id = self._index.get(message_id)
        if conversation_id is None:
            return None
        return self._trees[conversation_id].get(message_id)

    async def set_active_leaf_async(self, conversation_id: str, message_id: str) -> None:
        tree = self._trees.get(conversation_id)
        if tree is None or message_id not in tree:
            raise KeyError(f"Message {message_id} not found in conversation {conversation_id}")
        self._leaves[conversation_id] = message_id

    async def get_tree_async(self, conversation_id: str) -> MessageTree:
        """Return the full message tree (all branches) of a conversation."""
        return self._trees.get(conversation_id, MessageTree())
