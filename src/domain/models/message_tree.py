"""Conversation message tree.

Messages are stored once, keyed by id, and linked through ``parent_id``.
The active path is derived by walking parents from a leaf to the root.
"""

from collections.abc import Iterable

from .message import Message


class MessageTree:
    """Arena of messages with parent links.

    Holds the messages of one conversation. Branches appear when two
    messages share a parent (e.g. a regenerated answer).
    """

    def __init__(self, messages: Iterable[Message] | None = None):
        self._messages: dict[str, Message] = {}
        self._children: dict[str | None, list[str]] = {}
        for message in messages or ():
            self.add(message)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def add(self, message: Message) -> None:
        """Add a message to the arena.

        Raises:
            ValueError: If the id already exists or the parent is unknown
        """
        if message.id in self._messages:
            raise ValueError(f"Message already exists: {message.id}")
        if message.parent_id is not None and message.parent_id not in self._messages:
            raise ValueError(f"Unknown parent message: {message.parent_id}")
        self._messages[message.id] = message
        self._children.setdefault(message.parent_id, []).append(message.id)

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def children(self, message_id: str | None) -> list[Message]:
        """Direct children of a message, in insertion order (None for roots)."""
        return [self._messages[child_id] for child_id in self._children.get(message_id, [])]

    def active_path(self, leaf_id: str | None) -> list[Message]:
        """Ordered chain from the root to ``leaf_id`` (inclusive)."""
        path: list[Message] = []
        current_id = leaf_id
        while current_id is not None:
            message = self._messages.get(current_id)
            if message is None:
                raise KeyError(f"Unknown message on path: {current_id}")
            path.append(message)
            current_id = message.parent_id
        path.reverse()
        return path

    def latest_leaf(self, from_id: str | None = None) -> str | None:
        """Follow the most recent child from ``from_id`` down to a leaf."""
        current_id = from_id
        while True:
            children = self._children.get(current_id, [])
            if not children:
                return current_id
            current_id = children[-1]
