"""Abstract persistence contract for conversation messages."""

from abc import ABC, abstractmethod

from domain.models import Message


class MessageStore(ABC):
    """Append-only message persistence.

    The agent loop depends only on ``append_async`` and
    ``read_active_path_async``. Appending a message moves the
    conversation's active leaf to it; ``set_active_leaf_async`` switches
    branches (regeneration).

    Implementations are in src/integration/repositories/.
    """

    @abstractmethod
    async def append_async(self, message: Message) -> None:
        """Persist an immutable message and make it the active leaf."""
        pass

    @abstractmethod
    async def read_active_path_async(self, conversation_id: str) -> list[Message]:
        """Return the root-to-leaf chain of the conversation's active branch."""
        pass

    @abstractmethod
    async def get_async(self, message_id: str) -> Message | None:
        """Retrieve a single message by id."""
        pass

    @abstractmethod
    async def set_active_leaf_async(self, conversation_id: str, message_id: str) -> None:
        """Make ``message_id`` the active leaf of the conversation."""
        pass
