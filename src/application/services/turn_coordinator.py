"""Per-conversation turn serialization.

Turns of different conversations run concurrently; turns of one
conversation run one at a time. A new turn either waits for the active one
(``wait``) or cancels it and then waits for it to release (``supersede``).
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

from domain.exceptions import OrchestratorError, OrchestratorErrorKind

from .cancellation import CancellationToken

log = logging.getLogger(__name__)


class TurnConflictPolicy(str, Enum):
    WAIT = "wait"
    SUPERSEDE = "supersede"


@dataclass
class _ConversationSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    active_token: CancellationToken | None = None
    users: int = 0


class TurnCoordinator:
    """Grants each conversation at most one running turn."""

    def __init__(self, policy: TurnConflictPolicy = TurnConflictPolicy.WAIT, wait_timeout: float | None = 30.0) -> None:
        self._policy = policy
        self._wait_timeout = wait_timeout
        self._slots: dict[str, _ConversationSlot] = {}

    @property
    def policy(self) -> TurnConflictPolicy:
        return self._policy

    def is_active(self, conversation_id: str) -> bool:
        slot = self._slots.get(conversation_id)
        return slot is not None and slot.lock.locked()

    @asynccontextmanager
    async def acquire(self, conversation_id: str, token: CancellationToken) -> AsyncIterator[None]:
        """Hold the conversation for the duration of a turn.

        Raises:
            OrchestratorError: kind=turn_conflict when the previous turn did not
                release within the wait timeout
        """
        slot = self._slots.setdefault(conversation_id, _ConversationSlot())
        slot.users += 1
        try:
            if slot.lock.locked():
                if self._policy == TurnConflictPolicy.SUPERSEDE and slot.active_token is not None:
                    log.info(f"Superseding active turn of conversation {conversation_id}")
                    slot.active_token.cancel("superseded")
                else:
                    log.debug(f"Turn for conversation {conversation_id} waiting for the active turn")
            try:
                await asyncio.wait_for(slot.lock.acquire(), timeout=self._wait_timeout)
            except asyncio.TimeoutError as e:
                raise OrchestratorError(
                    f"Conversation {conversation_id} is busy with another turn",
                    kind=OrchestratorErrorKind.TURN_CONFLICT,
                    details={"conversation_id": conversation_id, "wait_timeout": self._wait_timeout},
                ) from e

            slot.active_token = token
            try:
                yield
            finally:
                slot.active_token = None
                slot.lock.release()
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._slots.pop(conversation_id, None)

    def cancel(self, conversation_id: str, reason: str = "cancelled_by_client") -> bool:
        """Cancel the running turn of a conversation.

        Returns:
            True if a running turn was signalled
        """
        slot = self._slots.get(conversation_id)
        if slot is None or slot.active_token is None:
            return False
        return slot.active_token.cancel(reason)
