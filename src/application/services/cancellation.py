"""Cooperative cancellation for turns.

A CancellationToken is created per turn and threaded through every layer.
Code checks it at suspension points; in-flight network calls are stopped
by cancelling the task that runs them (``run_cancellable``), which closes
their httpx streams on the way out.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from domain.exceptions import OrchestratorError, OrchestratorErrorKind

log = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation.

        Returns:
            True if this call cancelled the token, False if it already was
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        log.debug(f"Cancellation requested: {reason}")
        for callback in list(self._callbacks):
            try:
                callback(reason)
            except Exception as e:
                log.error(f"Cancellation callback failed: {e}")
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Run ``callback(reason)`` on cancellation (immediately if already cancelled)."""
        if self._event.is_set():
            callback(self._reason or "cancelled")
            return
        self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OrchestratorError(f"Turn cancelled: {self._reason}", kind=OrchestratorErrorKind.CANCELLED, details={"reason": self._reason})

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early (and raising) on cancellation."""
        if delay <= 0:
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


async def run_cancellable(awaitable: Awaitable[T], token: CancellationToken | None) -> T:
    """Run ``awaitable`` in its own task, cancelling it if ``token`` fires.

    The inner task is always finished (completed or cancelled and awaited)
    before this returns, so its resources are released on every exit path.

    Raises:
        OrchestratorError: kind=cancelled when the token fired first
    """
    task = asyncio.ensure_future(awaitable)
    if token is None:
        return await task

    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is None:
            # Finished in the same tick as the cancellation
            return task.result()
        token.raise_if_cancelled()
        raise OrchestratorError("Turn cancelled", kind=OrchestratorErrorKind.CANCELLED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
