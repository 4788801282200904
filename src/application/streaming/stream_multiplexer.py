"""Stream multiplexer between a turn and one live client connection.

The orchestrator pushes canonical deltas and persisted messages; the
client transport (SSE response or websocket) drains frames in the same
order. The queue is bounded:

- heartbeat frames are inserted when the stream has been silent for
  ``heartbeat_interval`` seconds
- when the queue is full, the oldest queued heartbeat is dropped to make
  room; content frames are never dropped
- with no heartbeat left to drop, producers wait (backpressure) until the
  consumer catches up

Exactly one terminal frame (``done`` or ``error``) is ever emitted. A client
disconnect triggers ``on_disconnect`` (turn cancellation) and releases any
waiting producer.
"""

import asyncio
import json
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from domain.exceptions import StreamClosedError
from domain.models import CanonicalDelta, Message
from observability import stream_backpressure_waits, stream_heartbeats, stream_heartbeats_dropped

log = logging.getLogger(__name__)


class FrameKind(str, Enum):
    DELTA = "delta"
    MESSAGE = "message"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class StreamFrame:
    """One unit pushed to the client.

    Attributes:
        kind: Frame category
        event: Event name on the wire (delta type, "message" or "heartbeat")
        data: JSON-serializable payload
        terminal: True for the single done/error frame ending the stream
    """

    kind: FrameKind
    event: str
    data: dict[str, Any] = field(default_factory=dict)
    terminal: bool = False

    @classmethod
    def from_delta(cls, delta: CanonicalDelta) -> "StreamFrame":
        return cls(FrameKind.DELTA, delta.type.value, dict(delta.payload), terminal=delta.is_terminal)

    @classmethod
    def from_message(cls, message: Message) -> "StreamFrame":
        return cls(FrameKind.MESSAGE, "message", message.to_dict())

    @classmethod
    def heartbeat(cls) -> "StreamFrame":
        return cls(FrameKind.HEARTBEAT, "heartbeat", {"timestamp": datetime.now(UTC).isoformat()})

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, default=str)}\n\n"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event, "kind": self.kind.value, "data": self.data}


class StreamMultiplexer:
    """Bounded, ordered frame queue for one client connection."""

    def __init__(
        self,
        max_queue_size: int = 256,
        heartbeat_interval: float = 15.0,
        on_disconnect: Callable[[str], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        self._max_queue_size = max_queue_size
        self._heartbeat_interval = heartbeat_interval
        self._on_disconnect = on_disconnect
        self._clock = clock
        self._queue: deque[StreamFrame] = deque()
        self._condition = asyncio.Condition()
        self._terminal_queued = False
        self._disconnected = False
        self._last_activity = clock()
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def is_disconnected(self) -> bool:
        return self._disconnected

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_queued

    @property
    def queued(self) -> int:
        return len(self._queue)

    # =========================================================================
    # Producer side
    # =========================================================================

    async def send_delta(self, delta: CanonicalDelta) -> None:
        """Queue a canonical delta, waiting while the queue is full of content.

        Raises:
            StreamClosedError: If the terminal event was already queued
        """
        await self._put(StreamFrame.from_delta(delta))

    async def send_message(self, message: Message) -> None:
        """Queue a persisted message (tool results appended mid-turn)."""
        await self._put(StreamFrame.from_message(message))

    async def _put(self, frame: StreamFrame) -> None:
        async with self._condition:
            if self._terminal_queued:
                raise StreamClosedError(f"Stream already terminated, cannot send '{frame.event}'")
            if frame.terminal:
                self._terminal_queued = True
            if self._disconnected:
                # Nobody is listening any more
                return

            waited = False
            while len(self._queue) >= self._max_queue_size and not self._disconnected:
                if self._drop_oldest_heartbeat():
                    continue
                if not waited:
                    waited = True
                    stream_backpressure_waits.add(1)
                    log.debug("Stream queue full, applying backpressure")
                await self._condition.wait()

            if self._disconnected:
                return
            self._queue.append(frame)
            self._last_activity = self._clock()
            self._condition.notify_all()

    def _drop_oldest_heartbeat(self) -> bool:
        for index, queued in enumerate(self._queue):
            if queued.kind == FrameKind.HEARTBEAT:
                del self._queue[index]
                stream_heartbeats_dropped.add(1)
                return True
        return False

    async def send_heartbeat(self) -> bool:
        """Queue a heartbeat without ever blocking.

        Returns:
            False when the heartbeat was dropped because the queue is full of content
        """
        async with self._condition:
            if self._terminal_queued or self._disconnected:
                return False
            if len(self._queue) >= self._max_queue_size and not self._drop_oldest_heartbeat():
                stream_heartbeats_dropped.add(1)
                log.warning("Stream queue full of content, heartbeat dropped")
                return False
            self._queue.append(StreamFrame.heartbeat())
            self._last_activity = self._clock()
            stream_heartbeats.add(1)
            self._condition.notify_all()
            return True

    async def _heartbeat_loop(self) -> None:
        while not self._terminal_queued and not self._disconnected:
            silent_for = self._clock() - self._last_activity
            if silent_for >= self._heartbeat_interval:
                await self.send_heartbeat()
                continue
            await asyncio.sleep(self._heartbeat_interval - silent_for)

    # =========================================================================
    # Consumer side
    # =========================================================================

    def start(self) -> None:
        """Start the heartbeat task (idempotent)."""
        if self._heartbeat_task is None and self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def frames(self) -> AsyncIterator[StreamFrame]:
        """Yield frames in order until the terminal frame or a disconnect."""
        self.start()
        try:
            while True:
                async with self._condition:
                    while not self._queue and not self._disconnected:
                        await self._condition.wait()
                    if not self._queue:
                        return
                    frame = self._queue.popleft()
                    self._condition.notify_all()
                yield frame
                if frame.terminal:
                    return
        finally:
            await self.close()

    async def disconnect(self, reason: str = "client_disconnected") -> None:
        """Handle loss of the client: cancel the turn and stop forwarding."""
        async with self._condition:
            if self._disconnected:
                return
            self._disconnected = True
            self._queue.clear()
            self._condition.notify_all()
        log.info(f"Client stream disconnected: {reason}")
        if self._on_disconnect is not None:
            self._on_disconnect(reason)
        await self.close()

    async def close(self) -> None:
        """Stop the heartbeat task."""
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
