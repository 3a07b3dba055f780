"""Progress events and the fan-out channel that carries them to subscribers.

Each subscriber gets its own bounded queue. Intermediate progress is
best-effort: a subscriber that falls behind simply misses some updates. The
terminal event is never dropped; if a queue is full, queued intermediates are
discarded to make room, and subscribers that join after the run finished
receive the terminal event immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 256


class SyncState(StrEnum):
    PENDING = "pending"
    ENSURING_TOKEN = "ensuring_token"
    FETCHING = "fetching"
    MATCHING = "matching"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {SyncState.COMPLETED, SyncState.FAILED, SyncState.CANCELLED, SyncState.TIMED_OUT}
)


class ProgressEventType(StrEnum):
    STATE = "state"
    PROGRESS = "progress"
    MONTH_STARTED = "month_started"
    MONTH_RESULT = "month_result"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ERROR = "error"


TERMINAL_EVENT_TYPES = {
    SyncState.COMPLETED: ProgressEventType.COMPLETE,
    SyncState.FAILED: ProgressEventType.ERROR,
    SyncState.CANCELLED: ProgressEventType.CANCELLED,
    SyncState.TIMED_OUT: ProgressEventType.TIMED_OUT,
}


class SyncProgressEvent(BaseModel):
    """One update about a sync run, safe to send to the browser as-is."""

    type: ProgressEventType
    run_id: str
    connection_id: str
    state: SyncState
    page: int = 0
    events_scanned: int = 0
    meetings_matched: int = 0
    meetings_written: int = 0
    errors: int = 0
    last_analyst_name: str | None = None
    month: str | None = None
    month_events: int | None = None
    month_matches: int | None = None
    message: str | None = None
    reason: str | None = None
    error_type: str | None = None
    needs_reconnect: bool = False
    partial_count: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES and self.type in TERMINAL_EVENT_TYPES.values()

    def to_sse(self) -> str:
        return f"event: {self.type.value}\ndata: {self.model_dump_json()}\n\n"


class Subscription:
    """One consumer's view of a ``ProgressChannel``."""

    def __init__(self, channel: ProgressChannel, queue: asyncio.Queue) -> None:
        self._channel = channel
        self._queue = queue
        self._done = False

    async def get(self) -> SyncProgressEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._channel._unsubscribe(self._queue)

    async def __aiter__(self) -> AsyncIterator[SyncProgressEvent]:
        try:
            while not self._done:
                event = await self._queue.get()
                if event.terminal:
                    self._done = True
                yield event
        finally:
            self.close()


class ProgressChannel:
    def __init__(self, *, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: list[asyncio.Queue] = []
        self._latest: SyncProgressEvent | None = None
        self._terminal: SyncProgressEvent | None = None
        self.dropped = 0

    @property
    def terminal_event(self) -> SyncProgressEvent | None:
        return self._terminal

    @property
    def latest_event(self) -> SyncProgressEvent | None:
        return self._terminal or self._latest

    def subscribe(self) -> Subscription:
        """Register a new subscriber, primed with the latest known event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        if self._terminal is not None:
            queue.put_nowait(self._terminal)
        else:
            if self._latest is not None:
                queue.put_nowait(self._latest)
            self._subscribers.append(queue)
        return Subscription(self, queue)

    def publish(self, event: SyncProgressEvent) -> None:
        """Deliver *event* to every subscriber without blocking."""
        if self._terminal is not None:
            logger.debug("Ignoring %s event published after terminal event", event.type)
            return
        if event.terminal:
            self._terminal = event
            for queue in self._subscribers:
                while queue.full():
                    queue.get_nowait()
                    self.dropped += 1
                queue.put_nowait(event)
            self._subscribers.clear()
            return

        self._latest = event
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1

    def _unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
