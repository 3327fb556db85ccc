"""In-process event bus for work that happens after a turn commits.

The turn that emits an event never waits for its handlers. A handler that
raises is logged and the others still run.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# A chat's first exchange committed; data carries user_text and assistant_text
TURN_COMPLETED = "turn_completed"

EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    type: str
    chat_id: str
    data: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Bounded queue drained by one background task."""

    def __init__(self, max_queue: int = 1000):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def on(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)
        logger.debug("Subscribed %s to %s", handler.__qualname__, event_type)

    async def emit(self, event: Event) -> None:
        """Enqueue without blocking. A full queue drops the event."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full (%d), dropping %s for chat %s", self._queue.maxsize, event.type, event.chat_id)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._consume(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Cancel the consumer, then deliver what is still queued."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._drain()
        logger.info("Event bus stopped")

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Event bus failed delivering %s", event.type)

    async def _drain(self) -> None:
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._deliver(event)

    async def _deliver(self, event: Event) -> None:
        handlers = self._subscribers.get(event.type)
        if handlers:
            await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception("Handler %s failed for %s in chat %s", handler.__qualname__, event.type, event.chat_id)
