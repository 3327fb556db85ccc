"""Turn streaming: decouples a running turn from the client reading it.

The turn runs in its own task and feeds a queue; the HTTP response drains
the queue as SSE. When the client goes away the reader detaches, events
stop being buffered, and the turn still runs to completion and commits.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator

from colloquy.api.runner import TurnEvent

logger = logging.getLogger(__name__)

# Strong references so detached turns are not garbage-collected mid-flight
_background: set[asyncio.Task] = set()


def format_sse(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


class TurnStream:
    def __init__(self, events: AsyncIterator[TurnEvent], name: str = "turn") -> None:
        self._queue: asyncio.Queue[TurnEvent | None] = asyncio.Queue()
        self._detached = False
        self._task = asyncio.create_task(self._pump(events), name=name)
        _background.add(self._task)
        self._task.add_done_callback(_background.discard)

    @property
    def detached(self) -> bool:
        return self._detached

    async def _pump(self, events: AsyncIterator[TurnEvent]) -> None:
        try:
            async for event in events:
                if not self._detached:
                    self._queue.put_nowait(event)
        except Exception:
            logger.exception("Turn stream %s failed", self._task.get_name())
        finally:
            self._queue.put_nowait(None)

    def detach(self) -> None:
        """Stop delivering events. The turn itself keeps running."""
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            if self._queue.get_nowait() is None:
                # Keep the end marker so a later reader still terminates
                self._queue.put_nowait(None)
                break
        if not self._task.done():
            logger.info("Client detached from %s; turn continues in background", self._task.get_name())

    async def events(self) -> AsyncGenerator[TurnEvent, None]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def sse(self) -> AsyncGenerator[str, None]:
        """SSE body for StreamingResponse. Detaches on disconnect."""
        try:
            async for event in self.events():
                yield format_sse(event.to_dict())
        finally:
            self.detach()

    async def wait(self) -> None:
        """Wait for the turn to finish (committed or failed)."""
        await asyncio.shield(self._task)
