"""Async event bus bridging engine callbacks to a consumer loop.

The engine fires events via callback while a turn runs; the EventBus
queues them so a display surface (the CLI, a UI) can consume them at
its own pace.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from quill.adapters.events import EngineEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging engine callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to EngineConfig.event_callback."""
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for EngineConfig.event_callback."""
        return self._callback

    async def emit(self, event: EngineEvent) -> None:
        if self._closed:
            return
        try:
            # Block for backpressure rather than dropping immediately
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout, event.event_type, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[EngineEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed or not self._queue.empty():
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop once the queue drains."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
