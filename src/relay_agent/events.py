"""Engine notifications for observers (UI, logging, tests).

The engine never relies on implicit reactivity: every state change and
every noteworthy step is pushed through an EventEmitter.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EngineEventKind(StrEnum):
    STATE_CHANGED = "state.changed"

    TURN_START = "turn.start"
    TURN_END = "turn.end"

    TEXT_DELTA = "text.delta"

    TOOL_CALL_START = "tool.call_start"
    TOOL_CALL_END = "tool.call_end"

    # Transient retry status; cleared on success, exhaustion or abort
    RETRY_SCHEDULED = "retry.scheduled"
    RETRY_CLEARED = "retry.cleared"

    QUEUE_CHANGED = "queue.changed"
    ERROR = "error"


@dataclass
class EngineEvent:
    """A single event emitted by the turn engine."""

    kind: EngineEventKind
    data: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[EngineEvent], Awaitable[None] | None]


class EventEmitter:
    """Event emitter for engine events.

    Supports both sync and async handlers, called in registration order.
    Handler exceptions are logged and do not break the engine.

    Also supports an async iterator interface via ``events()``, backed by
    an ``asyncio.Queue``. Call ``close()`` to end iteration.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._queue: asyncio.Queue[EngineEvent | None] | None = None
        self._pending: set[asyncio.Future[Any]] = set()

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Register an event handler. Returns an unsubscribe function."""
        self._handlers.append(handler)
        return lambda: self.off(handler)

    def off(self, handler: EventHandler) -> None:
        self._handlers = [h for h in self._handlers if h is not handler]

    async def emit(self, event: EngineEvent) -> None:
        if self._queue is not None:
            self._queue.put_nowait(event)
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if isinstance(result, Awaitable):
                    await result
            except Exception:
                logger.exception("Engine event handler failed for %s", event.kind)

    def emit_nowait(self, event: EngineEvent) -> None:
        """Deliver to sync handlers and the queue; schedule async handlers."""
        if self._queue is not None:
            self._queue.put_nowait(event)
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if isinstance(result, Awaitable):
                    future = asyncio.ensure_future(result)
                    self._pending.add(future)
                    future.add_done_callback(self._handler_done)
            except Exception:
                logger.exception("Engine event handler failed for %s", event.kind)

    def _handler_done(self, future: asyncio.Future[Any]) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Engine event handler failed", exc_info=exc)

    async def close(self) -> None:
        """Signal termination to an ``async for`` consumer.

        Waits for handlers scheduled by ``emit_nowait`` first.
        """
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._queue is not None:
            self._queue.put_nowait(None)

    async def events(self) -> AsyncGenerator[EngineEvent, None]:
        """Yield events as they are emitted until ``close()``.

        Only one concurrent consumer is supported.
        """
        if self._queue is None:
            self._queue = asyncio.Queue()
        while True:
            item = await self._queue.get()
            if item is None:
                break
            yield item
