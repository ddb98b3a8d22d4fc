"""Cooperative cancellation for turns, retries and tool executions.

One AbortSignal is threaded through the active turn. Each tool execution
gets a child signal so it can be cancelled (e.g. on timeout) without
aborting its siblings, while aborting the turn still reaches every child.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from relay_llm.errors import AbortError

logger = logging.getLogger(__name__)


class AbortSignal:
    """A one-shot, idempotent cancellation flag with callbacks."""

    def __init__(self) -> None:
        self._set = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._event = asyncio.Event()

    @property
    def is_set(self) -> bool:
        return self._set

    @property
    def reason(self) -> str | None:
        return self._reason

    def set(self, reason: str = "aborted") -> None:
        """Fire the signal. Calling it again is a no-op."""
        if self._set:
            return
        self._set = True
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Abort callback failed")

    def on_abort(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; fires immediately if already set.

        Returns a function that unregisters the callback.
        """
        if self._set:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> None:
        """Block until the signal fires."""
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self._set:
            raise AbortError(self._reason or "Operation aborted")

    def child(self) -> tuple[AbortSignal, Callable[[], None]]:
        """Derive a signal that fires when this one does.

        Returns the child and a function that detaches it from the parent.
        """
        child = AbortSignal()
        detach = self.on_abort(lambda: child.set(self._reason or "aborted"))
        return child, detach
