"""Bounded FIFO of prompts submitted while a turn is active."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from relay_agent.errors import QueueFullError
from relay_llm.types import ImageData

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32


@dataclass(frozen=True)
class QueuedPrompt:
    text: str
    images: list[ImageData] = field(default_factory=list)


class PromptQueue:
    """FIFO of pending prompts with a hard depth limit.

    ``on_change`` (if given) is called with the new depth after every
    mutation, for UI feedback.
    """

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        on_change: Callable[[int], None] | None = None,
    ) -> None:
        if max_depth < 1:
            raise ValueError(f"max_depth must be >= 1, got {max_depth}")
        self._items: deque[QueuedPrompt] = deque()
        self._max_depth = max_depth
        self._on_change = on_change

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def push(self, text: str, images: list[ImageData] | None = None) -> int:
        """Append a prompt and return the new depth.

        Raises ``QueueFullError`` instead of dropping input.
        """
        if len(self._items) >= self._max_depth:
            raise QueueFullError(len(self._items), self._max_depth)
        self._items.append(QueuedPrompt(text=text, images=list(images or [])))
        self._changed()
        return len(self._items)

    def shift(self) -> QueuedPrompt | None:
        """Remove and return the oldest prompt, or None."""
        if not self._items:
            return None
        item = self._items.popleft()
        self._changed()
        return item

    def peek_all(self) -> list[str]:
        return [item.text for item in self._items]

    def drain_to_text(self) -> str | None:
        """Join all queued texts (newline-separated, FIFO) and clear."""
        if not self._items:
            return None
        text = "\n".join(item.text for item in self._items)
        self._items.clear()
        self._changed()
        return text

    def clear(self) -> None:
        if self._items:
            self._items.clear()
            self._changed()

    def _changed(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(len(self._items))
        except Exception:
            logger.exception("Prompt queue change listener failed")
