"""Tests for the bounded prompt queue."""

from __future__ import annotations

import pytest

from relay_agent.errors import QueueFullError
from relay_agent.prompt_queue import PromptQueue


class TestPromptQueue:
    def test_fifo(self):
        queue = PromptQueue()
        assert queue.push("one") == 1
        assert queue.push("two") == 2
        assert queue.shift().text == "one"
        assert queue.shift().text == "two"
        assert queue.shift() is None

    def test_full_queue_rejects_with_depth(self):
        queue = PromptQueue(max_depth=2)
        queue.push("a")
        queue.push("b")
        with pytest.raises(QueueFullError) as exc_info:
            queue.push("c")
        assert exc_info.value.depth == 2
        assert queue.peek_all() == ["a", "b"]

    def test_drain_to_text(self):
        queue = PromptQueue()
        assert queue.drain_to_text() is None
        queue.push("first")
        queue.push("second")
        assert queue.drain_to_text() == "first\nsecond"
        assert len(queue) == 0
        assert not queue

    def test_change_listener(self):
        depths: list[int] = []
        queue = PromptQueue(on_change=depths.append)
        queue.push("a")
        queue.push("b")
        queue.shift()
        queue.clear()
        queue.clear()  # already empty: no notification
        assert depths == [1, 2, 1, 0]

    def test_failing_listener_does_not_break_queue(self):
        def explode(depth):
            raise RuntimeError("ui gone")

        queue = PromptQueue(on_change=explode)
        assert queue.push("a") == 1

    def test_invalid_depth(self):
        with pytest.raises(ValueError):
            PromptQueue(max_depth=0)
