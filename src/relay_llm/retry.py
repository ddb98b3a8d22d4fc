"""Retry engine with exponential backoff for transport calls.

The backoff wait is a suspension point like any other: an abort signal
cancels it immediately instead of letting the timer run out.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import anyio

from .errors import AbortError, AgentError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Delay for the n-th retry (0-indexed) is ``initial_delay * backoff_factor**n``,
    capped at ``max_delay``. With ``jitter`` the delay is drawn uniformly
    from [delay/2, delay].
    """

    max_retries: int = 3
    initial_delay: float = 2.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = False

    def compute_delay(self, attempt: int) -> float:
        """Compute delay for a given attempt number (0-indexed)."""
        delay = self.initial_delay * (self.backoff_factor**attempt)
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)  # noqa: S311
        return delay


OnRetryCallback = Callable[[int, AgentError, float], Awaitable[None] | None]


async def sleep_or_abort(delay: float, signal: Any | None = None) -> None:
    """Sleep for *delay* seconds, raising ``AbortError`` if *signal* fires first."""
    if signal is None:
        await anyio.sleep(delay)
        return
    if signal.is_set:
        raise AbortError("Retry aborted")
    with anyio.move_on_after(delay):
        await signal.wait()
    if signal.is_set:
        raise AbortError("Retry aborted")


async def retry_with_policy(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    on_retry: OnRetryCallback | None = None,
    signal: Any | None = None,
) -> T:
    """Execute an async function with retry logic.

    Only retries errors where ``error.retryable`` is True.

    Args:
        fn: Async callable to execute.
        policy: Retry configuration.
        on_retry: Optional callback invoked before each backoff with
            (attempt, error, delay). ``attempt`` is 0-indexed.
        signal: Optional abort signal (``is_set`` / ``wait()``). Cancels a
            pending backoff.

    Returns:
        The result of a successful ``fn()`` call.

    Raises:
        AgentError: When retries are exhausted or the error is not retryable.
        AbortError: When *signal* fires during a backoff.
        ValueError: If policy.max_retries is negative.
    """
    if policy.max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {policy.max_retries}")

    for attempt in range(policy.max_retries + 1):
        try:
            return await fn()
        except AgentError as exc:
            if not exc.retryable or attempt >= policy.max_retries:
                raise

            delay = policy.compute_delay(attempt)
            logger.info(
                "Retryable error (attempt %d/%d), backing off %.1fs: %s",
                attempt + 1,
                policy.max_retries,
                delay,
                exc,
            )

            if on_retry is not None:
                result = on_retry(attempt, exc, delay)
                if isinstance(result, Awaitable):
                    await result

            await sleep_or_abort(delay, signal)

    raise AssertionError("unreachable")  # pragma: no cover
