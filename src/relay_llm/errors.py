"""Error hierarchy for the transport layer.

Every error carries a ``retryable`` flag that the retry engine consults.
Transports are free to raise anything; ``classify_transport_error`` maps
whatever comes out of a stream onto the retryable / fatal split.
"""

from __future__ import annotations

import re


class AgentError(Exception):
    """Base error for all relay errors."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class TransportError(AgentError):
    """Error surfaced by a Transport while streaming."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class RetryableTransportError(TransportError):
    """Rate limit, overload or transient 5xx. Retried with backoff."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, retryable=True, status_code=status_code)


class FatalTransportError(TransportError):
    """Anything the retry engine should not touch. Ends the turn."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message, retryable=False, status_code=status_code)


class AbortError(AgentError):
    """Operation cancelled via abort signal. Not retryable."""

    def __init__(self, message: str = "Operation aborted") -> None:
        super().__init__(message, retryable=False)


# ------------------------------------------------------------------ #
# Classification
# ------------------------------------------------------------------ #

RETRYABLE_PATTERN = re.compile(
    r"overloaded|rate.?limit|too many requests|429|500|502|503|504"
    r"|service.?unavailable|server error|internal error",
    re.IGNORECASE,
)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def is_retryable_message(message: str) -> bool:
    """True when *message* looks like a transient provider failure."""
    return bool(RETRYABLE_PATTERN.search(message))


def classify_transport_error(error: BaseException | str) -> AgentError:
    """Map an arbitrary transport failure onto the error taxonomy.

    Already-classified errors and ``AbortError`` are returned unchanged.
    Everything else is matched on its message text.
    """
    if isinstance(error, (TransportError, AbortError)):
        return error
    if isinstance(error, AgentError):
        if error.retryable:
            return RetryableTransportError(error.message)
        return FatalTransportError(error.message)

    message = error if isinstance(error, str) else (str(error) or type(error).__name__)
    status_code = getattr(error, "status_code", None)
    if not isinstance(status_code, int):
        status_code = None

    if is_retryable_message(message) or status_code in _RETRYABLE_STATUS:
        return RetryableTransportError(message, status_code=status_code)
    return FatalTransportError(message, status_code=status_code)
