"""Tool output truncation engine.

Byte caps and line caps with explicit indicators marking where content was
cut. Every function reports how much was dropped so callers can decide to
persist the full output somewhere else (see ``write_temp_file``).

Two tiers of limits travel in the execution context:
- ``text``: byte cap + line cap, used for file reads and generic output.
- ``command``: byte cap only, used for shell output.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

DEFAULT_HEAD_INDICATOR = "\n--- (output truncated: head) ---\n"
DEFAULT_TAIL_INDICATOR = "\n--- (output truncated: tail) ---\n"
DEFAULT_LINE_INDICATOR = "\n--- (additional lines truncated) ---\n"
DEFAULT_COMMAND_INDICATOR = "\n--- (command output truncated) ---\n"


class TruncationPosition(StrEnum):
    """Which end of the output is dropped.

    TAIL keeps the beginning (the default); HEAD keeps the end, which is what
    you want for the last lines of a long log.
    """

    HEAD = "head"
    TAIL = "tail"


@dataclass(frozen=True)
class TextTruncation:
    max_bytes: int = 32_768
    max_lines: int = 400
    head_indicator: str = DEFAULT_HEAD_INDICATOR
    tail_indicator: str = DEFAULT_TAIL_INDICATOR
    line_indicator: str = DEFAULT_LINE_INDICATOR


@dataclass(frozen=True)
class CommandTruncation:
    max_bytes: int = 65_536
    tail_indicator: str = DEFAULT_COMMAND_INDICATOR


@dataclass(frozen=True)
class TruncationConfig:
    """Two-tier truncation limits carried by every execution context."""

    text: TextTruncation = field(default_factory=TextTruncation)
    command: CommandTruncation = field(default_factory=CommandTruncation)

    def merged(
        self,
        text: Mapping[str, Any] | None = None,
        command: Mapping[str, Any] | None = None,
    ) -> TruncationConfig:
        """Return a new config with per-tier overrides applied."""
        return TruncationConfig(
            text=replace(self.text, **dict(text or {})),
            command=replace(self.command, **dict(command or {})),
        )


@dataclass(frozen=True)
class TruncationResult:
    value: str
    truncated: bool
    omitted_bytes: int = 0
    omitted_lines: int = 0
    indicator: str | None = None


def _clamp(limit: int | float | None) -> int:
    if limit is None or limit != limit or limit <= 0:  # None, NaN, non-positive
        return 0
    return int(limit)


def _count_lines(value: str) -> int:
    return len(value.splitlines())


def truncate_tail(
    value: str, max_bytes: int, indicator: str = DEFAULT_TAIL_INDICATOR
) -> TruncationResult:
    """Keep the first *max_bytes* bytes and append *indicator*."""
    limit = _clamp(max_bytes)
    data = value.encode("utf-8")
    if limit == 0:
        return TruncationResult("", bool(value), len(data), _count_lines(value), indicator)
    if len(data) <= limit:
        return TruncationResult(value, False)

    # errors="ignore" drops a multi-byte sequence split by the cut
    kept = data[:limit].decode("utf-8", errors="ignore")
    omitted = len(data) - len(kept.encode("utf-8"))
    return TruncationResult(f"{kept}{indicator}", True, omitted, indicator=indicator)


def truncate_head(
    value: str, max_bytes: int, indicator: str = DEFAULT_HEAD_INDICATOR
) -> TruncationResult:
    """Keep the last *max_bytes* bytes and prepend *indicator*."""
    limit = _clamp(max_bytes)
    data = value.encode("utf-8")
    if limit == 0:
        return TruncationResult("", bool(value), len(data), _count_lines(value), indicator)
    if len(data) <= limit:
        return TruncationResult(value, False)

    kept = data[len(data) - limit :].decode("utf-8", errors="ignore")
    omitted = len(data) - len(kept.encode("utf-8"))
    return TruncationResult(f"{indicator}{kept}", True, omitted, indicator=indicator)


def truncate_lines(
    value: str,
    max_lines: int,
    indicator: str = DEFAULT_LINE_INDICATOR,
    position: TruncationPosition | str = TruncationPosition.TAIL,
) -> TruncationResult:
    """Cap *value* at *max_lines* lines, dropping from the given end.

    Kept lines keep their original line endings.
    """
    limit = _clamp(max_lines)
    if limit == 0:
        lines = _count_lines(value)
        return TruncationResult(
            "", lines > 0, len(value.encode("utf-8")), lines, indicator
        )

    lines = value.splitlines(keepends=True)
    if len(lines) <= limit:
        return TruncationResult(value, False)

    removed = len(lines) - limit
    if TruncationPosition(position) == TruncationPosition.HEAD:
        kept = "".join(lines[removed:])
        result = f"{indicator}{kept}"
    else:
        # The break after the last kept line belongs to the cut
        kept = "".join(lines[: limit - 1]) + lines[limit - 1].rstrip("\r\n")
        result = f"{kept}{indicator}"
    omitted = len(value.encode("utf-8")) - len(kept.encode("utf-8"))
    return TruncationResult(result, True, omitted, removed, indicator)


def summarize_text(
    value: str,
    config: TextTruncation | None = None,
    *,
    max_bytes: int | None = None,
    max_lines: int | None = None,
) -> TruncationResult:
    """Apply the text tier: byte pass (keep beginning) then line pass.

    Explicit *max_bytes* / *max_lines* override the config's caps. A cap of
    zero disables that pass. Omitted bytes and lines are measured against
    the content kept by both passes, indicators excluded.
    """
    if config is None:
        config = TextTruncation()
    byte_limit = _clamp(config.max_bytes if max_bytes is None else max_bytes)
    line_limit = _clamp(config.max_lines if max_lines is None else max_lines)

    kept = value
    indicator: str | None = None

    if byte_limit > 0:
        result = truncate_tail(kept, byte_limit, "")
        if result.truncated:
            kept = result.value
            indicator = config.tail_indicator

    if line_limit > 0:
        result = truncate_lines(kept, line_limit, "")
        if result.truncated:
            kept = result.value
            indicator = config.line_indicator

    if indicator is None:
        return TruncationResult(value, False)
    return TruncationResult(
        f"{kept}{indicator}",
        True,
        len(value.encode("utf-8")) - len(kept.encode("utf-8")),
        _count_lines(value) - _count_lines(kept),
        indicator,
    )


def truncate_command_output(
    value: str, config: CommandTruncation | None = None
) -> TruncationResult:
    """Apply the command tier: byte cap only, keep the beginning."""
    if config is None:
        config = CommandTruncation()
    return truncate_tail(value, config.max_bytes, config.tail_indicator)
