"""Transport contract and stream accumulation.

A Transport is the abstract channel to an LLM backend. The core never
sees wire formats: it sends messages plus tool definitions and receives
a stream of ``TransportEvent``s.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from relay_llm.errors import classify_transport_error
from relay_llm.types import (
    Message,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    TransportEvent,
    TransportEventKind,
)


@runtime_checkable
class Transport(Protocol):
    """Streams one model response for the given conversation."""

    def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition],
        signal: Any | None = None,
    ) -> AsyncIterator[TransportEvent]: ...


@dataclass
class StreamOutcome:
    """Everything one transport response produced."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)

    def message(self) -> Message:
        return Message.assistant(self.text, self.tool_calls)


class StreamAccumulator:
    """Accumulates TransportEvents into a StreamOutcome.

    Usage::

        acc = StreamAccumulator()
        async for event in transport.stream(...):
            acc.feed(event)
            if acc.done:
                break
        outcome = acc.outcome()

    An ERROR event raises the classified transport error from ``feed``.
    """

    def __init__(self) -> None:
        self._text_chunks: list[str] = []
        self._tool_calls: list[ToolCall] = []
        self._seen_ids: set[str] = set()
        self._usage = TokenUsage()
        self.done = False

    def feed(self, event: TransportEvent) -> None:
        """Process a single transport event."""
        match event.kind:
            case TransportEventKind.TEXT_DELTA:
                if event.text:
                    self._text_chunks.append(event.text)

            case TransportEventKind.TOOL_CALL:
                if event.tool_call_id and event.tool_name:
                    if event.tool_call_id in self._seen_ids:
                        return
                    self._seen_ids.add(event.tool_call_id)
                    self._tool_calls.append(
                        ToolCall(
                            id=event.tool_call_id,
                            name=event.tool_name,
                            input=dict(event.arguments or {}),
                        )
                    )

            case TransportEventKind.USAGE:
                if event.usage:
                    self._usage = self._usage + event.usage

            case TransportEventKind.ERROR:
                raise classify_transport_error(
                    _StatusError(event.error or "Unknown transport error", event.status_code)
                )

            case TransportEventKind.DONE:
                self.done = True

    @property
    def text(self) -> str:
        return "".join(self._text_chunks)

    def outcome(self) -> StreamOutcome:
        return StreamOutcome(
            text=self.text,
            tool_calls=list(self._tool_calls),
            usage=self._usage,
        )


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int | None) -> None:
        super().__init__(message)
        self.status_code = status_code
