"""Hook event types and payloads.

Observational events carry a flat payload. Events that hooks may mutate
carry an ``input``/``output`` pair: handlers read ``input`` and rewrite
``output`` (in place or by returning a replacement).

Every event carries ``session_id`` (None before a session starts).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

from relay_llm.types import ContentPart, ImageData, Message, TokenUsage


class HookEventType(StrEnum):
    APP_START = "app.start"

    SESSION_START = "session.start"
    SESSION_RESUME = "session.resume"
    SESSION_CLEAR = "session.clear"

    AGENT_BEFORE_START = "agent.before_start"
    AGENT_START = "agent.start"
    AGENT_END = "agent.end"

    TURN_START = "turn.start"
    TURN_END = "turn.end"

    CHAT_MESSAGE = "chat.message"
    CHAT_SYSTEM_TRANSFORM = "chat.system.transform"
    CHAT_MESSAGES_TRANSFORM = "chat.messages.transform"

    TOOL_EXECUTE_BEFORE = "tool.execute.before"
    TOOL_EXECUTE_AFTER = "tool.execute.after"


@dataclass(kw_only=True)
class HookEvent:
    """Base class for all hook events."""

    type: ClassVar[HookEventType]
    session_id: str | None = None


# ------------------------------------------------------------------ #
# Observational events
# ------------------------------------------------------------------ #


@dataclass(kw_only=True)
class AppStartEvent(HookEvent):
    type = HookEventType.APP_START
    cwd: str


@dataclass(kw_only=True)
class SessionStartEvent(HookEvent):
    type = HookEventType.SESSION_START
    path: str | None = None


@dataclass(kw_only=True)
class SessionResumeEvent(HookEvent):
    type = HookEventType.SESSION_RESUME
    path: str | None = None


@dataclass(kw_only=True)
class SessionClearEvent(HookEvent):
    type = HookEventType.SESSION_CLEAR


@dataclass(kw_only=True)
class AgentStartEvent(HookEvent):
    type = HookEventType.AGENT_START
    prompt: str


@dataclass(kw_only=True)
class AgentEndEvent(HookEvent):
    type = HookEventType.AGENT_END
    messages: list[Message] = field(default_factory=list)
    status: str = "done"


@dataclass(kw_only=True)
class TurnStartEvent(HookEvent):
    type = HookEventType.TURN_START
    turn_index: int


@dataclass(kw_only=True)
class TurnEndEvent(HookEvent):
    type = HookEventType.TURN_END
    turn_index: int
    status: str
    message: Message | None = None
    tool_results: list[Message] = field(default_factory=list)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    context_limit: int | None = None
    error: str | None = None


# ------------------------------------------------------------------ #
# First-meaningful-result event
# ------------------------------------------------------------------ #


@dataclass
class HookMessage:
    """A hook-authored message injected into the conversation."""

    custom_type: str
    content: str | list[ContentPart]
    display: bool = True
    details: Any = None

    @classmethod
    def coerce(cls, value: Any) -> HookMessage:
        if isinstance(value, HookMessage):
            return value
        if isinstance(value, Mapping):
            return cls(
                custom_type=value.get("custom_type") or value.get("customType") or "hook",
                content=value.get("content", ""),
                display=bool(value.get("display", True)),
                details=value.get("details"),
            )
        raise TypeError(f"Cannot build a HookMessage from {type(value).__name__}")

    def parts(self) -> list[ContentPart]:
        if isinstance(self.content, str):
            return [ContentPart.text_part(self.content)]
        return list(self.content)


@dataclass(kw_only=True)
class BeforeAgentStartEvent(HookEvent):
    type = HookEventType.AGENT_BEFORE_START
    prompt: str
    images: list[ImageData] = field(default_factory=list)


@dataclass
class BeforeAgentStartResult:
    message: HookMessage | None = None


# ------------------------------------------------------------------ #
# Chained-mutation events
# ------------------------------------------------------------------ #


@dataclass
class ChatMessageInput:
    session_id: str | None
    text: str


@dataclass
class ChatMessageOutput:
    parts: list[ContentPart]


@dataclass(kw_only=True)
class ChatMessageEvent(HookEvent):
    type = HookEventType.CHAT_MESSAGE
    input: ChatMessageInput
    output: ChatMessageOutput


@dataclass
class SystemTransformInput:
    model_id: str | None = None


@dataclass
class SystemTransformOutput:
    system_prompt: str


@dataclass(kw_only=True)
class ChatSystemTransformEvent(HookEvent):
    type = HookEventType.CHAT_SYSTEM_TRANSFORM
    input: SystemTransformInput = field(default_factory=SystemTransformInput)
    output: SystemTransformOutput


@dataclass
class MessagesTransformInput:
    turn_index: int = 0


@dataclass
class MessagesTransformOutput:
    messages: list[Message]


@dataclass(kw_only=True)
class ChatMessagesTransformEvent(HookEvent):
    type = HookEventType.CHAT_MESSAGES_TRANSFORM
    input: MessagesTransformInput = field(default_factory=MessagesTransformInput)
    output: MessagesTransformOutput


# ------------------------------------------------------------------ #
# Tool interception
# ------------------------------------------------------------------ #


@dataclass(kw_only=True)
class ToolExecuteBeforeEvent(HookEvent):
    type = HookEventType.TOOL_EXECUTE_BEFORE
    tool_name: str
    tool_call_id: str
    input: dict[str, Any]


@dataclass
class BeforeToolResult:
    """``block=True`` rejects the call; ``input`` rewrites its arguments."""

    block: bool = False
    reason: str | None = None
    input: dict[str, Any] | None = None

    @classmethod
    def coerce(cls, value: Any) -> BeforeToolResult:
        if isinstance(value, BeforeToolResult):
            return value
        if isinstance(value, Mapping):
            return cls(
                block=bool(value.get("block", False)),
                reason=value.get("reason"),
                input=value.get("input"),
            )
        raise TypeError(f"Unexpected tool.execute.before result: {type(value).__name__}")


@dataclass(kw_only=True)
class ToolExecuteAfterEvent(HookEvent):
    type = HookEventType.TOOL_EXECUTE_AFTER
    tool_name: str
    tool_call_id: str
    input: dict[str, Any]
    content: list[ContentPart]
    details: Any = None
    is_error: bool = False


@dataclass
class AfterToolResult:
    """Fields left as None are not rewritten."""

    content: list[ContentPart] | None = None
    details: Any = None
    is_error: bool | None = None

    @classmethod
    def coerce(cls, value: Any) -> AfterToolResult:
        if isinstance(value, AfterToolResult):
            result = value
        elif isinstance(value, Mapping):
            result = cls(
                content=value.get("content"),
                details=value.get("details"),
                is_error=value.get("is_error", value.get("isError")),
            )
        else:
            raise TypeError(f"Unexpected tool.execute.after result: {type(value).__name__}")
        if isinstance(result.content, str):
            result.content = [ContentPart.text_part(result.content)]
        return result

    @property
    def empty(self) -> bool:
        return self.content is None and self.details is None and self.is_error is None
