"""Core data model shared by transports and the agent core.

All types use Pydantic v2 for validation and serialization. Messages are
frozen once built; content parts and tool results are plain models.
"""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class Role(StrEnum):
    """Message roles."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    HOOK = "hook"


class ContentPartKind(StrEnum):
    """Content part types."""

    TEXT = "text"
    IMAGE = "image"
    TOOL_CALL = "tool_call"


class ImageData(BaseModel):
    """Image content, either base64 data or a URL."""

    data: str | None = None
    url: str | None = None
    media_type: str = "image/png"

    @model_validator(mode="after")
    def _check_source(self) -> Self:
        if self.data is None and self.url is None:
            raise ValueError("ImageData requires either 'data' or 'url'")
        return self


class ContentPart(BaseModel):
    """Tagged union for message content parts.

    Only fields relevant to the kind should be set. A model validator
    enforces required fields per kind at construction time.
    """

    kind: ContentPartKind

    # TEXT
    text: str | None = None

    # IMAGE
    image: ImageData | None = None

    # TOOL_CALL
    tool_call_id: str | None = None
    name: str | None = None
    arguments: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _validate_kind_fields(self) -> Self:
        match self.kind:
            case ContentPartKind.TEXT:
                if self.text is None:
                    raise ValueError("TEXT content part requires 'text'")
            case ContentPartKind.IMAGE:
                if self.image is None:
                    raise ValueError("IMAGE content part requires 'image'")
            case ContentPartKind.TOOL_CALL:
                if self.tool_call_id is None or self.name is None:
                    raise ValueError("TOOL_CALL content part requires 'tool_call_id' and 'name'")
        return self

    @classmethod
    def text_part(cls, text: str) -> ContentPart:
        return cls(kind=ContentPartKind.TEXT, text=text)

    @classmethod
    def image_part(cls, image: ImageData) -> ContentPart:
        return cls(kind=ContentPartKind.IMAGE, image=image)

    @classmethod
    def tool_call_part(
        cls, tool_call_id: str, name: str, arguments: dict[str, Any]
    ) -> ContentPart:
        return cls(
            kind=ContentPartKind.TOOL_CALL,
            tool_call_id=tool_call_id,
            name=name,
            arguments=arguments,
        )


class TokenUsage(BaseModel):
    """Provider-neutral token accounting.

    ``total`` is the context footprint: every token that went in or came out,
    cached or not.
    """

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_write

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_read=self.cache_read + other.cache_read,
            cache_write=self.cache_write + other.cache_write,
        )


class Message(BaseModel):
    """A single conversation message. Frozen once constructed."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: list[ContentPart] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)

    # TOOL_RESULT
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False
    details: Any = None

    # HOOK
    custom_type: str | None = None
    display: bool = True

    @classmethod
    def user(cls, text: str, images: list[ImageData] | None = None) -> Message:
        parts = [ContentPart.text_part(text)]
        parts.extend(ContentPart.image_part(img) for img in images or [])
        return cls(role=Role.USER, content=parts)

    @classmethod
    def assistant(cls, text: str, tool_calls: list[ToolCall] | None = None) -> Message:
        parts: list[ContentPart] = []
        if text:
            parts.append(ContentPart.text_part(text))
        for call in tool_calls or []:
            parts.append(ContentPart.tool_call_part(call.id, call.name, call.input))
        return cls(role=Role.ASSISTANT, content=parts)

    @classmethod
    def tool_result(cls, call: ToolCall, result: ToolResult) -> Message:
        return cls(
            role=Role.TOOL_RESULT,
            content=list(result.content),
            tool_call_id=call.id,
            tool_name=call.name,
            is_error=result.is_error,
            details=result.details,
        )

    @property
    def text(self) -> str:
        """Concatenated text of all TEXT parts."""
        return "".join(p.text or "" for p in self.content if p.kind == ContentPartKind.TEXT)

    @property
    def tool_calls(self) -> list[ContentPart]:
        return [p for p in self.content if p.kind == ContentPartKind.TOOL_CALL]


# ------------------------------------------------------------------ #
# Tools
# ------------------------------------------------------------------ #


class ToolCallStatus(StrEnum):
    CREATED = "created"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERRORED = "errored"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.CREATED
    # Model-requested input, set only when a before-hook rewrote ``input``.
    original_input: dict[str, Any] | None = None


class ToolResult(BaseModel):
    """Output of a tool execution as fed back to the model."""

    content: list[ContentPart] = Field(default_factory=list)
    details: Any = None
    is_error: bool = False

    @classmethod
    def from_text(cls, text: str, *, details: Any = None, is_error: bool = False) -> ToolResult:
        return cls(content=[ContentPart.text_part(text)], details=details, is_error=is_error)

    @classmethod
    def error(cls, message: str, *, details: Any = None) -> ToolResult:
        return cls.from_text(message, details=details, is_error=True)

    @property
    def text(self) -> str:
        return "".join(p.text or "" for p in self.content if p.kind == ContentPartKind.TEXT)


class ToolDefinition(BaseModel):
    """What a transport is told about a tool: name, description, JSON schema."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


# ------------------------------------------------------------------ #
# Transport events
# ------------------------------------------------------------------ #


class TransportEventKind(StrEnum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL = "tool_call"
    USAGE = "usage"
    ERROR = "error"
    DONE = "done"


class TransportEvent(BaseModel):
    """A single event from a Transport stream."""

    kind: TransportEventKind

    # TEXT_DELTA
    text: str | None = None

    # TOOL_CALL
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments: dict[str, Any] | None = None

    # USAGE
    usage: TokenUsage | None = None

    # ERROR
    error: str | None = None
    status_code: int | None = None

    @classmethod
    def text_delta(cls, text: str) -> TransportEvent:
        return cls(kind=TransportEventKind.TEXT_DELTA, text=text)

    @classmethod
    def tool_call(
        cls, tool_call_id: str, tool_name: str, arguments: dict[str, Any] | None = None
    ) -> TransportEvent:
        return cls(
            kind=TransportEventKind.TOOL_CALL,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            arguments=arguments or {},
        )

    @classmethod
    def usage_event(cls, usage: TokenUsage) -> TransportEvent:
        return cls(kind=TransportEventKind.USAGE, usage=usage)

    @classmethod
    def error_event(cls, error: str, status_code: int | None = None) -> TransportEvent:
        return cls(kind=TransportEventKind.ERROR, error=error, status_code=status_code)

    @classmethod
    def done(cls) -> TransportEvent:
        return cls(kind=TransportEventKind.DONE)
