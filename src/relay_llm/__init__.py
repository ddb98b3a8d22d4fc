"""Provider-neutral data model and transport contract for the relay agent core."""

from relay_llm.errors import (
    AbortError,
    AgentError,
    FatalTransportError,
    RetryableTransportError,
    TransportError,
    classify_transport_error,
)
from relay_llm.retry import RetryPolicy, retry_with_policy
from relay_llm.transport import StreamAccumulator, StreamOutcome, Transport
from relay_llm.types import (
    ContentPart,
    ContentPartKind,
    ImageData,
    Message,
    Role,
    TokenUsage,
    ToolCall,
    ToolCallStatus,
    ToolDefinition,
    ToolResult,
    TransportEvent,
    TransportEventKind,
)

__all__ = [
    # Errors
    "AbortError",
    "AgentError",
    "FatalTransportError",
    "RetryableTransportError",
    "TransportError",
    "classify_transport_error",
    # Retry
    "RetryPolicy",
    "retry_with_policy",
    # Transport
    "StreamAccumulator",
    "StreamOutcome",
    "Transport",
    # Types
    "ContentPart",
    "ContentPartKind",
    "ImageData",
    "Message",
    "Role",
    "TokenUsage",
    "ToolCall",
    "ToolCallStatus",
    "ToolDefinition",
    "ToolResult",
    "TransportEvent",
    "TransportEventKind",
]
