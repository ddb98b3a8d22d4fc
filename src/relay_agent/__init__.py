"""Relay agent core.

Turn orchestration for a coding agent: a turn state machine, an event bus
for user hooks, a tool registry with validation and truncation, and an
append-only session log.
"""

from relay_agent.abort import AbortSignal
from relay_agent.diagnostics import Diagnostic, Diagnostics, Severity
from relay_agent.engine import (
    EngineConfig,
    EngineState,
    RetryState,
    SubmitResult,
    Turn,
    TurnEngine,
    TurnStatus,
)
from relay_agent.errors import (
    DuplicateToolError,
    EngineStateError,
    HookHandlerError,
    HookLoadError,
    InvalidInputError,
    QueueFullError,
    SnippetNotFoundError,
    ToolError,
    UnknownToolError,
)
from relay_agent.events import EngineEvent, EngineEventKind, EventEmitter
from relay_agent.hooks import HookAPI, HookEventType, HookMessage, HookRunner, load_hooks
from relay_agent.pipeline import ToolPipeline
from relay_agent.prompt_queue import PromptQueue, QueuedPrompt
from relay_agent.session_log import LoadedSession, SessionInfo, SessionLog
from relay_agent.tools import (
    CORE_TOOLS,
    AgentTool,
    ExecutionContext,
    ToolRegistry,
    TruncationConfig,
    register_core_tools,
)

__all__ = [
    # Engine
    "EngineConfig",
    "EngineState",
    "RetryState",
    "SubmitResult",
    "Turn",
    "TurnEngine",
    "TurnStatus",
    # Events
    "EngineEvent",
    "EngineEventKind",
    "EventEmitter",
    # Hooks
    "HookAPI",
    "HookEventType",
    "HookMessage",
    "HookRunner",
    "load_hooks",
    # Tools
    "AgentTool",
    "CORE_TOOLS",
    "ExecutionContext",
    "ToolPipeline",
    "ToolRegistry",
    "TruncationConfig",
    "register_core_tools",
    # Queue and session log
    "LoadedSession",
    "PromptQueue",
    "QueuedPrompt",
    "SessionInfo",
    "SessionLog",
    # Collaborators
    "AbortSignal",
    "Diagnostic",
    "Diagnostics",
    "Severity",
    # Errors
    "DuplicateToolError",
    "EngineStateError",
    "HookHandlerError",
    "HookLoadError",
    "InvalidInputError",
    "QueueFullError",
    "SnippetNotFoundError",
    "ToolError",
    "UnknownToolError",
]
