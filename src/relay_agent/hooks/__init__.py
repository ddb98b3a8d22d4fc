"""Hook system: event types, loader and runner."""

from relay_agent.hooks.events import (
    AfterToolResult,
    AgentEndEvent,
    AgentStartEvent,
    AppStartEvent,
    BeforeAgentStartEvent,
    BeforeAgentStartResult,
    BeforeToolResult,
    ChatMessageEvent,
    ChatMessageInput,
    ChatMessageOutput,
    ChatMessagesTransformEvent,
    ChatSystemTransformEvent,
    HookEvent,
    HookEventType,
    HookMessage,
    MessagesTransformInput,
    MessagesTransformOutput,
    SessionClearEvent,
    SessionResumeEvent,
    SessionStartEvent,
    SystemTransformInput,
    SystemTransformOutput,
    ToolExecuteAfterEvent,
    ToolExecuteBeforeEvent,
    TurnEndEvent,
    TurnStartEvent,
)
from relay_agent.hooks.loader import (
    HookAPI,
    HookBindings,
    HookLoadResult,
    LoadedHook,
    RegisteredCommand,
    load_hook_from_factory,
    load_hook_from_path,
    load_hooks,
)
from relay_agent.hooks.runner import HookContext, HookRunner

__all__ = [
    "AfterToolResult",
    "AgentEndEvent",
    "AgentStartEvent",
    "AppStartEvent",
    "BeforeAgentStartEvent",
    "BeforeAgentStartResult",
    "BeforeToolResult",
    "ChatMessageEvent",
    "ChatMessageInput",
    "ChatMessageOutput",
    "ChatMessagesTransformEvent",
    "ChatSystemTransformEvent",
    "HookAPI",
    "HookBindings",
    "HookContext",
    "HookEvent",
    "HookEventType",
    "HookLoadResult",
    "HookMessage",
    "HookRunner",
    "LoadedHook",
    "MessagesTransformInput",
    "MessagesTransformOutput",
    "RegisteredCommand",
    "SessionClearEvent",
    "SessionResumeEvent",
    "SessionStartEvent",
    "SystemTransformInput",
    "SystemTransformOutput",
    "ToolExecuteAfterEvent",
    "ToolExecuteBeforeEvent",
    "TurnEndEvent",
    "TurnStartEvent",
    "load_hook_from_factory",
    "load_hook_from_path",
    "load_hooks",
]
