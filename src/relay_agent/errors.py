"""Error taxonomy for the agent core.

Configuration errors (unknown/duplicate tools, double initialization)
are raised to the caller. Tool-level errors are converted into
``ToolResult(is_error=True)`` at the pipeline boundary so the model can
see them and recover.
"""

from __future__ import annotations

from relay_llm.errors import AgentError


class ToolError(AgentError):
    """Tool lookup, validation or execution failed."""

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message, retryable=False)
        self.tool_name = tool_name


class UnknownToolError(ToolError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool '{tool_name}'", tool_name=tool_name)


class DuplicateToolError(ToolError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' is already registered", tool_name=tool_name)


class InvalidInputError(ToolError):
    """Tool arguments do not match the tool's input schema."""

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"Invalid input for tool '{tool_name}': {detail}", tool_name=tool_name)
        self.detail = detail


class SnippetNotFoundError(ToolError):
    """An edit operation's target occurrence does not exist in the file."""

    def __init__(self, snippet: str, occurrence: int, path: str | None = None) -> None:
        preview = snippet if len(snippet) <= 80 else snippet[:77] + "..."
        where = f" in {path}" if path else ""
        super().__init__(
            f"Unable to locate snippet{where} (occurrence {occurrence}): {preview!r}",
            tool_name="edit",
        )
        self.snippet = snippet
        self.occurrence = occurrence
        self.path = path


class QueueFullError(AgentError):
    """The prompt queue is at capacity; the submission was rejected."""

    def __init__(self, depth: int, max_depth: int) -> None:
        super().__init__(f"Prompt queue is full ({depth}/{max_depth})")
        self.depth = depth
        self.max_depth = max_depth


class HookHandlerError(AgentError):
    """A hook handler raised. Reported to error listeners, never propagated."""

    def __init__(self, hook_path: str, event_type: str, error: BaseException) -> None:
        super().__init__(f"Hook {hook_path} failed on {event_type}: {error}")
        self.hook_path = hook_path
        self.event_type = event_type
        self.error = error


class HookLoadError(AgentError):
    """A hook file could not be imported or has the wrong shape."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to load hook {path}: {reason}")
        self.path = path
        self.reason = reason


class EngineStateError(AgentError):
    """An operation was attempted in a state that forbids it."""
