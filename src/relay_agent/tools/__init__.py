"""Tool registry, built-in tools and their supporting utilities."""

from relay_agent.tools.atomic import write_file_atomic, write_temp_file
from relay_agent.tools.base import AgentTool, make_tool
from relay_agent.tools.context import ExecutionContext
from relay_agent.tools.fs import EDIT, FS_TOOLS, LS, READ, WRITE, apply_edits
from relay_agent.tools.registry import ToolOptions, ToolRegistry, ToolSpec
from relay_agent.tools.shell import BASH, SHELL_TOOLS, run_process
from relay_agent.tools.truncation import (
    CommandTruncation,
    TextTruncation,
    TruncationConfig,
    TruncationPosition,
    TruncationResult,
    summarize_text,
    truncate_head,
    truncate_lines,
    truncate_tail,
)

CORE_TOOLS: list[AgentTool] = [*FS_TOOLS, *SHELL_TOOLS]


def register_core_tools(registry: ToolRegistry) -> None:
    """Register read, write, edit, ls and bash."""
    for tool in CORE_TOOLS:
        registry.register_tool(tool)


__all__ = [
    "BASH",
    "CORE_TOOLS",
    "EDIT",
    "LS",
    "READ",
    "WRITE",
    "AgentTool",
    "CommandTruncation",
    "ExecutionContext",
    "TextTruncation",
    "ToolOptions",
    "ToolRegistry",
    "ToolSpec",
    "TruncationConfig",
    "TruncationPosition",
    "TruncationResult",
    "apply_edits",
    "make_tool",
    "register_core_tools",
    "run_process",
    "summarize_text",
    "truncate_head",
    "truncate_lines",
    "truncate_tail",
    "write_file_atomic",
    "write_temp_file",
]
