"""The tool definition contract shared by built-in and hook-provided tools."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from relay_agent.tools.registry import ToolHandler, ToolSchema


@dataclass(frozen=True)
class AgentTool:
    """``{name, description, input_schema, execute(input, context)}``.

    ``input_schema`` is either a pydantic model class (the handler receives a
    validated instance) or a JSON-schema dict (the handler receives a dict).
    """

    name: str
    description: str
    input_schema: ToolSchema
    execute: ToolHandler
    timeout_ms: int | None = None
    cache_ttl_ms: int | None = None
    # Handler applies its own truncation; the registry leaves its output alone
    truncates_output: bool = False


def make_tool(
    name: str,
    description: str,
    input_schema: ToolSchema,
    execute: Any,
    **options: Any,
) -> AgentTool:
    """Helper to create an AgentTool."""
    return AgentTool(
        name=name,
        description=description,
        input_schema=input_schema,
        execute=execute,
        **options,
    )
