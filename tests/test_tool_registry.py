"""Tests for ToolRegistry: registration, validation, context merge, caching."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from pydantic import BaseModel

from relay_agent.abort import AbortSignal
from relay_agent.errors import DuplicateToolError, InvalidInputError, UnknownToolError
from relay_agent.tools import CORE_TOOLS, register_core_tools
from relay_agent.tools.context import ExecutionContext, filtered_environ
from relay_agent.tools.registry import (
    ToolOptions,
    ToolRegistry,
    to_tool_result,
    validate_tool_arguments,
)
from relay_agent.tools.truncation import (
    DEFAULT_LINE_INDICATOR,
    DEFAULT_TAIL_INDICATOR,
    TextTruncation,
)
from relay_llm.types import ToolCall, ToolResult


class GreetInput(BaseModel):
    name: str
    excited: bool = False


async def greet(args: GreetInput, context: ExecutionContext) -> str:
    return f"Hello, {args.name}{'!' if args.excited else '.'}"


ECHO_SCHEMA = {
    "type": "object",
    "properties": {
        "text": {"type": "string"},
        "count": {"type": "integer", "default": 1},
        "mode": {"type": "string", "enum": ["plain", "loud"]},
    },
    "required": ["text"],
    "additionalProperties": False,
}


def echo(args: dict, context: ExecutionContext) -> str:
    return args["text"] * args["count"]


@pytest.fixture
def registry(tmp_path: Path) -> ToolRegistry:
    reg = ToolRegistry(default_context=ExecutionContext.default(tmp_path))
    reg.register("greet", GreetInput, greet, description="Say hello")
    reg.register("echo", ECHO_SCHEMA, echo)
    return reg


# ================================================================== #
# Registration
# ================================================================== #


class TestRegistration:
    def test_duplicate_name_rejected(self, registry):
        with pytest.raises(DuplicateToolError) as exc_info:
            registry.register("greet", GreetInput, greet)
        assert exc_info.value.tool_name == "greet"

    def test_lookup(self, registry):
        assert registry.has("echo")
        assert registry.get("missing") is None
        assert registry.names() == ["greet", "echo"]

    def test_definitions_render_pydantic_schema(self, registry):
        definitions = {d.name: d for d in registry.definitions()}
        greet_schema = definitions["greet"].input_schema
        assert greet_schema["required"] == ["name"]
        assert definitions["greet"].description == "Say hello"
        assert definitions["echo"].input_schema == ECHO_SCHEMA

    def test_core_tools_register(self, tmp_path):
        reg = ToolRegistry(default_context=ExecutionContext.default(tmp_path))
        register_core_tools(reg)
        assert sorted(reg.names()) == sorted(t.name for t in CORE_TOOLS)
        assert set(reg.names()) == {"read", "write", "edit", "ls", "bash"}


# ================================================================== #
# Validation
# ================================================================== #


class TestValidation:
    def test_unknown_tool(self, registry):
        with pytest.raises(UnknownToolError):
            registry.validate("nope", {})

    def test_pydantic_validation_error(self, registry):
        with pytest.raises(InvalidInputError) as exc_info:
            registry.validate("greet", {"excited": True})
        assert "name" in str(exc_info.value)

    def test_json_string_arguments(self, registry):
        validated = registry.validate("greet", '{"name": "Ada"}')
        assert isinstance(validated, GreetInput)
        assert validated.name == "Ada"

    def test_malformed_json(self, registry):
        with pytest.raises(InvalidInputError, match="not valid JSON"):
            registry.validate("greet", "{oops")

    def test_dict_schema_defaults_applied(self, registry):
        assert registry.validate("echo", {"text": "a"}) == {"text": "a", "count": 1}

    @pytest.mark.parametrize(
        ("args", "fragment"),
        [
            ({}, "Missing required"),
            ({"text": 3}, "expected string"),
            ({"text": "a", "count": True}, "expected integer"),
            ({"text": "a", "extra": 1}, "Unexpected argument"),
            ({"text": "a", "mode": "quiet"}, "must be one of"),
        ],
    )
    def test_dict_schema_rejections(self, args, fragment):
        assert fragment in validate_tool_arguments(args, ECHO_SCHEMA)


# ================================================================== #
# Execution
# ================================================================== #


class TestExecution:
    @pytest.mark.asyncio
    async def test_invoke_returns_tool_result(self, registry):
        result = await registry.invoke("greet", {"name": "Ada", "excited": True})
        assert result.text == "Hello, Ada!"
        assert result.is_error is False

    @pytest.mark.asyncio
    async def test_invoke_raises_for_bad_input(self, registry):
        with pytest.raises(InvalidInputError):
            await registry.invoke("echo", {"text": 1})

    @pytest.mark.asyncio
    async def test_execute_converts_failures(self, registry):
        def boom(args, context):
            raise ValueError("kaput")

        registry.register("boom", None, boom)
        result = await registry.execute(ToolCall(id="c1", name="boom"))
        assert result.is_error
        assert "ValueError: kaput" in result.text

        unknown = await registry.execute(ToolCall(id="c2", name="ghost"))
        assert unknown.is_error
        assert "ghost" in unknown.text

    @pytest.mark.asyncio
    async def test_execute_passes_call_id_and_signal(self, registry):
        seen = {}

        def capture(args, context):
            seen["id"] = context.tool_call_id
            seen["signal"] = context.signal

        registry.register("capture", None, capture)
        signal = AbortSignal()
        await registry.execute(ToolCall(id="call-9", name="capture"), signal=signal)
        assert seen == {"id": "call-9", "signal": signal}

    @pytest.mark.asyncio
    async def test_timeout_fires_handler_signal(self, registry):
        async def slow(args, context: ExecutionContext):
            await context.signal.wait()
            return ToolResult.error(context.signal.reason or "")

        registry.register("slow", None, slow, ToolOptions(timeout_ms=20))
        result = await asyncio.wait_for(registry.execute(ToolCall(id="c", name="slow")), 2)
        assert result.is_error
        assert "timed out after 20ms" in result.text

    @pytest.mark.asyncio
    async def test_cache_ttl(self, registry):
        calls = []

        def counted(args, context):
            calls.append(args)
            return f"call {len(calls)}"

        registry.register("counted", None, counted, ToolOptions(cache_ttl_ms=60_000))
        first = await registry.invoke("counted", {"q": 1})
        second = await registry.invoke("counted", {"q": 1})
        third = await registry.invoke("counted", {"q": 2})
        assert first.text == second.text == "call 1"
        assert third.text == "call 2"
        assert len(calls) == 2


# ================================================================== #
# Output truncation
# ================================================================== #


class TestOutputTruncation:
    @pytest.mark.asyncio
    async def test_oversized_output_is_capped(self, registry, tmp_path):
        registry.register("big", None, lambda args, context: "x" * 1_000_000)
        result = await registry.invoke("big", {}, {"tmp_dir": str(tmp_path / "artifacts")})

        limit = TextTruncation().max_bytes
        assert result.text == "x" * limit + DEFAULT_TAIL_INDICATOR
        assert result.details["truncated"] is True
        assert result.details["omitted_bytes"] == 1_000_000 - limit
        full = Path(result.details["full_output_path"])
        assert full.parent == tmp_path / "artifacts"
        assert full.read_text() == "x" * 1_000_000

    @pytest.mark.asyncio
    async def test_line_cap_keeps_handler_details(self, registry, tmp_path):
        def many_lines(args, context):
            return {"content": "\n".join("row" for _ in range(50)), "details": {"rows": 50}}

        registry.register("rows", None, many_lines)
        result = await registry.invoke(
            "rows",
            {},
            {"tmp_dir": str(tmp_path), "truncation": {"text": {"max_lines": 5}}},
        )
        assert result.text == "\n".join("row" for _ in range(5)) + DEFAULT_LINE_INDICATOR
        assert result.details["rows"] == 50
        assert result.details["omitted_lines"] == 45
        assert result.details["omitted_bytes"] == 45 * 4

    @pytest.mark.asyncio
    async def test_small_output_untouched(self, registry):
        result = await registry.invoke("echo", {"text": "hi"})
        assert result.text == "hi"
        assert result.details is None

    @pytest.mark.asyncio
    async def test_self_truncating_tool_is_left_alone(self, registry):
        registry.register(
            "raw",
            None,
            lambda args, context: "y" * 100_000,
            ToolOptions(truncates_output=True),
        )
        result = await registry.invoke("raw", {})
        assert len(result.text) == 100_000

    def test_builtin_tools_opt_out(self, tmp_path):
        reg = ToolRegistry(default_context=ExecutionContext.default(tmp_path))
        register_core_tools(reg)
        opted_out = {name for name in reg.names() if reg.get(name).options.truncates_output}
        assert opted_out == {"read", "ls", "bash"}


# ================================================================== #
# Context merging
# ================================================================== #


class TestExecutionContext:
    @pytest.mark.asyncio
    async def test_overrides_do_not_leak(self, registry, tmp_path):
        seen = []

        def where(args, context):
            seen.append((context.cwd, dict(context.env), context.truncation.text.max_lines))

        registry.register("where", None, where)
        other = tmp_path / "sub"
        await registry.invoke(
            "where",
            {},
            {"cwd": str(other), "env": {"EXTRA": "1"}, "truncation": {"text": {"max_lines": 3}}},
        )
        await registry.invoke("where", {})

        assert seen[0][0] == other
        assert seen[0][1]["EXTRA"] == "1"
        assert seen[0][2] == 3
        assert seen[1][0] == tmp_path
        assert "EXTRA" not in seen[1][1]
        assert seen[1][2] == 400

    def test_env_layered_over_default(self, tmp_path):
        base = ExecutionContext(cwd=tmp_path, env={"A": "1", "B": "2"})
        merged = base.merged({"env": {"B": "3"}})
        assert dict(merged.env) == {"A": "1", "B": "3"}
        assert dict(base.env) == {"A": "1", "B": "2"}

    def test_filtered_environ_drops_secrets(self):
        env = filtered_environ(
            {"PATH": "/bin", "OPENAI_API_KEY": "sk", "GH_TOKEN": "t", "DATABASE_URL": "pg"}
        )
        assert env == {"PATH": "/bin"}


class TestToToolResult:
    def test_coercions(self):
        assert to_tool_result(None).text == ""
        assert to_tool_result("plain").text == "plain"
        mapped = to_tool_result({"content": "x", "is_error": True, "details": {"k": 1}})
        assert mapped.is_error and mapped.details == {"k": 1}
        assert '"a": 1' in to_tool_result({"a": 1}).text
