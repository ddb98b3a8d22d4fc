"""Tests for hook loading and the HookRunner emission modes."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from relay_agent.errors import EngineStateError, HookHandlerError, HookLoadError
from relay_agent.hooks import (
    AfterToolResult,
    ChatMessageEvent,
    ChatMessageInput,
    ChatMessageOutput,
    ChatSystemTransformEvent,
    HookBindings,
    HookEventType,
    HookMessage,
    HookRunner,
    SystemTransformOutput,
    ToolExecuteAfterEvent,
    ToolExecuteBeforeEvent,
    TurnStartEvent,
    load_hook_from_factory,
    load_hooks,
)
from relay_agent.hooks.events import BeforeAgentStartEvent
from relay_llm.types import ContentPart


async def _runner(*factories) -> HookRunner:
    hooks = [await load_hook_from_factory(f, f"hook{i}") for i, f in enumerate(factories)]
    return HookRunner(hooks, cwd=".")


def _before(tool_name: str = "bash", **input) -> ToolExecuteBeforeEvent:
    return ToolExecuteBeforeEvent(tool_name=tool_name, tool_call_id="c1", input=dict(input))


def _after(is_error: bool = False) -> ToolExecuteAfterEvent:
    return ToolExecuteAfterEvent(
        tool_name="bash",
        tool_call_id="c1",
        input={},
        content=[ContentPart.text_part("out")],
        is_error=is_error,
    )


# ================================================================== #
# Loading
# ================================================================== #


class TestLoading:
    @pytest.mark.asyncio
    async def test_factory_registers_handlers_and_tools(self):
        def setup(api):
            api.on("turn.start", lambda event, ctx: None)

            @api.on(HookEventType.TURN_END)
            async def on_end(event, ctx):
                return None

            api.register_tool(
                {"name": "greet", "description": "hi", "execute": lambda args, ctx: "hi"}
            )
            api.register_command("stats", lambda: None, description="Show stats")

        hook = await load_hook_from_factory(setup)
        assert len(hook.handlers[HookEventType.TURN_START]) == 1
        assert len(hook.handlers[HookEventType.TURN_END]) == 1
        assert hook.tools["greet"].description == "hi"
        assert hook.commands["stats"].description == "Show stats"

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self):
        with pytest.raises(HookLoadError, match="unknown event type"):
            await load_hook_from_factory(lambda api: api.on("turn.middle", print))

    @pytest.mark.asyncio
    async def test_invalid_tool_shape_rejected(self):
        with pytest.raises(HookLoadError, match="no callable execute"):
            await load_hook_from_factory(
                lambda api: api.register_tool({"name": "x", "description": ""})
            )

    @pytest.mark.asyncio
    async def test_setup_exception_wrapped(self):
        def setup(api):
            raise RuntimeError("broken")

        with pytest.raises(HookLoadError, match="RuntimeError: broken"):
            await load_hook_from_factory(setup, "broken.py")

    @pytest.mark.asyncio
    async def test_load_hooks_from_directory(self, tmp_path: Path):
        hooks_dir = tmp_path / "hooks"
        hooks_dir.mkdir()
        (hooks_dir / "a_good.py").write_text(
            textwrap.dedent(
                """
                def setup(api):
                    api.on("app.start", lambda event, ctx: None)
                """
            )
        )
        (hooks_dir / "b_no_setup.py").write_text("VALUE = 1\n")
        (hooks_dir / "c_syntax.py").write_text("def setup(:\n")
        (hooks_dir / "_private.py").write_text("raise SystemExit\n")

        result = await load_hooks(tmp_path)
        assert [Path(h.path).name for h in result.hooks] == ["a_good.py"]
        assert len(result.errors) == 2
        assert "setup(api)" in result.errors[0].reason
        assert "import failed" in result.errors[1].reason

    @pytest.mark.asyncio
    async def test_load_hooks_missing_directory(self, tmp_path):
        result = await load_hooks(tmp_path / "nowhere")
        assert result.hooks == [] and result.errors == []


# ================================================================== #
# Initialization and host bindings
# ================================================================== #


class TestInitialization:
    @pytest.mark.asyncio
    async def test_initialize_once(self):
        runner = await _runner()
        bindings = HookBindings(send=print, send_message=print, append_entry=print)
        runner.initialize(bindings)
        with pytest.raises(EngineStateError):
            runner.initialize(bindings)

    @pytest.mark.asyncio
    async def test_api_calls_route_to_bindings(self):
        captured = {}

        def setup(api):
            captured["api"] = api

        runner = await _runner(setup)
        api = captured["api"]

        sent: list = []
        api.send("too early")  # dropped with a warning
        runner.initialize(
            HookBindings(
                send=sent.append,
                send_message=lambda message, trigger: sent.append((message, trigger)),
                append_entry=lambda kind, data: sent.append((kind, data)),
            )
        )
        api.send("go")
        api.send_message({"customType": "note", "content": "hi"}, trigger_turn=True)
        api.append_entry("metric", {"n": 1})

        assert sent[0] == "go"
        message, trigger = sent[1]
        assert isinstance(message, HookMessage)
        assert message.custom_type == "note" and trigger is True
        assert sent[2] == ("metric", {"n": 1})


# ================================================================== #
# Emission modes
# ================================================================== #


class TestEmit:
    @pytest.mark.asyncio
    async def test_handlers_run_in_registration_order(self):
        order: list[str] = []

        def first(api):
            api.on("turn.start", lambda e, ctx: order.append("a1"))
            api.on("turn.start", lambda e, ctx: order.append("a2"))

        def second(api):
            api.on("turn.start", lambda e, ctx: order.append("b1"))

        runner = await _runner(first, second)
        await runner.emit(TurnStartEvent(turn_index=0))
        assert order == ["a1", "a2", "b1"]

    @pytest.mark.asyncio
    async def test_handler_error_isolated_and_reported(self):
        ran: list[str] = []

        def setup(api):
            def bad(event, ctx):
                raise ValueError("nope")

            api.on("turn.start", bad)
            api.on("turn.start", lambda e, ctx: ran.append("after"))

        runner = await _runner(setup)
        errors: list[HookHandlerError] = []
        unsubscribe = runner.on_error(errors.append)
        await runner.emit(TurnStartEvent(turn_index=3))

        assert ran == ["after"]
        assert len(errors) == 1
        assert errors[0].event_type == "turn.start"
        assert isinstance(errors[0].error, ValueError)

        unsubscribe()
        await runner.emit(TurnStartEvent(turn_index=4))
        assert len(errors) == 1


class TestEmitMutating:
    @pytest.mark.asyncio
    async def test_chain_in_place_and_return(self):
        def setup(api):
            def append(event, ctx):
                event.output.system_prompt += " A"

            def replace(event, ctx):
                return SystemTransformOutput(system_prompt=event.output.system_prompt + " B")

            api.on("chat.system.transform", append)
            api.on("chat.system.transform", replace)

        runner = await _runner(setup)
        output = await runner.emit_mutating(
            ChatSystemTransformEvent(output=SystemTransformOutput(system_prompt="base"))
        )
        assert output.system_prompt == "base A B"

    @pytest.mark.asyncio
    async def test_failed_handler_mutation_discarded(self):
        def setup(api):
            def half_done(event, ctx):
                event.output.parts.append(ContentPart.text_part("junk"))
                raise RuntimeError("midway")

            def good(event, ctx):
                event.output.parts.append(ContentPart.text_part("ctx"))

            api.on("chat.message", half_done)
            api.on("chat.message", good)

        runner = await _runner(setup)
        output = await runner.emit_mutating(
            ChatMessageEvent(
                input=ChatMessageInput(session_id=None, text="hi"),
                output=ChatMessageOutput(parts=[ContentPart.text_part("hi")]),
            )
        )
        assert [p.text for p in output.parts] == ["hi", "ctx"]


class TestToolInterception:
    @pytest.mark.asyncio
    async def test_first_block_wins(self):
        later: list[str] = []

        def setup(api):
            api.on("tool.execute.before", lambda e, ctx: {"block": True, "reason": "first"})
            api.on("tool.execute.before", lambda e, ctx: later.append("ran"))

        runner = await _runner(setup)
        result = await runner.emit_before_tool(_before())
        assert result.block and result.reason == "first"
        assert later == []

    @pytest.mark.asyncio
    async def test_input_rewrites_accumulate(self):
        def setup(api):
            api.on("tool.execute.before", lambda e, ctx: {"input": {**e.input, "a": 1}})
            api.on("tool.execute.before", lambda e, ctx: {"input": {**e.input, "b": 2}})

        runner = await _runner(setup)
        result = await runner.emit_before_tool(_before(command="ls"))
        assert not result.block
        assert result.input == {"command": "ls", "a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_no_opinion_returns_none(self):
        runner = await _runner(lambda api: api.on("tool.execute.before", lambda e, c: None))
        assert await runner.emit_before_tool(_before()) is None

    @pytest.mark.asyncio
    async def test_after_last_rewrite_per_field_wins(self):
        def setup(api):
            api.on("tool.execute.after", lambda e, ctx: {"content": "one", "details": {"x": 1}})
            api.on("tool.execute.after", lambda e, ctx: AfterToolResult(content=[
                ContentPart.text_part(e.content[0].text + " two")
            ]))

        runner = await _runner(setup)
        result = await runner.emit_after_tool(_after())
        assert [p.text for p in result.content] == ["one two"]
        assert result.details == {"x": 1}
        assert result.is_error is False

    @pytest.mark.asyncio
    async def test_after_sees_errors(self):
        seen: list[bool] = []

        def setup(api):
            api.on("tool.execute.after", lambda e, ctx: seen.append(e.is_error))

        runner = await _runner(setup)
        assert await runner.emit_after_tool(_after(is_error=True)) is None
        assert seen == [True]

    @pytest.mark.asyncio
    async def test_before_agent_start_first_message_wins(self):
        def setup(api):
            api.on("agent.before_start", lambda e, ctx: None)
            api.on(
                "agent.before_start",
                lambda e, ctx: {"message": {"custom_type": "ctx", "content": e.prompt.upper()}},
            )
            api.on("agent.before_start", lambda e, ctx: {"message": {"content": "ignored"}})

        runner = await _runner(setup)
        message = await runner.emit_before_agent_start(BeforeAgentStartEvent(prompt="hi"))
        assert message.custom_type == "ctx"
        assert message.content == "HI"
