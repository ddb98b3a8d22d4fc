"""Tool execution pipeline with hook interception.

For each tool call requested by the model:

1. ``tool.execute.before`` hooks may block the call or rewrite its input.
   A blocked call never reaches its handler and skips the after-hooks.
2. The registry executes it; any failure becomes ``ToolResult(is_error)``.
3. Diagnostics are appended to write/edit results (optional collaborator).
4. ``tool.execute.after`` hooks may rewrite content/details/is_error. They
   run for failed calls too.

Calls of one model response run concurrently, each with its own child
abort signal; results come back in request order.
"""

from __future__ import annotations

import asyncio
import logging

from relay_agent.abort import AbortSignal
from relay_agent.diagnostics import Diagnostics, with_diagnostics
from relay_agent.events import EngineEvent, EngineEventKind, EventEmitter
from relay_agent.hooks.events import ToolExecuteAfterEvent, ToolExecuteBeforeEvent
from relay_agent.hooks.runner import HookRunner
from relay_agent.tools.registry import ToolRegistry
from relay_llm.types import ToolCall, ToolCallStatus, ToolResult

logger = logging.getLogger(__name__)


class ToolPipeline:
    def __init__(
        self,
        registry: ToolRegistry,
        hooks: HookRunner | None = None,
        diagnostics: Diagnostics | None = None,
        event_emitter: EventEmitter | None = None,
        *,
        parallel: bool = True,
    ) -> None:
        self.registry = registry
        self._hooks = hooks
        self._diagnostics = diagnostics
        self._emitter = event_emitter
        self.parallel = parallel

    async def run(self, call: ToolCall, signal: AbortSignal | None = None) -> ToolResult:
        """Run one tool call through hooks, registry and diagnostics."""
        await self._emit(EngineEventKind.TOOL_CALL_START, call)

        if self._hooks is not None:
            before = await self._hooks.emit_before_tool(
                ToolExecuteBeforeEvent(
                    tool_name=call.name, tool_call_id=call.id, input=dict(call.input)
                )
            )
            if before is not None and before.block:
                reason = before.reason or f"Tool '{call.name}' was blocked by a hook"
                logger.info("Tool call %s (%s) blocked: %s", call.id, call.name, reason)
                call.status = ToolCallStatus.ERRORED
                result = ToolResult.error(reason, details={"blocked": True})
                await self._emit(EngineEventKind.TOOL_CALL_END, call, result)
                return result
            if before is not None and before.input is not None:
                call.original_input = dict(call.input)
                call.input = dict(before.input)

        call.status = ToolCallStatus.EXECUTING
        child, detach = signal.child() if signal is not None else (None, None)
        try:
            result = await self.registry.execute(call, signal=child)
        finally:
            if detach is not None:
                detach()

        result = await with_diagnostics(
            self._diagnostics, call.name, result, self.registry.default_context.cwd
        )

        if self._hooks is not None:
            after = await self._hooks.emit_after_tool(
                ToolExecuteAfterEvent(
                    tool_name=call.name,
                    tool_call_id=call.id,
                    input=dict(call.input),
                    content=list(result.content),
                    details=result.details,
                    is_error=result.is_error,
                )
            )
            if after is not None:
                result = ToolResult(
                    content=list(after.content or []),
                    details=after.details,
                    is_error=bool(after.is_error),
                )

        call.status = ToolCallStatus.ERRORED if result.is_error else ToolCallStatus.COMPLETED
        await self._emit(EngineEventKind.TOOL_CALL_END, call, result)
        return result

    async def run_many(
        self, calls: list[ToolCall], signal: AbortSignal | None = None
    ) -> list[ToolResult]:
        """Run several calls, concurrently when ``parallel`` is set.

        Results are returned in the same order as *calls*.
        """
        if len(calls) <= 1 or not self.parallel:
            return [await self.run(call, signal) for call in calls]

        results = await asyncio.gather(
            *(self.run(call, signal) for call in calls),
            return_exceptions=True,
        )

        final: list[ToolResult] = []
        for call, result in zip(calls, results, strict=True):
            if isinstance(result, (KeyboardInterrupt, SystemExit, asyncio.CancelledError)):
                raise result
            if isinstance(result, BaseException):
                call.status = ToolCallStatus.ERRORED
                final.append(ToolResult.error(f"Error: {type(result).__name__}: {result}"))
            else:
                final.append(result)
        return final

    async def _emit(
        self, kind: EngineEventKind, call: ToolCall, result: ToolResult | None = None
    ) -> None:
        if self._emitter is None:
            return
        data: dict[str, object] = {"tool": call.name, "call_id": call.id, "input": call.input}
        if result is not None:
            data["is_error"] = result.is_error
            data["output"] = result.text
        await self._emitter.emit(EngineEvent(kind=kind, data=data))
