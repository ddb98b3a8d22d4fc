"""HookRunner: the event bus between the engine and loaded hooks.

Handlers run in registration order (hook load order, then the order each
hook subscribed). Every handler call is isolated: an exception becomes a
``HookHandlerError`` reported to error listeners and never reaches the
turn. Four emission modes:

- ``emit``: fire-and-forget, all handlers run.
- ``emit_mutating``: each handler sees the current ``output`` and may
  replace it; a failing handler's changes are discarded.
- ``emit_before_tool``: first ``block`` wins and stops the chain; ``input``
  rewrites are visible to later handlers and to execution.
- ``emit_after_tool``: every handler may rewrite content/details/is_error;
  the last rewrite of each field wins.
"""

from __future__ import annotations

import copy
import inspect
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from relay_agent.errors import EngineStateError, HookHandlerError
from relay_agent.hooks.events import (
    AfterToolResult,
    BeforeAgentStartEvent,
    BeforeAgentStartResult,
    BeforeToolResult,
    HookEvent,
    HookEventType,
    HookMessage,
    ToolExecuteAfterEvent,
    ToolExecuteBeforeEvent,
)
from relay_agent.hooks.loader import (
    HookBindings,
    HookHandler,
    LoadedHook,
    MessageRenderer,
    RegisteredCommand,
)
from relay_agent.tools.base import AgentTool
from relay_agent.tools.shell import ProcessResult, run_process
from relay_llm.types import TokenUsage

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=HookEvent)

ErrorListener = Callable[[HookHandlerError], None]


@dataclass
class HookContext:
    """Second argument of every handler call."""

    cwd: str
    config_dir: str | None
    session_id: str | None
    tokens: TokenUsage
    context_limit: int | None

    async def exec(
        self, command: str, args: list[str] | None = None, *, timeout_ms: int | None = None
    ) -> ProcessResult:
        """Run *command* with *args* in the working directory."""
        return await run_process([command, *(args or [])], cwd=self.cwd, timeout_ms=timeout_ms)


class HookRunner:
    """Dispatches hook events to loaded hooks.

    Construct with the loaded hooks, then call :meth:`initialize` exactly
    once to bind the host callbacks (send, send_message, append_entry,
    session id) into every hook's API.
    """

    def __init__(
        self,
        hooks: list[LoadedHook] | None = None,
        *,
        cwd: str | Path = ".",
        config_dir: str | Path | None = None,
    ) -> None:
        self._hooks = list(hooks or [])
        self._cwd = str(cwd)
        self._config_dir = str(config_dir) if config_dir is not None else None
        self._error_listeners: list[ErrorListener] = []
        self._bindings: HookBindings | None = None
        self._tokens = TokenUsage()
        self._context_limit: int | None = None

    @property
    def hooks(self) -> list[LoadedHook]:
        return list(self._hooks)

    @property
    def initialized(self) -> bool:
        return self._bindings is not None

    def initialize(self, bindings: HookBindings) -> None:
        """Bind host callbacks. May only be called once."""
        if self._bindings is not None:
            raise EngineStateError("HookRunner is already initialized")
        self._bindings = bindings
        for hook in self._hooks:
            hook.bindings = bindings

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        """Subscribe to handler failures. Returns an unsubscribe function."""
        self._error_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

        return _unsubscribe

    def update_usage(self, tokens: TokenUsage, context_limit: int | None) -> None:
        self._tokens = tokens
        self._context_limit = context_limit

    def has_handlers(self, event_type: HookEventType) -> bool:
        return any(hook.handlers.get(event_type) for hook in self._hooks)

    # ---- registration accessors ---- #

    def get_registered_tools(self) -> list[AgentTool]:
        return [tool for hook in self._hooks for tool in hook.tools.values()]

    def get_command(self, name: str) -> RegisteredCommand | None:
        for hook in self._hooks:
            if name in hook.commands:
                return hook.commands[name]
        return None

    def get_registered_commands(self) -> list[RegisteredCommand]:
        seen: dict[str, RegisteredCommand] = {}
        for hook in self._hooks:
            for name, command in hook.commands.items():
                seen.setdefault(name, command)
        return list(seen.values())

    def get_message_renderer(self, custom_type: str) -> MessageRenderer | None:
        for hook in self._hooks:
            if custom_type in hook.renderers:
                return hook.renderers[custom_type]
        return None

    # ---- emission ---- #

    async def emit(self, event: HookEvent) -> None:
        """Fire-and-forget: run every handler, isolating failures."""
        self._stamp(event)
        for hook, handler in self._handlers_for(event.type):
            await self._call(hook, handler, event)

    async def emit_mutating(self, event: E) -> Any:
        """Chain handlers over ``event.output`` and return the final output."""
        self._stamp(event)
        output = event.output  # type: ignore[attr-defined]
        for hook, handler in self._handlers_for(event.type):
            event.output = copy.deepcopy(output)  # type: ignore[attr-defined]
            ok, returned = await self._call(hook, handler, event)
            if not ok:
                continue
            if isinstance(returned, type(output)):
                output = returned
            else:
                output = event.output  # type: ignore[attr-defined]
        event.output = output  # type: ignore[attr-defined]
        return output

    async def emit_before_tool(self, event: ToolExecuteBeforeEvent) -> BeforeToolResult | None:
        """Return a block result, an input rewrite, or None."""
        self._stamp(event)
        rewritten = False
        for hook, handler in self._handlers_for(event.type):
            ok, returned = await self._call(hook, handler, event)
            if not ok or returned is None:
                continue
            try:
                result = BeforeToolResult.coerce(returned)
            except TypeError as exc:
                self._report(hook, event.type, exc)
                continue
            if result.block:
                return result
            if result.input is not None:
                event.input = dict(result.input)
                rewritten = True
        return BeforeToolResult(input=event.input) if rewritten else None

    async def emit_after_tool(self, event: ToolExecuteAfterEvent) -> AfterToolResult | None:
        """Chain result rewrites; None when no handler rewrote anything."""
        self._stamp(event)
        rewritten = False
        for hook, handler in self._handlers_for(event.type):
            ok, returned = await self._call(hook, handler, event)
            if not ok or returned is None:
                continue
            try:
                result = AfterToolResult.coerce(returned)
            except TypeError as exc:
                self._report(hook, event.type, exc)
                continue
            if result.content is not None:
                event.content = list(result.content)
                rewritten = True
            if result.details is not None:
                event.details = result.details
                rewritten = True
            if result.is_error is not None:
                event.is_error = bool(result.is_error)
                rewritten = True
        if not rewritten:
            return None
        return AfterToolResult(
            content=event.content, details=event.details, is_error=event.is_error
        )

    async def emit_before_agent_start(self, event: BeforeAgentStartEvent) -> HookMessage | None:
        """First handler that returns a message wins."""
        self._stamp(event)
        for hook, handler in self._handlers_for(event.type):
            ok, returned = await self._call(hook, handler, event)
            if not ok or returned is None:
                continue
            try:
                if isinstance(returned, BeforeAgentStartResult):
                    message = returned.message
                elif isinstance(returned, dict) and "message" in returned:
                    message = returned["message"]
                else:
                    message = returned
                if message is not None:
                    return HookMessage.coerce(message)
            except TypeError as exc:
                self._report(hook, event.type, exc)
        return None

    # ---- internals ---- #

    def _handlers_for(self, event_type: HookEventType) -> Iterator[tuple[LoadedHook, HookHandler]]:
        for hook in self._hooks:
            for handler in list(hook.handlers.get(event_type, ())):
                yield hook, handler

    def _stamp(self, event: HookEvent) -> None:
        if event.session_id is None and self._bindings is not None:
            event.session_id = self._bindings.get_session_id()

    def _context(self) -> HookContext:
        return HookContext(
            cwd=self._cwd,
            config_dir=self._config_dir,
            session_id=self._bindings.get_session_id() if self._bindings else None,
            tokens=self._tokens,
            context_limit=self._context_limit,
        )

    async def _call(
        self, hook: LoadedHook, handler: HookHandler, event: HookEvent
    ) -> tuple[bool, Any]:
        try:
            result = handler(event, self._context())
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:  # noqa: BLE001
            self._report(hook, event.type, exc)
            return False, None
        return True, result

    def _report(self, hook: LoadedHook, event_type: HookEventType, exc: BaseException) -> None:
        error = HookHandlerError(hook.path, str(event_type), exc)
        if not self._error_listeners:
            logger.warning("%s", error, exc_info=exc)
            return
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Hook error listener failed")
