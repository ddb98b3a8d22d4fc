"""Hook discovery and loading.

A hook is a Python file in ``<config_dir>/hooks/`` exposing a callable
``setup(api)`` (sync or async). ``setup`` receives a :class:`HookAPI` and
uses it to subscribe to events and register tools, commands and message
renderers.

Loading produces a :class:`LoadedHook`: a fixed capability set whose shape
is validated up front, so dispatch never has to guess what a plugin looks
like. One broken hook is reported and skipped; the others still load.

Example hook::

    def setup(api):
        @api.on("tool.execute.before")
        def guard(event, ctx):
            if event.tool_name == "bash" and "rm -rf" in event.input["command"]:
                return {"block": True, "reason": "not today"}
"""

from __future__ import annotations

import hashlib
import importlib.util
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from relay_agent.errors import HookLoadError
from relay_agent.hooks.events import HookEventType, HookMessage
from relay_agent.tools.base import AgentTool

logger = logging.getLogger(__name__)

HookHandler = Callable[..., Awaitable[Any] | Any]
MessageRenderer = Callable[..., Any]


@dataclass(frozen=True)
class RegisteredCommand:
    name: str
    handler: Callable[..., Awaitable[Any] | Any]
    description: str = ""


@dataclass
class HookBindings:
    """Callbacks the host wires into every hook's API, once."""

    send: Callable[[str], None]
    send_message: Callable[[HookMessage, bool], None]
    append_entry: Callable[[str, Any], None]
    get_session_id: Callable[[], str | None] = lambda: None


@dataclass
class LoadedHook:
    """Everything one hook registered during setup."""

    path: str
    handlers: dict[HookEventType, list[HookHandler]] = field(default_factory=dict)
    tools: dict[str, AgentTool] = field(default_factory=dict)
    commands: dict[str, RegisteredCommand] = field(default_factory=dict)
    renderers: dict[str, MessageRenderer] = field(default_factory=dict)
    bindings: HookBindings | None = None


@dataclass
class HookLoadResult:
    hooks: list[LoadedHook] = field(default_factory=list)
    errors: list[HookLoadError] = field(default_factory=list)


def _coerce_tool(path: str, tool: Any) -> AgentTool:
    if isinstance(tool, Mapping):
        tool = AgentTool(
            name=tool.get("name"),
            description=tool.get("description", ""),
            input_schema=tool.get("input_schema", tool.get("inputSchema")),
            execute=tool.get("execute"),
            timeout_ms=tool.get("timeout_ms"),
            cache_ttl_ms=tool.get("cache_ttl_ms"),
        )
    name = getattr(tool, "name", None)
    if not isinstance(name, str) or not name:
        raise HookLoadError(path, "registered tool has no name")
    if not isinstance(getattr(tool, "description", None), str):
        raise HookLoadError(path, f"tool '{name}' has no description")
    if not callable(getattr(tool, "execute", None)):
        raise HookLoadError(path, f"tool '{name}' has no callable execute")
    schema = getattr(tool, "input_schema", None)
    if schema is not None and not (isinstance(schema, dict) or inspect.isclass(schema)):
        raise HookLoadError(path, f"tool '{name}' has an invalid input_schema")
    if isinstance(tool, AgentTool):
        return tool
    return AgentTool(
        name=name,
        description=tool.description,
        input_schema=schema,
        execute=tool.execute,
        timeout_ms=getattr(tool, "timeout_ms", None),
        cache_ttl_ms=getattr(tool, "cache_ttl_ms", None),
    )


class HookAPI:
    """The surface a hook's ``setup`` function sees."""

    def __init__(self, hook: LoadedHook) -> None:
        self._hook = hook

    @property
    def path(self) -> str:
        return self._hook.path

    def on(self, event_type: str | HookEventType, handler: HookHandler | None = None) -> Any:
        """Subscribe *handler* to *event_type*. Usable as a decorator."""
        try:
            kind = HookEventType(event_type)
        except ValueError:
            raise HookLoadError(self._hook.path, f"unknown event type {event_type!r}") from None

        def _register(fn: HookHandler) -> HookHandler:
            if not callable(fn):
                raise HookLoadError(self._hook.path, f"handler for {kind} is not callable")
            self._hook.handlers.setdefault(kind, []).append(fn)
            return fn

        if handler is None:
            return _register
        return _register(handler)

    def register_tool(self, tool: Any) -> None:
        agent_tool = _coerce_tool(self._hook.path, tool)
        if agent_tool.name in self._hook.tools:
            raise HookLoadError(self._hook.path, f"tool '{agent_tool.name}' registered twice")
        self._hook.tools[agent_tool.name] = agent_tool

    def register_command(
        self,
        name: str,
        handler: Callable[..., Any] | None = None,
        *,
        description: str = "",
    ) -> None:
        if handler is None or not callable(handler):
            raise HookLoadError(self._hook.path, f"command '{name}' has no callable handler")
        self._hook.commands[name] = RegisteredCommand(
            name=name, handler=handler, description=description
        )

    def register_message_renderer(self, custom_type: str, renderer: MessageRenderer) -> None:
        if not callable(renderer):
            raise HookLoadError(self._hook.path, f"renderer for '{custom_type}' is not callable")
        self._hook.renderers[custom_type] = renderer

    # ---- host actions (available once the runner is initialized) ---- #

    def send(self, text: str) -> None:
        """Inject *text* as if the user had submitted it."""
        bindings = self._bindings("send")
        if bindings is not None:
            bindings.send(text)

    def send_message(
        self, message: HookMessage | Mapping[str, Any], trigger_turn: bool = False
    ) -> None:
        """Inject a hook-authored message, optionally starting a turn."""
        bindings = self._bindings("send_message")
        if bindings is not None:
            bindings.send_message(HookMessage.coerce(message), trigger_turn)

    def append_entry(self, custom_type: str, data: Any = None) -> None:
        """Append a custom entry to the session log."""
        bindings = self._bindings("append_entry")
        if bindings is not None:
            bindings.append_entry(custom_type, data)

    def _bindings(self, action: str) -> HookBindings | None:
        if self._hook.bindings is None:
            logger.warning("Hook %s called %s() before initialization; dropped", self.path, action)
        return self._hook.bindings


# ------------------------------------------------------------------ #
# Loading
# ------------------------------------------------------------------ #


async def load_hook_from_factory(
    factory: Callable[[HookAPI], Any],
    path: str = "<inline>",
) -> LoadedHook:
    """Run *factory* against a fresh API and return the validated hook."""
    hook = LoadedHook(path=path)
    try:
        result = factory(HookAPI(hook))
        if inspect.isawaitable(result):
            await result
    except HookLoadError:
        raise
    except Exception as exc:
        raise HookLoadError(path, f"setup raised {type(exc).__name__}: {exc}") from exc
    return hook


async def load_hook_from_path(path: str | Path) -> LoadedHook:
    """Import a hook module from *path* and run its ``setup``."""
    file_path = Path(path).resolve()
    digest = hashlib.sha1(str(file_path).encode()).hexdigest()[:8]  # noqa: S324
    module_name = f"relay_hooks.{file_path.stem}_{digest}"

    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise HookLoadError(str(file_path), "not an importable Python file")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise HookLoadError(str(file_path), f"import failed: {type(exc).__name__}: {exc}") from exc

    factory = getattr(module, "setup", None)
    if not callable(factory):
        raise HookLoadError(str(file_path), "module does not define a callable setup(api)")
    return await load_hook_from_factory(factory, str(file_path))


def discover_hook_files(config_dir: str | Path) -> list[Path]:
    hooks_dir = Path(config_dir) / "hooks"
    if not hooks_dir.is_dir():
        return []
    return sorted(
        p for p in hooks_dir.glob("*.py") if p.is_file() and not p.name.startswith("_")
    )


async def load_hooks(config_dir: str | Path) -> HookLoadResult:
    """Load every hook under ``<config_dir>/hooks`` in file-name order."""
    result = HookLoadResult()
    for path in discover_hook_files(config_dir):
        try:
            result.hooks.append(await load_hook_from_path(path))
        except HookLoadError as exc:
            logger.warning("%s", exc)
            result.errors.append(exc)
    logger.info("Loaded %d hook(s), %d failed", len(result.hooks), len(result.errors))
    return result
