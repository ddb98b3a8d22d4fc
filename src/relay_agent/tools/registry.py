"""Tool registry for the agent core.

Manages registration, lookup, validation, and execution of tools.
The registry is the central dispatch point for all tool calls from the model.

The execution pipeline follows this sequence:
1. Lookup: find the tool by name (``UnknownToolError``)
2. Validate: check input against the tool's schema (``InvalidInputError``)
3. Context: copy-merge per-call overrides onto the default context
4. Execute: run the handler with ``(validated_input, context)``
5. Normalize: coerce whatever the handler returned into a ``ToolResult``
6. Truncate: cap text output with the context's text tier, unless the tool
   truncates its own output

``invoke`` raises. ``execute`` is the pipeline boundary: it never raises for
tool-level failures and returns ``ToolResult(is_error=True)`` instead.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from relay_agent.abort import AbortSignal
from relay_agent.errors import DuplicateToolError, InvalidInputError, ToolError, UnknownToolError
from relay_agent.tools.atomic import write_temp_file
from relay_agent.tools.context import ExecutionContext
from relay_agent.tools.truncation import summarize_text
from relay_llm.errors import AbortError
from relay_llm.types import ContentPart, ContentPartKind, ToolCall, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any, ExecutionContext], Awaitable[Any] | Any]
ToolSchema = type[BaseModel] | dict[str, Any] | None

# ------------------------------------------------------------------ #
# Lightweight argument schema validation
# ------------------------------------------------------------------ #

# Maps JSON Schema type names to Python types for top-level checking.
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def validate_tool_arguments(
    arguments: dict[str, Any],
    schema: dict[str, Any],
) -> str | None:
    """Validate *arguments* against a JSON-Schema-style *schema*.

    Checks required fields, top-level ``type``, ``enum`` membership and,
    when ``additionalProperties`` is false, unexpected keys.

    Returns ``None`` when valid, or an error message string when not.
    """
    properties: dict[str, Any] = schema.get("properties", {})
    required: list[str] = schema.get("required", [])

    missing = [f for f in required if f not in arguments]
    if missing:
        return f"Missing required argument(s): {', '.join(missing)}"

    if schema.get("additionalProperties") is False:
        extra = sorted(k for k in arguments if k not in properties)
        if extra:
            return f"Unexpected argument(s): {', '.join(extra)}"

    for key, value in arguments.items():
        prop_schema = properties.get(key)
        if prop_schema is None:
            continue
        allowed = prop_schema.get("enum")
        if allowed is not None and value not in allowed:
            return f"Argument '{key}' must be one of {allowed!r}"
        expected_type_name = prop_schema.get("type")
        expected_types = _JSON_TYPE_MAP.get(expected_type_name or "")
        if expected_types is None:
            continue
        # isinstance(True, int) is True; JSON booleans are not numbers.
        if expected_type_name in ("integer", "number") and isinstance(value, bool):
            return f"Argument '{key}' has type bool, expected {expected_type_name}"
        if not isinstance(value, expected_types):
            actual = type(value).__name__
            return f"Argument '{key}' has type {actual}, expected {expected_type_name}"

    return None


def _apply_defaults(arguments: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
    result = dict(arguments)
    for key, prop in schema.get("properties", {}).items():
        if key not in result and isinstance(prop, dict) and "default" in prop:
            result[key] = prop["default"]
    return result


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def _is_model_class(schema: Any) -> bool:
    return inspect.isclass(schema) and issubclass(schema, BaseModel)


# ------------------------------------------------------------------ #
# Registered tool
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ToolOptions:
    timeout_ms: int | None = None
    cache_ttl_ms: int | None = None
    truncates_output: bool = False


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool: name, schema, handler and options."""

    name: str
    schema: ToolSchema
    handler: ToolHandler
    description: str = ""
    options: ToolOptions = field(default_factory=ToolOptions)

    def input_schema(self) -> dict[str, Any]:
        if self.schema is None:
            return {"type": "object"}
        if _is_model_class(self.schema):
            return self.schema.model_json_schema()  # type: ignore[union-attr]
        return dict(self.schema)  # type: ignore[arg-type]

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name, description=self.description, input_schema=self.input_schema()
        )


def to_tool_result(value: Any) -> ToolResult:
    """Coerce a handler's return value into a ToolResult."""
    if isinstance(value, ToolResult):
        return value
    if value is None:
        return ToolResult.from_text("")
    if isinstance(value, str):
        return ToolResult.from_text(value)
    if isinstance(value, Mapping) and "content" in value:
        content = value["content"]
        if isinstance(content, str):
            content = [ContentPart.text_part(content)]
        return ToolResult(
            content=content,
            details=value.get("details"),
            is_error=bool(value.get("is_error", value.get("isError", False))),
        )
    try:
        text = json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        text = str(value)
    return ToolResult.from_text(text, details=value)


async def _truncate_result(
    name: str, result: ToolResult, context: ExecutionContext
) -> ToolResult:
    """Apply the text tier to the result's text parts.

    The parts are summarized as one text; when anything is cut the full
    text is saved with ``write_temp_file`` and its path goes into details.
    """
    texts = [p for p in result.content if p.kind == ContentPartKind.TEXT]
    if not texts:
        return result
    full = "".join(p.text or "" for p in texts)
    summary = summarize_text(full, context.truncation.text)
    if not summary.truncated:
        return result

    path = await asyncio.to_thread(
        write_temp_file, f"{name}-output", full, tmp_dir=context.tmp_dir
    )
    content: list[ContentPart] = []
    for part in result.content:
        if part.kind != ContentPartKind.TEXT:
            content.append(part)
        elif part is texts[0]:
            content.append(ContentPart.text_part(summary.value))

    if isinstance(result.details, Mapping):
        details = dict(result.details)
    elif result.details is None:
        details = {}
    else:
        details = {"value": result.details}
    details.update(
        truncated=True,
        omitted_bytes=summary.omitted_bytes,
        omitted_lines=summary.omitted_lines,
        full_output_path=str(path),
    )
    return ToolResult(content=content, details=details, is_error=result.is_error)


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #


class ToolRegistry:
    """Registry for managing and executing tools.

    Usage::

        registry = ToolRegistry(default_context=ExecutionContext.default(cwd))
        registry.register("read", ReadInput, read_handler)
        result = await registry.execute(ToolCall(id="c1", name="read", input={...}))
    """

    def __init__(
        self,
        default_context: ExecutionContext | None = None,
        *,
        cache_max_size: int = 128,
    ) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._defaults = default_context or ExecutionContext.default()
        self._cache: OrderedDict[str, tuple[float, ToolResult]] = OrderedDict()
        self._cache_max_size = cache_max_size

    @property
    def default_context(self) -> ExecutionContext:
        return self._defaults

    def register(
        self,
        name: str,
        schema: ToolSchema,
        handler: ToolHandler,
        options: ToolOptions | None = None,
        *,
        description: str = "",
    ) -> ToolSpec:
        """Register a tool. Raises ``DuplicateToolError`` if the name is taken."""
        if name in self._tools:
            raise DuplicateToolError(name)
        spec = ToolSpec(
            name=name,
            schema=schema,
            handler=handler,
            description=description,
            options=options or ToolOptions(),
        )
        self._tools[name] = spec
        return spec

    def register_tool(self, tool: Any) -> ToolSpec:
        """Register an object exposing ``name``, ``description``,
        ``input_schema`` and ``execute(input, context)``."""
        return self.register(
            tool.name,
            tool.input_schema,
            tool.execute,
            ToolOptions(
                timeout_ms=getattr(tool, "timeout_ms", None),
                cache_ttl_ms=getattr(tool, "cache_ttl_ms", None),
                truncates_output=getattr(tool, "truncates_output", False),
            ),
            description=tool.description,
        )

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        """Return all registered tools (for sending to the transport)."""
        return [spec.definition() for spec in self._tools.values()]

    def validate(self, name: str, raw_args: Any) -> Any:
        """Validate *raw_args* for tool *name*, returning the validated input."""
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(name)

        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as exc:
                raise InvalidInputError(name, f"arguments are not valid JSON: {exc}") from exc
        if raw_args is None:
            raw_args = {}

        if _is_model_class(spec.schema):
            try:
                return spec.schema.model_validate(raw_args)  # type: ignore[union-attr]
            except ValidationError as exc:
                raise InvalidInputError(name, _format_validation_error(exc)) from exc

        if not isinstance(raw_args, dict):
            raise InvalidInputError(name, f"expected an object, got {type(raw_args).__name__}")
        if spec.schema:
            error = validate_tool_arguments(raw_args, spec.schema)  # type: ignore[arg-type]
            if error:
                raise InvalidInputError(name, error)
            return _apply_defaults(raw_args, spec.schema)  # type: ignore[arg-type]
        return dict(raw_args)

    async def invoke(
        self,
        name: str,
        raw_args: Any,
        context_overrides: Mapping[str, Any] | None = None,
    ) -> ToolResult:
        """Look up, validate and run a tool. Errors propagate to the caller."""
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(name)
        validated = self.validate(name, raw_args)

        context = self._defaults.merged(context_overrides)
        if context.timeout_ms is None and spec.options.timeout_ms is not None:
            context = replace(context, timeout_ms=spec.options.timeout_ms)

        cache_key = self._cache_key(spec, validated, context)
        if cache_key is not None:
            cached = self._cache_lookup(cache_key, spec.options.cache_ttl_ms or 0)
            if cached is not None:
                return cached

        result = to_tool_result(await self._run_handler(spec, validated, context))
        if not spec.options.truncates_output:
            result = await _truncate_result(spec.name, result, context)

        if cache_key is not None and not result.is_error:
            self._cache_store(cache_key, result)
        return result

    async def execute(
        self,
        call: ToolCall,
        *,
        signal: AbortSignal | None = None,
        context_overrides: Mapping[str, Any] | None = None,
    ) -> ToolResult:
        """Run *call* and convert every tool-level failure into an error result."""
        overrides = dict(context_overrides or {})
        overrides.setdefault("tool_call_id", call.id)
        if signal is not None:
            overrides.setdefault("signal", signal)
        try:
            return await self.invoke(call.name, call.input, overrides)
        except AbortError as exc:
            return ToolResult.error(f"Tool '{call.name}' aborted: {exc}")
        except ToolError as exc:
            return ToolResult.error(str(exc))
        except Exception as exc:  # noqa: BLE001
            # Only the exception message goes to the model, not the traceback.
            logger.debug("Tool %s raised", call.name, exc_info=True)
            return ToolResult.error(f"Error executing {call.name}: {type(exc).__name__}: {exc}")

    # ---- internals ---- #

    async def _run_handler(self, spec: ToolSpec, validated: Any, context: ExecutionContext) -> Any:
        if context.timeout_ms is None:
            result = spec.handler(validated, context)
            return await result if inspect.isawaitable(result) else result

        # Advisory timeout: the handler gets a signal that fires after
        # timeout_ms. Non-cooperating handlers are not killed.
        parent = context.signal or AbortSignal()
        child, detach = parent.child()
        timer = asyncio.get_running_loop().call_later(
            context.timeout_ms / 1000, child.set, f"timed out after {context.timeout_ms}ms"
        )
        try:
            result = spec.handler(validated, replace(context, signal=child))
            return await result if inspect.isawaitable(result) else result
        finally:
            timer.cancel()
            detach()

    def _cache_key(self, spec: ToolSpec, validated: Any, context: ExecutionContext) -> str | None:
        if not spec.options.cache_ttl_ms:
            return None
        if isinstance(validated, BaseModel):
            payload = validated.model_dump(mode="json")
        else:
            payload = validated
        try:
            raw = json.dumps([spec.name, str(Path(context.cwd)), payload], sort_keys=True)
        except TypeError:
            return None
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    def _cache_lookup(self, key: str, ttl_ms: int) -> ToolResult | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if (time.monotonic() - stored_at) * 1000 > ttl_ms:
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return result

    def _cache_store(self, key: str, result: ToolResult) -> None:
        self._cache[key] = (time.monotonic(), result)
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_max_size:
            self._cache.popitem(last=False)
