"""TurnEngine -- the turn state machine.

The engine conducts one turn at a time::

    idle -> submitting -> streaming <-> awaiting_tool -> finalizing -> idle

``aborting`` is reachable from any non-idle state and ``errored`` from
streaming, awaiting_tool and finalizing; both fall back to idle. Input
submitted while a turn is active lands in the PromptQueue and is replayed
afterwards, one queued prompt per turn, in FIFO order.

Every suspension point (next transport chunk, tool handlers, retry
backoff) is cancelled by a single AbortSignal threaded through the turn.

Usage::

    engine = TurnEngine(transport, registry, hooks=runner, session_log=log)
    await engine.submit("fix the failing test")
    await engine.wait_idle()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from relay_agent.abort import AbortSignal
from relay_agent.diagnostics import Diagnostics
from relay_agent.errors import EngineStateError, QueueFullError
from relay_agent.events import EngineEvent, EngineEventKind, EventEmitter
from relay_agent.hooks.events import (
    AgentEndEvent,
    AgentStartEvent,
    AppStartEvent,
    BeforeAgentStartEvent,
    ChatMessageEvent,
    ChatMessageInput,
    ChatMessageOutput,
    ChatMessagesTransformEvent,
    ChatSystemTransformEvent,
    HookMessage,
    MessagesTransformInput,
    MessagesTransformOutput,
    SessionClearEvent,
    SessionResumeEvent,
    SessionStartEvent,
    SystemTransformInput,
    SystemTransformOutput,
    TurnEndEvent,
    TurnStartEvent,
)
from relay_agent.hooks.loader import HookBindings
from relay_agent.hooks.runner import HookRunner
from relay_agent.pipeline import ToolPipeline
from relay_agent.prompt_queue import DEFAULT_MAX_DEPTH, PromptQueue
from relay_agent.session_log import LoadedSession, SessionLog
from relay_agent.tools.registry import ToolRegistry
from relay_llm.errors import AbortError, AgentError, classify_transport_error
from relay_llm.retry import RetryPolicy, retry_with_policy
from relay_llm.transport import StreamAccumulator, StreamOutcome, Transport
from relay_llm.types import (
    ContentPart,
    ImageData,
    Message,
    Role,
    TokenUsage,
    ToolDefinition,
    TransportEvent,
    TransportEventKind,
)

logger = logging.getLogger(__name__)


class EngineState(StrEnum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    AWAITING_TOOL = "awaiting_tool"
    FINALIZING = "finalizing"
    ABORTING = "aborting"
    ERRORED = "errored"


class TurnStatus(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    AWAITING_TOOL = "awaiting_tool"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class EngineConfig:
    """Configuration for a turn engine."""

    provider: str = "unknown"
    model_id: str = "unknown"
    thinking_level: str = "off"
    system_prompt: str = ""
    context_limit: int | None = None
    max_queue_depth: int = DEFAULT_MAX_DEPTH
    # Upper bound on transport round-trips caused by tool calls within one turn
    max_tool_rounds: int = 50
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class Turn:
    """One request/response cycle, possibly spanning several tool rounds."""

    index: int
    status: TurnStatus = TurnStatus.PENDING
    tokens: TokenUsage = field(default_factory=TokenUsage)
    context_limit: int | None = None
    messages: list[Message] = field(default_factory=list)
    error: str | None = None
    retries: int = 0

    @property
    def final_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return message
        return None

    @property
    def tool_results(self) -> list[Message]:
        return [m for m in self.messages if m.role == Role.TOOL_RESULT]


@dataclass
class RetryState:
    """Exists only while a retryable transport error is being backed off."""

    attempt: int
    max_retries: int
    delay: float
    abort_handle: AbortSignal
    error: str = ""

    @property
    def status_text(self) -> str:
        return f"Retrying ({self.attempt}/{self.max_retries}) in {self.delay:.0f}s..."


@dataclass
class SubmitResult:
    queued: bool
    queue_depth: int = 0


@dataclass
class _Prompt:
    text: str
    images: list[ImageData] = field(default_factory=list)
    hook_message: HookMessage | None = None


class TurnEngine:
    """Drives turns against a Transport, with hooks, tools and a session log."""

    def __init__(
        self,
        transport: Transport,
        tools: ToolRegistry | None = None,
        *,
        hooks: HookRunner | None = None,
        session_log: SessionLog | None = None,
        diagnostics: Diagnostics | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.events = EventEmitter()
        self._transport = transport
        self._tools = tools or ToolRegistry()
        self._hooks = hooks or HookRunner()
        self._session_log = session_log
        self._queue = PromptQueue(self.config.max_queue_depth, on_change=self._queue_changed)
        self._pipeline = ToolPipeline(self._tools, self._hooks, diagnostics, self.events)

        self._state = EngineState.IDLE
        self._history: list[Message] = []
        self._turns: list[Turn] = []
        self._turn: Turn | None = None
        self._turn_index = 0
        self._retry: RetryState | None = None
        self._signal = AbortSignal()
        self._task: asyncio.Task[None] | None = None
        self._injections: list[Message] = []
        self._session_id: str | None = None
        self._last_error: str | None = None

        # Hook-provided tools join the registry; a name clash is fatal here.
        for tool in self._hooks.get_registered_tools():
            self._tools.register_tool(tool)

        self._hooks.initialize(
            HookBindings(
                send=self._hook_send,
                send_message=self._hook_send_message,
                append_entry=self._hook_append_entry,
                get_session_id=lambda: self._session_id,
            )
        )

    # ---- read-only views ---- #

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    @property
    def turns(self) -> list[Turn]:
        """Archived turns, oldest first."""
        return list(self._turns)

    @property
    def current_turn(self) -> Turn | None:
        return self._turn

    @property
    def retry_state(self) -> RetryState | None:
        return self._retry

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def hooks(self) -> HookRunner:
        return self._hooks

    # ---- public operations ---- #

    async def start(self) -> None:
        """Announce the engine to hooks (``app.start``)."""
        await self._hooks.emit(AppStartEvent(cwd=str(self._tools.default_context.cwd)))

    async def submit(self, text: str, images: list[ImageData] | None = None) -> SubmitResult:
        """Start a turn, or queue *text* if one is already active.

        Returns immediately; use :meth:`wait_idle` to wait for completion.
        Raises ``QueueFullError`` (carrying the depth) when the queue is full.
        """
        return self._submit_nowait(_Prompt(text=text, images=list(images or [])))

    async def abort(self) -> str | None:
        """Cancel the active turn and hand back any queued, unsent text.

        Aborting an idle engine is a no-op and returns None.
        """
        if self._state == EngineState.IDLE and self._task is None:
            return None

        self._set_state(EngineState.ABORTING)
        self._signal.set("aborted")
        task = self._task
        try:
            if task is not None and not task.done():
                await asyncio.wait({task})
        finally:
            # Prompts submitted while aborting were queued as well
            drained = self._queue.drain_to_text()
            self._set_state(EngineState.IDLE)
        logger.info("Turn aborted%s", "; returned queued input" if drained else "")
        return drained

    async def wait_idle(self) -> None:
        """Wait until no turn is active and the queue is drained."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def resume(self, loaded: LoadedSession, path: str | Path | None = None) -> None:
        """Continue a stored session: restore history and keep appending to it."""
        if self._state != EngineState.IDLE:
            raise EngineStateError("Cannot resume a session while a turn is active")
        self._history = list(loaded.messages)
        self._session_id = loaded.metadata.id
        if self._session_log is not None:
            path = path or self._find_session_path(loaded.metadata.id)
            if path is not None:
                self._session_log.continue_session(path, loaded.metadata.id)
        logger.info("Resumed session %s (%d messages)", self._session_id, len(self._history))
        await self._hooks.emit(SessionResumeEvent(path=self._session_path()))

    async def clear(self) -> None:
        """Drop the conversation; the next turn starts a new session."""
        if self._state != EngineState.IDLE:
            raise EngineStateError("Cannot clear while a turn is active")
        await self._hooks.emit(SessionClearEvent())
        self._history.clear()
        self._session_id = None

    async def close(self) -> None:
        await self.abort()
        if self._session_log is not None:
            await self._session_log.close()
        await self.events.close()

    # ---- orchestration ---- #

    def _submit_nowait(self, prompt: _Prompt) -> SubmitResult:
        if self._state != EngineState.IDLE:
            depth = self._queue.push(prompt.text, prompt.images)
            logger.debug("Turn active; queued prompt (depth %d)", depth)
            return SubmitResult(queued=True, queue_depth=depth)
        self._start(prompt)
        return SubmitResult(queued=False, queue_depth=0)

    def _start(self, prompt: _Prompt) -> None:
        self._signal = AbortSignal()
        self._set_state(EngineState.SUBMITTING)
        self._task = asyncio.get_running_loop().create_task(self._drive(prompt))

    async def _drive(self, prompt: _Prompt) -> None:
        next_prompt: _Prompt | None = prompt
        try:
            while next_prompt is not None:
                status = await self._run_turn(next_prompt)
                if status == TurnStatus.ABORTED or self._signal.is_set:
                    break
                queued = self._queue.shift()
                if queued is None:
                    break
                next_prompt = _Prompt(text=queued.text, images=list(queued.images))
                self._set_state(EngineState.SUBMITTING)
        finally:
            # Injections that arrived after the last request join the history now
            for message in self._injections:
                self._history.append(message)
                if self._session_log is not None:
                    self._session_log.append_message(message)
            self._injections.clear()
            self._retry = None
            self._task = None
            if not self._signal.is_set:
                self._set_state(EngineState.IDLE)

    async def _run_turn(self, prompt: _Prompt) -> TurnStatus:
        turn = Turn(index=self._turn_index, context_limit=self.config.context_limit)
        self._turn = turn
        try:
            await self._ensure_session()
            await self._prepare_prompt(turn, prompt)
            await self._hooks.emit(AgentStartEvent(prompt=prompt.text))
            await self._hooks.emit(TurnStartEvent(turn_index=turn.index))
            await self.events.emit(EngineEvent(EngineEventKind.TURN_START, {"index": turn.index}))

            await self._stream_loop(turn)

            self._set_state(EngineState.FINALIZING)
            turn.status = TurnStatus.DONE
        except AbortError:
            turn.status = TurnStatus.ABORTED
        except Exception as exc:  # noqa: BLE001
            if self._signal.is_set:
                turn.status = TurnStatus.ABORTED
            else:
                self._fail_turn(turn, exc)
        finally:
            await self._finish_turn(turn)
        return turn.status

    def _fail_turn(self, turn: Turn, exc: Exception) -> None:
        if not isinstance(exc, AgentError):
            logger.exception("Unexpected error during turn %d", turn.index)
        message = exc.message if isinstance(exc, AgentError) else f"{type(exc).__name__}: {exc}"
        turn.status = TurnStatus.ERRORED
        turn.error = message
        self._last_error = message
        self._set_state(EngineState.ERRORED)
        self._append(turn, Message.assistant(f"Error: {message}"))
        self.events.emit_nowait(
            EngineEvent(EngineEventKind.ERROR, {"index": turn.index, "error": message})
        )

    async def _prepare_prompt(self, turn: Turn, prompt: _Prompt) -> None:
        if prompt.hook_message is not None:
            self._append(turn, self._hook_to_message(prompt.hook_message))
            return

        parts = [ContentPart.text_part(prompt.text)]
        parts.extend(ContentPart.image_part(image) for image in prompt.images)
        output = await self._hooks.emit_mutating(
            ChatMessageEvent(
                input=ChatMessageInput(session_id=self._session_id, text=prompt.text),
                output=ChatMessageOutput(parts=parts),
            )
        )
        self._append(turn, Message(role=Role.USER, content=list(output.parts)))

        injected = await self._hooks.emit_before_agent_start(
            BeforeAgentStartEvent(prompt=prompt.text, images=list(prompt.images))
        )
        if injected is not None:
            self._append(turn, self._hook_to_message(injected))

    async def _stream_loop(self, turn: Turn) -> None:
        rounds = 0
        while True:
            self._signal.raise_if_aborted()
            self._set_state(EngineState.STREAMING)
            turn.status = TurnStatus.STREAMING
            for message in self._injections:
                self._append(turn, message)
            self._injections.clear()

            outcome = await self._request(turn)
            turn.tokens = turn.tokens + outcome.usage
            self._append(turn, outcome.message())
            if not outcome.tool_calls:
                return

            self._set_state(EngineState.AWAITING_TOOL)
            turn.status = TurnStatus.AWAITING_TOOL
            results = await self._pipeline.run_many(outcome.tool_calls, self._signal)
            for call, result in zip(outcome.tool_calls, results, strict=True):
                self._append(turn, Message.tool_result(call, result))
            self._signal.raise_if_aborted()

            rounds += 1
            if rounds >= self.config.max_tool_rounds:
                logger.warning(
                    "Turn %d hit max_tool_rounds (%d); finalizing",
                    turn.index,
                    self.config.max_tool_rounds,
                )
                return

    async def _request(self, turn: Turn) -> StreamOutcome:
        """One transport round-trip, retried on retryable errors."""
        transformed = await self._hooks.emit_mutating(
            ChatMessagesTransformEvent(
                input=MessagesTransformInput(turn_index=turn.index),
                output=MessagesTransformOutput(messages=list(self._history)),
            )
        )
        system = await self._hooks.emit_mutating(
            ChatSystemTransformEvent(
                input=SystemTransformInput(model_id=self.config.model_id),
                output=SystemTransformOutput(system_prompt=self.config.system_prompt),
            )
        )
        messages = list(transformed.messages)
        tools = self._tools.definitions()

        async def _attempt() -> StreamOutcome:
            return await self._stream_once(messages, system.system_prompt, tools)

        async def _on_retry(attempt: int, error: AgentError, delay: float) -> None:
            turn.retries += 1
            self._retry = RetryState(
                attempt=attempt + 1,
                max_retries=self.config.retry.max_retries,
                delay=delay,
                abort_handle=self._signal,
                error=error.message,
            )
            await self.events.emit(
                EngineEvent(
                    EngineEventKind.RETRY_SCHEDULED,
                    {
                        "attempt": self._retry.attempt,
                        "max_retries": self._retry.max_retries,
                        "delay": delay,
                        "error": error.message,
                        "message": self._retry.status_text,
                    },
                )
            )

        try:
            return await retry_with_policy(
                _attempt, self.config.retry, on_retry=_on_retry, signal=self._signal
            )
        finally:
            if self._retry is not None:
                self._retry = None
                self.events.emit_nowait(EngineEvent(EngineEventKind.RETRY_CLEARED))

    async def _stream_once(
        self, messages: list[Message], system_prompt: str, tools: list[ToolDefinition]
    ) -> StreamOutcome:
        accumulator = StreamAccumulator()
        iterator = aiter(self._transport.stream(messages, system_prompt, tools, self._signal))
        try:
            while not accumulator.done:
                event = await self._next_event(iterator)
                if event is None:
                    break
                accumulator.feed(event)
                if event.kind == TransportEventKind.TEXT_DELTA and event.text:
                    await self.events.emit(
                        EngineEvent(EngineEventKind.TEXT_DELTA, {"text": event.text})
                    )
        except AgentError:
            raise
        except Exception as exc:
            raise classify_transport_error(exc) from exc
        finally:
            await _aclose(iterator)
        return accumulator.outcome()

    async def _next_event(self, iterator: AsyncIterator[TransportEvent]) -> TransportEvent | None:
        """Await the next transport event, or raise AbortError if aborted first."""
        self._signal.raise_if_aborted()
        next_event = asyncio.ensure_future(anext(iterator))
        aborted = asyncio.ensure_future(self._signal.wait())
        try:
            await asyncio.wait({next_event, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()

        if next_event.done():
            try:
                return next_event.result()
            except StopAsyncIteration:
                return None

        next_event.cancel()
        await asyncio.wait({next_event})
        if not next_event.cancelled():
            next_event.exception()  # retrieved; the turn is being aborted anyway
        raise AbortError(self._signal.reason or "aborted")

    async def _finish_turn(self, turn: Turn) -> None:
        self._hooks.update_usage(turn.tokens, turn.context_limit)
        await self._hooks.emit(
            TurnEndEvent(
                turn_index=turn.index,
                status=str(turn.status),
                message=turn.final_message,
                tool_results=turn.tool_results,
                tokens=turn.tokens,
                context_limit=turn.context_limit,
                error=turn.error,
            )
        )
        await self._hooks.emit(AgentEndEvent(messages=list(turn.messages), status=str(turn.status)))
        if self._session_log is not None:
            self._session_log.append_entry(
                "turn",
                {
                    "index": turn.index,
                    "status": str(turn.status),
                    "tokens": turn.tokens.model_dump(),
                    "error": turn.error,
                },
            )
        self._turns.append(turn)
        self._turn = None
        self._turn_index += 1
        await self.events.emit(
            EngineEvent(
                EngineEventKind.TURN_END,
                {
                    "index": turn.index,
                    "status": str(turn.status),
                    "tokens": turn.tokens.total,
                    "error": turn.error,
                },
            )
        )

    # ---- session ---- #

    async def _ensure_session(self) -> None:
        if self._session_id is not None:
            return
        if self._session_log is None:
            self._session_id = str(uuid.uuid4())
        else:
            self._session_id = self._session_log.start_session(
                self.config.provider, self.config.model_id, self.config.thinking_level
            )
        await self._hooks.emit(SessionStartEvent(path=self._session_path()))

    def _session_path(self) -> str | None:
        if self._session_log is None or self._session_log.session_path is None:
            return None
        return str(self._session_log.session_path)

    def _find_session_path(self, session_id: str) -> Path | None:
        assert self._session_log is not None  # noqa: S101
        for info in self._session_log.list_sessions():
            if info.id == session_id:
                return info.path
        return None

    def _append(self, turn: Turn, message: Message) -> None:
        self._history.append(message)
        turn.messages.append(message)
        if self._session_log is not None:
            self._session_log.append_message(message)

    # ---- hook bindings ---- #

    def _hook_send(self, text: str) -> None:
        try:
            self._submit_nowait(_Prompt(text=text))
        except QueueFullError as exc:
            logger.warning("Hook send() rejected: %s", exc)

    def _hook_send_message(self, message: HookMessage, trigger_turn: bool) -> None:
        if self._state != EngineState.IDLE:
            # Picked up before the active turn's next transport request
            self._injections.append(self._hook_to_message(message))
            return
        if trigger_turn:
            text = message.content if isinstance(message.content, str) else ""
            self._start(_Prompt(text=text, hook_message=message))
            return
        hook_message = self._hook_to_message(message)
        self._history.append(hook_message)
        if self._session_log is not None:
            self._session_log.append_message(hook_message)

    def _hook_append_entry(self, custom_type: str, data: Any) -> None:
        if self._session_log is None:
            logger.debug("No session log; dropping custom entry %s", custom_type)
            return
        self._session_log.append_entry(custom_type, data)

    @staticmethod
    def _hook_to_message(message: HookMessage) -> Message:
        return Message(
            role=Role.HOOK,
            content=message.parts(),
            custom_type=message.custom_type,
            display=message.display,
            details=message.details,
        )

    # ---- notifications ---- #

    def _set_state(self, state: EngineState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.debug("Engine state %s -> %s", previous, state)
        self.events.emit_nowait(
            EngineEvent(EngineEventKind.STATE_CHANGED, {"from": previous, "to": state})
        )

    def _queue_changed(self, depth: int) -> None:
        self.events.emit_nowait(EngineEvent(EngineEventKind.QUEUE_CHANGED, {"depth": depth}))


async def _aclose(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Error closing transport stream", exc_info=True)
