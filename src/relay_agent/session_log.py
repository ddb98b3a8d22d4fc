"""Append-only JSONL session log.

Layout: ``<config_dir>/sessions/--<cwd with separators as -->--/<ms>_<uuid>.jsonl``.
Line 1 of every file is the session metadata entry; after that come
``message`` and ``custom`` entries, only ever appended.

Appends are fire-and-forget: callers do not await them. Inside an event loop
they go through one writer task fed by a FIFO queue, so the on-disk order is
the call order. Write failures are logged and swallowed; a lost history line
must never take down a turn.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from relay_llm.types import Message, Role

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Entries
# ------------------------------------------------------------------ #


class SessionMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["session"] = "session"
    id: str
    timestamp: int
    cwd: str
    provider: str
    model_id: str = Field(alias="modelId")
    thinking_level: str = Field(default="off", alias="thinkingLevel")


class MessageEntry(BaseModel):
    type: Literal["message"] = "message"
    timestamp: int
    message: Message


class CustomEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["custom"] = "custom"
    timestamp: int
    custom_type: str = Field(alias="customType")
    data: Any = None


SessionEntry = Annotated[
    SessionMetadata | MessageEntry | CustomEntry, Field(discriminator="type")
]
_ENTRY_ADAPTER: TypeAdapter[SessionEntry] = TypeAdapter(SessionEntry)


@dataclass
class SessionInfo:
    id: str
    timestamp: int
    path: Path
    cwd: str
    provider: str
    model_id: str
    message_count: int = 0
    first_message: str = ""


@dataclass
class LoadedSession:
    metadata: SessionMetadata
    messages: list[Message] = field(default_factory=list)
    entries: list[SessionMetadata | MessageEntry | CustomEntry] = field(default_factory=list)


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #

_last_session_timestamp = 0


def _next_session_timestamp() -> int:
    """Millisecond timestamp, strictly increasing within the process."""
    global _last_session_timestamp  # noqa: PLW0603
    now = int(time.time() * 1000)
    timestamp = now if now > _last_session_timestamp else _last_session_timestamp + 1
    _last_session_timestamp = timestamp
    return timestamp


def _now_ms() -> int:
    return int(time.time() * 1000)


def safe_cwd(cwd: str) -> str:
    """/Users/foo/project -> --Users--foo--project--"""
    return "--" + cwd.replace("\\", "/").replace(":", "").replace("/", "--") + "--"


def parse_entries(
    text: str, source: str = "<memory>"
) -> list[SessionMetadata | MessageEntry | CustomEntry]:
    """Parse JSONL text, skipping blank, partial or malformed lines."""
    entries = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            entries.append(_ENTRY_ADAPTER.validate_json(line))
        except (ValidationError, ValueError):
            logger.debug("Skipping malformed session line %s:%d", source, lineno)
    return entries


def _append_line(path: Path, line: str) -> None:
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line)


# ------------------------------------------------------------------ #
# SessionLog
# ------------------------------------------------------------------ #


class SessionLog:
    """Sole writer of one working directory's session files."""

    def __init__(self, config_dir: str | Path, cwd: str | Path | None = None) -> None:
        self._cwd = str(cwd or os.getcwd())
        self._session_dir = Path(config_dir) / "sessions" / safe_cwd(self._cwd)
        self._path: Path | None = None
        self._id: str | None = None
        self._queue: asyncio.Queue[tuple[Path, str] | None] | None = None
        self._writer: asyncio.Task[None] | None = None

    @property
    def session_dir(self) -> Path:
        return self._session_dir

    @property
    def session_id(self) -> str | None:
        return self._id

    @property
    def session_path(self) -> Path | None:
        return self._path

    def start_session(self, provider: str, model_id: str, thinking_level: str = "off") -> str:
        """Create a new session file and write its metadata line."""
        self._session_dir.mkdir(parents=True, exist_ok=True)
        session_id = str(uuid.uuid4())
        timestamp = _next_session_timestamp()
        path = self._session_dir / f"{timestamp}_{session_id}.jsonl"
        metadata = SessionMetadata(
            id=session_id,
            timestamp=timestamp,
            cwd=self._cwd,
            provider=provider,
            model_id=model_id,
            thinking_level=thinking_level,
        )
        path.write_text(metadata.model_dump_json(by_alias=True) + "\n", encoding="utf-8")
        self._path = path
        self._id = session_id
        logger.info("Started session %s at %s", session_id, path)
        return session_id

    def continue_session(self, path: str | Path, session_id: str | None = None) -> None:
        """Append to an existing session file without writing a header."""
        self._path = Path(path)
        if session_id is None:
            loaded = self.load_session(self._path)
            session_id = loaded.metadata.id if loaded else None
        self._id = session_id

    def append_message(self, message: Message) -> None:
        self._enqueue(MessageEntry(timestamp=_now_ms(), message=message))

    def append_entry(self, custom_type: str, data: Any = None) -> None:
        self._enqueue(CustomEntry(timestamp=_now_ms(), custom_type=custom_type, data=data))

    def get_entries(self) -> list[SessionMetadata | MessageEntry | CustomEntry]:
        """Read back the current session, tolerating torn trailing lines."""
        if self._path is None or not self._path.exists():
            return []
        try:
            text = self._path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            logger.exception("Failed to read session %s", self._path)
            return []
        return parse_entries(text, str(self._path))

    async def flush(self) -> None:
        """Wait until every queued append has hit the file."""
        if self._queue is not None and self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        if self._queue is not None and self._writer is not None and not self._writer.done():
            self._queue.put_nowait(None)
            await self._writer
        self._writer = None
        self._queue = None

    # ---- discovery ---- #

    def list_sessions(self) -> list[SessionInfo]:
        """Sessions for this cwd, newest first. Unreadable files are skipped."""
        if not self._session_dir.is_dir():
            return []
        sessions: list[SessionInfo] = []
        for path in self._session_dir.glob("*.jsonl"):
            loaded = self.load_session(path)
            if loaded is None:
                logger.debug("Skipping unreadable session file %s", path)
                continue
            metadata = loaded.metadata
            first_user = next((m for m in loaded.messages if m.role == Role.USER), None)
            sessions.append(
                SessionInfo(
                    id=metadata.id,
                    timestamp=metadata.timestamp,
                    path=path,
                    cwd=metadata.cwd,
                    provider=metadata.provider,
                    model_id=metadata.model_id,
                    message_count=len(loaded.messages),
                    first_message=first_user.text if first_user else "",
                )
            )
        sessions.sort(key=lambda s: (s.timestamp, s.path.name), reverse=True)
        return sessions

    def load_session(self, path: str | Path) -> LoadedSession | None:
        """Parse a session file; None if missing or its header is invalid."""
        file_path = Path(path)
        try:
            text = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        entries = parse_entries(text, str(file_path))
        if not entries or not isinstance(entries[0], SessionMetadata):
            return None
        return LoadedSession(
            metadata=entries[0],
            messages=[e.message for e in entries if isinstance(e, MessageEntry)],
            entries=entries,
        )

    def load_latest(self) -> LoadedSession | None:
        for info in self.list_sessions():
            loaded = self.load_session(info.path)
            if loaded is not None:
                return loaded
        return None

    # ---- writer ---- #

    def _enqueue(self, entry: MessageEntry | CustomEntry) -> None:
        if self._path is None:
            logger.debug("No active session; dropping %s entry", entry.type)
            return
        try:
            line = entry.model_dump_json(by_alias=True) + "\n"
        except (ValueError, TypeError):
            logger.exception("Failed to serialize %s entry", entry.type)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(self._path, line)
            return

        if self._writer is None or self._writer.done():
            self._queue = asyncio.Queue()
            self._writer = loop.create_task(self._drain(self._queue))
        assert self._queue is not None  # noqa: S101
        self._queue.put_nowait((self._path, line))

    async def _drain(self, queue: asyncio.Queue[tuple[Path, str] | None]) -> None:
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                path, line = item
                await asyncio.to_thread(self._write, path, line)
            finally:
                queue.task_done()

    @staticmethod
    def _write(path: Path, line: str) -> None:
        try:
            _append_line(path, line)
        except Exception:
            logger.exception("Failed to append to session %s", path)
