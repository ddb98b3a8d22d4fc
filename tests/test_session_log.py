"""Tests for the append-only JSONL session log."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from relay_agent.session_log import (
    CustomEntry,
    MessageEntry,
    SessionLog,
    SessionMetadata,
    parse_entries,
    safe_cwd,
)
from relay_llm.types import Message, Role


@pytest.fixture
def log(tmp_path: Path) -> SessionLog:
    return SessionLog(tmp_path / "config", cwd="/work/project")


class TestLayout:
    def test_safe_cwd(self):
        assert safe_cwd("/Users/foo/project") == "--Users--foo--project--"
        assert safe_cwd("C:\\code\\app") == "--C--code--app--"

    def test_start_session_writes_metadata_first(self, log):
        session_id = log.start_session("anthropic", "model-x", "high")
        path = log.session_path
        assert path.parent == log.session_dir
        assert path.parent.name == "--work--project--"
        assert path.name.endswith(f"_{session_id}.jsonl")

        header = json.loads(path.read_text().splitlines()[0])
        assert header["type"] == "session"
        assert header["id"] == session_id
        assert header["modelId"] == "model-x"
        assert header["thinkingLevel"] == "high"
        assert header["cwd"] == "/work/project"


class TestAppend:
    def test_sync_appends_preserve_order(self, log):
        log.start_session("p", "m")
        log.append_message(Message.user("hello"))
        log.append_message(Message.assistant("hi there"))
        log.append_entry("bookmark", {"label": "x"})

        entries = log.get_entries()
        assert isinstance(entries[0], SessionMetadata)
        assert [e.type for e in entries[1:]] == ["message", "message", "custom"]
        assert entries[1].message.role == Role.USER
        assert entries[3].custom_type == "bookmark"
        assert entries[3].data == {"label": "x"}

    @pytest.mark.asyncio
    async def test_async_appends_flush_in_order(self, log):
        log.start_session("p", "m")
        for i in range(20):
            log.append_message(Message.user(f"msg {i}"))
        await log.flush()

        messages = [e.message.text for e in log.get_entries() if isinstance(e, MessageEntry)]
        assert messages == [f"msg {i}" for i in range(20)]
        await log.close()

    def test_append_without_session_is_dropped(self, log):
        log.append_entry("orphan")
        assert log.get_entries() == []

    def test_write_failure_is_swallowed(self, log, tmp_path):
        log.start_session("p", "m")
        log.session_path.unlink()
        log.session_path.mkdir()  # appending to a directory fails
        log.append_message(Message.user("lost"))


class TestDiscovery:
    def test_list_sessions_newest_first(self, log):
        first = log.start_session("p", "m")
        second = log.start_session("p", "m")
        assert [s.id for s in log.list_sessions()] == [second, first]

    def test_list_sessions_summary(self, log):
        log.start_session("anthropic", "model-x")
        log.append_message(Message.user("fix the bug"))
        log.append_message(Message.assistant("done"))

        (info,) = log.list_sessions()
        assert info.cwd == "/work/project"
        assert info.provider == "anthropic"
        assert info.message_count == 2
        assert info.first_message == "fix the bug"

    def test_load_session_tolerates_torn_lines(self, log):
        log.start_session("p", "m")
        log.append_message(Message.user("kept"))
        with open(log.session_path, "a", encoding="utf-8") as fh:
            fh.write('{"type": "message", "timest')

        loaded = log.load_latest()
        assert loaded is not None
        assert [m.text for m in loaded.messages] == ["kept"]

    def test_invalid_header_is_not_a_session(self, log):
        log.session_dir.mkdir(parents=True)
        bogus = log.session_dir / "1_bogus.jsonl"
        bogus.write_text('{"type": "custom", "timestamp": 1, "customType": "x"}\n')
        assert log.load_session(bogus) is None
        assert log.list_sessions() == []

    def test_continue_session_appends_without_header(self, log, tmp_path):
        session_id = log.start_session("p", "m")
        path = log.session_path

        other = SessionLog(tmp_path / "config", cwd="/work/project")
        other.continue_session(path)
        assert other.session_id == session_id
        other.append_message(Message.user("resumed"))

        entries = other.get_entries()
        assert sum(isinstance(e, SessionMetadata) for e in entries) == 1
        assert entries[-1].message.text == "resumed"

    def test_parse_entries_skips_garbage(self):
        text = "\n".join(
            [
                '{"type": "custom", "timestamp": 1, "customType": "a", "data": 1}',
                "not json",
                "",
                '{"type": "unknown"}',
            ]
        )
        entries = parse_entries(text)
        assert len(entries) == 1
        assert isinstance(entries[0], CustomEntry)
