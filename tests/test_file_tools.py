"""Tests for atomic persistence and the read/write/edit/ls/bash tools."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from relay_agent.abort import AbortSignal
from relay_agent.errors import SnippetNotFoundError
from relay_agent.tools import register_core_tools
from relay_agent.tools.atomic import (
    TEMP_PREFIX,
    relative_to,
    resolve_path,
    write_file_atomic,
    write_temp_file,
)
from relay_agent.tools.context import ExecutionContext
from relay_agent.tools.fs import EditOperation, apply_edits
from relay_agent.tools.registry import ToolRegistry
from relay_agent.tools.shell import check_shell_command, run_process
from relay_llm.types import ToolCall


@pytest.fixture
def registry(tmp_path: Path) -> ToolRegistry:
    context = ExecutionContext.default(tmp_path)
    reg = ToolRegistry(default_context=context.merged({"tmp_dir": tmp_path / ".tmp"}))
    register_core_tools(reg)
    return reg


def _leftover_temps(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.startswith(TEMP_PREFIX)]


# ================================================================== #
# Atomic writes
# ================================================================== #


class TestAtomicWrite:
    def test_creates_parents(self, tmp_path):
        target = tmp_path / "a" / "b" / "file.txt"
        write_file_atomic(target, "data")
        assert target.read_text() == "data"
        assert _leftover_temps(target.parent) == []

    def test_failed_rename_leaves_original(self, tmp_path):
        target = tmp_path / "file.txt"
        target.write_text("original")
        with patch("relay_agent.tools.atomic.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                write_file_atomic(target, "new content")
        assert target.read_text() == "original"
        assert _leftover_temps(tmp_path) == []

    def test_temp_file_side_artifact(self, tmp_path):
        path = write_temp_file("bash-output", "full", tmp_dir=tmp_path / "t")
        assert path.parent == tmp_path / "t"
        assert path.name.startswith("bash-output-")
        assert path.read_text() == "full"

    def test_path_helpers(self, tmp_path):
        assert resolve_path(tmp_path, "x/../y.txt") == tmp_path / "y.txt"
        assert resolve_path(tmp_path, "/etc/hosts") == Path("/etc/hosts")
        assert relative_to(tmp_path, tmp_path / "src" / "m.py") == str(Path("src/m.py"))


# ================================================================== #
# Edit semantics
# ================================================================== #


class TestApplyEdits:
    def test_operations_apply_in_order(self):
        ops = [
            EditOperation(find="a", replace="b"),
            EditOperation(find="bb", replace="c"),
        ]
        assert apply_edits("ab", ops) == "c"

    def test_nth_occurrence(self):
        ops = [EditOperation(find="x", replace="Y", occurrence=2)]
        assert apply_edits("x-x-x", ops) == "x-Y-x"

    def test_missing_occurrence_raises(self):
        ops = [EditOperation(find="x", replace="Y", occurrence=4)]
        with pytest.raises(SnippetNotFoundError) as exc_info:
            apply_edits("x-x-x", ops, "f.txt")
        assert exc_info.value.occurrence == 4
        assert "Unable to locate snippet in f.txt" in str(exc_info.value)


class TestEditTool:
    @pytest.mark.asyncio
    async def test_edit_with_diff(self, registry, tmp_path):
        (tmp_path / "m.py").write_text("x = 1\ny = 2\n")
        result = await registry.invoke(
            "edit",
            {"path": "m.py", "operations": [{"find": "y = 2", "replace": "y = 3"}]},
        )
        assert (tmp_path / "m.py").read_text() == "x = 1\ny = 3\n"
        assert result.details["changed"] is True
        assert result.details["operations"] == 1
        assert result.details["backup_path"] is None
        assert "+y = 3" in result.details["diff"]

    @pytest.mark.asyncio
    async def test_all_or_nothing(self, registry, tmp_path):
        target = tmp_path / "m.py"
        target.write_text("alpha beta")
        result = await registry.execute(
            ToolCall(
                id="c1",
                name="edit",
                input={
                    "path": "m.py",
                    "operations": [
                        {"find": "alpha", "replace": "ALPHA"},
                        {"find": "gamma", "replace": "GAMMA"},
                    ],
                },
            )
        )
        assert result.is_error
        assert "Unable to locate snippet" in result.text
        assert target.read_text() == "alpha beta"
        assert _leftover_temps(tmp_path) == []

    @pytest.mark.asyncio
    async def test_backup_only_when_requested(self, registry, tmp_path):
        (tmp_path / "m.py").write_text("old")
        result = await registry.invoke(
            "edit",
            {"path": "m.py", "operations": [{"find": "old", "replace": "new"}], "backup": True},
        )
        backup = Path(result.details["backup_path"])
        assert backup.read_text() == "old"
        assert backup.parent == tmp_path / ".tmp"

    @pytest.mark.asyncio
    async def test_failed_persist_keeps_original(self, registry, tmp_path):
        target = tmp_path / "m.py"
        target.write_text("keep me")
        with patch("relay_agent.tools.atomic.os.replace", side_effect=OSError("read-only")):
            result = await registry.execute(
                ToolCall(
                    id="c1",
                    name="edit",
                    input={"path": "m.py", "operations": [{"find": "keep", "replace": "lose"}]},
                )
            )
        assert result.is_error
        assert "read-only" in result.text
        assert target.read_text() == "keep me"
        assert _leftover_temps(tmp_path) == []


# ================================================================== #
# read / write / ls
# ================================================================== #


class TestReadWriteList:
    @pytest.mark.asyncio
    async def test_write_then_read(self, registry, tmp_path):
        written = await registry.invoke("write", {"path": "d/new.txt", "content": "a\nb\nc"})
        assert written.details["created"] is True
        assert written.details["bytes"] == 5

        read = await registry.invoke("read", {"path": "d/new.txt", "offset": 1, "limit": 1})
        assert read.text == "b"
        assert read.details["total_lines"] == 3

    @pytest.mark.asyncio
    async def test_read_truncates_with_context_limits(self, registry, tmp_path):
        (tmp_path / "big.txt").write_text("\n".join(str(i) for i in range(50)))
        result = await registry.invoke(
            "read", {"path": "big.txt"}, {"truncation": {"text": {"max_lines": 5}}}
        )
        assert result.details["truncated"] is True
        assert result.details["omitted_lines"] == 45

    @pytest.mark.asyncio
    async def test_read_missing_file(self, registry):
        result = await registry.execute(ToolCall(id="c", name="read", input={"path": "nope"}))
        assert result.is_error
        assert "File not found" in result.text

    @pytest.mark.asyncio
    async def test_ls_hides_dotfiles(self, registry, tmp_path):
        (tmp_path / "a.txt").write_text("")
        (tmp_path / "pkg").mkdir()
        (tmp_path / ".hidden").write_text("")
        result = await registry.invoke("ls", {})
        assert result.text.splitlines() == ["a.txt", "pkg/"]


# ================================================================== #
# bash
# ================================================================== #


@pytest.mark.skipif(sys.platform == "win32", reason="requires bash")
class TestBash:
    @pytest.mark.asyncio
    async def test_exit_code_marks_error(self, registry):
        ok = await registry.invoke("bash", {"command": "echo hi"})
        assert ok.text.strip() == "hi"
        assert ok.is_error is False

        failed = await registry.invoke("bash", {"command": "exit 3"})
        assert failed.is_error
        assert failed.details["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_truncated_output_saved_in_full(self, registry):
        result = await registry.invoke(
            "bash",
            {"command": "printf 'x%.0s' $(seq 1 500)"},
            {"truncation": {"command": {"max_bytes": 100}}},
        )
        assert result.details["truncated"] is True
        full = Path(result.details["full_output_path"])
        assert full.read_text() == "x" * 500

    @pytest.mark.asyncio
    async def test_abort_stops_process(self, tmp_path):
        signal = AbortSignal()
        asyncio.get_running_loop().call_later(0.1, signal.set)
        result = await asyncio.wait_for(
            run_process(["bash", "-c", "sleep 30"], cwd=tmp_path, abort_signal=signal), 10
        )
        assert result.aborted
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        result = await run_process(["bash", "-c", "sleep 30"], cwd=tmp_path, timeout_ms=100)
        assert result.timed_out

    def test_deny_list(self):
        assert check_shell_command("rm -rf /") is not None
        assert check_shell_command("ls -la") is None
