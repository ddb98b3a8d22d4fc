"""File tools: read, write, edit, ls.

Writes and edits go through ``write_file_atomic``. An edit is a list of
exact-match find/replace operations applied in memory, in order; if any
operation misses, nothing is written.
"""

from __future__ import annotations

import asyncio
import difflib
from pathlib import Path

from pydantic import BaseModel, Field

from relay_agent.errors import SnippetNotFoundError
from relay_agent.tools.atomic import relative_to, resolve_path, write_file_atomic, write_temp_file
from relay_agent.tools.base import AgentTool, make_tool
from relay_agent.tools.context import ExecutionContext
from relay_agent.tools.truncation import summarize_text
from relay_llm.types import ToolResult

# ------------------------------------------------------------------ #
# read
# ------------------------------------------------------------------ #


class ReadInput(BaseModel):
    path: str = Field(description="Path to the file to read")
    offset: int = Field(default=0, ge=0, description="Line offset (0-indexed)")
    limit: int | None = Field(default=None, ge=1, description="Max lines to return")
    max_bytes: int | None = Field(default=None, ge=1, description="Override the byte cap")
    max_lines: int | None = Field(default=None, ge=1, description="Override the line cap")


async def _read(args: ReadInput, context: ExecutionContext) -> ToolResult:
    path = resolve_path(context.cwd, args.path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {args.path}")
    if not path.is_file():
        raise IsADirectoryError(f"Not a file: {args.path}")

    text = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
    lines = text.split("\n")
    end = len(lines) if args.limit is None else args.offset + args.limit
    selected = "\n".join(lines[args.offset : end])

    summary = summarize_text(
        selected,
        context.truncation.text,
        max_bytes=args.max_bytes,
        max_lines=args.max_lines,
    )
    return ToolResult.from_text(
        summary.value,
        details={
            "path": relative_to(context.cwd, path),
            "total_lines": len(lines),
            "truncated": summary.truncated,
            "omitted_bytes": summary.omitted_bytes,
            "omitted_lines": summary.omitted_lines,
        },
    )


READ = make_tool(
    name="read",
    description="Read a text file. Supports a line offset and limit for large files.",
    input_schema=ReadInput,
    execute=_read,
    truncates_output=True,
)


# ------------------------------------------------------------------ #
# write
# ------------------------------------------------------------------ #


class WriteInput(BaseModel):
    path: str = Field(description="Path to write to")
    content: str = Field(description="Full file content")


async def _write(args: WriteInput, context: ExecutionContext) -> ToolResult:
    path = resolve_path(context.cwd, args.path)
    existed = path.exists()
    await asyncio.to_thread(write_file_atomic, path, args.content)

    size = len(args.content.encode("utf-8"))
    rel = relative_to(context.cwd, path)
    return ToolResult.from_text(
        f"Wrote {size} bytes to {rel}",
        details={"path": str(path), "bytes": size, "created": not existed},
    )


WRITE = make_tool(
    name="write",
    description="Write a file atomically. Creates parent directories; overwrites existing files.",
    input_schema=WriteInput,
    execute=_write,
)


# ------------------------------------------------------------------ #
# edit
# ------------------------------------------------------------------ #


class EditOperation(BaseModel):
    find: str = Field(min_length=1, description="Exact text to find")
    replace: str = Field(description="Replacement text")
    occurrence: int = Field(default=1, ge=1, description="Which match to replace (1-based)")


class EditInput(BaseModel):
    path: str = Field(description="Path to the file to edit")
    operations: list[EditOperation] = Field(min_length=1)
    backup: bool = Field(default=False, description="Save the original to the temp dir first")


def _find_occurrence(text: str, snippet: str, occurrence: int) -> int:
    index = -1
    start = 0
    for _ in range(occurrence):
        index = text.find(snippet, start)
        if index < 0:
            return -1
        start = index + len(snippet)
    return index


def apply_edits(text: str, operations: list[EditOperation], path: str | None = None) -> str:
    """Apply *operations* in order to *text*, raising on the first miss."""
    for op in operations:
        index = _find_occurrence(text, op.find, op.occurrence)
        if index < 0:
            raise SnippetNotFoundError(op.find, op.occurrence, path)
        text = text[:index] + op.replace + text[index + len(op.find) :]
    return text


async def _edit(args: EditInput, context: ExecutionContext) -> ToolResult:
    path = resolve_path(context.cwd, args.path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {args.path}")

    rel = relative_to(context.cwd, path)
    original = await asyncio.to_thread(path.read_text, encoding="utf-8")
    updated = apply_edits(original, args.operations, rel)
    changed = updated != original

    backup_path: Path | None = None
    if changed and args.backup:
        backup_path = await asyncio.to_thread(
            write_temp_file, f"{path.name}.bak", original, tmp_dir=context.tmp_dir
        )
    if changed:
        await asyncio.to_thread(write_file_atomic, path, updated)

    diff = "".join(
        difflib.unified_diff(
            original.splitlines(keepends=True),
            updated.splitlines(keepends=True),
            fromfile=f"a/{rel}",
            tofile=f"b/{rel}",
        )
    )
    count = len(args.operations)
    message = (
        f"Applied {count} edit operation(s) to {rel}"
        if changed
        else f"No changes to {rel}"
    )
    return ToolResult.from_text(
        message,
        details={
            "path": str(path),
            "operations": count,
            "backup_path": str(backup_path) if backup_path else None,
            "changed": changed,
            "diff": diff,
        },
    )


EDIT = make_tool(
    name="edit",
    description=(
        "Edit a file with an ordered list of exact find/replace operations. "
        "If any snippet is missing, the file is left untouched."
    ),
    input_schema=EditInput,
    execute=_edit,
)


# ------------------------------------------------------------------ #
# ls
# ------------------------------------------------------------------ #


class ListInput(BaseModel):
    path: str = Field(default=".", description="Directory to list")
    all: bool = Field(default=False, description="Include dotfiles")


async def _ls(args: ListInput, context: ExecutionContext) -> ToolResult:
    path = resolve_path(context.cwd, args.path)
    if not path.is_dir():
        raise NotADirectoryError(f"Not a directory: {args.path}")

    def _list() -> list[str]:
        entries = []
        for child in sorted(path.iterdir(), key=lambda p: p.name):
            if not args.all and child.name.startswith("."):
                continue
            entries.append(f"{child.name}/" if child.is_dir() else child.name)
        return entries

    entries = await asyncio.to_thread(_list)
    summary = summarize_text("\n".join(entries), context.truncation.text)
    return ToolResult.from_text(
        summary.value or "(empty directory)",
        details={"path": relative_to(context.cwd, path), "count": len(entries)},
    )


LS = make_tool(
    name="ls",
    description="List the entries of a directory. Directories end with '/'.",
    input_schema=ListInput,
    execute=_ls,
    truncates_output=True,
)

FS_TOOLS: list[AgentTool] = [READ, WRITE, EDIT, LS]
