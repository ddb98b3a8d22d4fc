"""Diagnostics collaborator: post-write checks for write/edit results.

The core does not compute diagnostics. A host can plug in anything that
implements :class:`Diagnostics` (an LSP client, a linter runner). Its
findings are appended to the tool result the model sees.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from relay_llm.types import ContentPart, ToolResult

logger = logging.getLogger(__name__)

# Tools whose results get diagnostics attached.
DIAGNOSTIC_TOOLS = frozenset({"write", "edit"})

MAX_REPORTED = 20


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    HINT = "hint"


class Diagnostic(BaseModel):
    path: str
    line: int
    column: int = 1
    severity: Severity = Severity.ERROR
    message: str
    source: str | None = None


@runtime_checkable
class Diagnostics(Protocol):
    async def check(self, file_path: str, cwd: str) -> list[Diagnostic]: ...


def format_diagnostics(diagnostics: list[Diagnostic]) -> str:
    """Render diagnostics as a short block of text for the model."""
    if not diagnostics:
        return ""
    errors = sum(1 for d in diagnostics if d.severity == Severity.ERROR)
    warnings = sum(1 for d in diagnostics if d.severity == Severity.WARNING)
    lines = [f"Diagnostics: {errors} error(s), {warnings} warning(s)"]
    for d in diagnostics[:MAX_REPORTED]:
        source = f" [{d.source}]" if d.source else ""
        lines.append(f"  {d.path}:{d.line}:{d.column} {d.severity}{source}: {d.message}")
    if len(diagnostics) > MAX_REPORTED:
        lines.append(f"  ... {len(diagnostics) - MAX_REPORTED} more")
    return "\n".join(lines)


async def with_diagnostics(
    diagnostics: Diagnostics | None,
    tool_name: str,
    result: ToolResult,
    cwd: str | Path,
) -> ToolResult:
    """Append diagnostics for the file a write/edit just touched.

    Only successful write/edit results whose details carry a ``path`` are
    checked. A failing collaborator is logged and the result returned as is.
    """
    if diagnostics is None or tool_name not in DIAGNOSTIC_TOOLS or result.is_error:
        return result
    details = result.details if isinstance(result.details, dict) else {}
    file_path = details.get("path")
    if not file_path:
        return result

    try:
        found = await diagnostics.check(str(file_path), str(cwd))
    except Exception:
        logger.exception("Diagnostics check failed for %s", file_path)
        return result
    if not found:
        return result

    return ToolResult(
        content=[*result.content, ContentPart.text_part("\n\n" + format_diagnostics(found))],
        details={**details, "diagnostics": [d.model_dump(mode="json") for d in found]},
        is_error=result.is_error,
    )
