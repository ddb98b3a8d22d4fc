"""Shell execution: the ``bash`` tool and the process runner behind it.

Commands run in their own process group so cancellation reaches every
child. Cancellation is cooperative: the runner watches the abort signal
handed in through the execution context (which the registry also fires on
timeout) and escalates SIGTERM to SIGKILL after a grace period.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field

from relay_agent.abort import AbortSignal
from relay_agent.tools.atomic import resolve_path, write_temp_file
from relay_agent.tools.base import AgentTool, make_tool
from relay_agent.tools.context import ExecutionContext
from relay_agent.tools.truncation import truncate_command_output
from relay_llm.types import ContentPart, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 120_000
KILL_GRACE_SECONDS = 2.0

# ------------------------------------------------------------------ #
# Process result
# ------------------------------------------------------------------ #


@dataclass
class ProcessResult:
    """Result of a subprocess execution."""

    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool = False
    aborted: bool = False
    duration_ms: int = 0

    @property
    def output(self) -> str:
        """Combined output formatted for model consumption."""
        parts: list[str] = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(f"STDERR:\n{self.stderr}")
        if self.timed_out:
            parts.append(f"Command timed out after {self.duration_ms}ms")
        elif self.aborted:
            parts.append("Command aborted")
        elif self.exit_code not in (0, None):
            parts.append(f"Exit code: {self.exit_code}")
        return "\n".join(parts) if parts else "(no output)"


# ------------------------------------------------------------------ #
# SIGTERM -> SIGKILL escalation
# ------------------------------------------------------------------ #


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> bool:
    try:
        if hasattr(os, "killpg"):
            os.killpg(os.getpgid(proc.pid), sig)
        else:
            proc.send_signal(sig)
    except (OSError, ProcessLookupError):
        return False
    return True


async def _sigterm_sigkill(proc: asyncio.subprocess.Process) -> None:
    """Send SIGTERM to the process group, then SIGKILL if it is still alive."""
    if not _signal_group(proc, signal.SIGTERM):
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
    except TimeoutError:
        _signal_group(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        await proc.wait()


async def run_process(
    argv: list[str],
    *,
    cwd: str | Path,
    env: Mapping[str, str] | None = None,
    stdin: str | None = None,
    abort_signal: AbortSignal | None = None,
    timeout_ms: int | None = None,
) -> ProcessResult:
    """Run *argv* to completion, or until aborted / timed out."""
    started = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        start_new_session=True,
    )
    communicate = asyncio.ensure_future(
        proc.communicate(stdin.encode("utf-8") if stdin is not None else None)
    )
    waiters: set[asyncio.Future[object]] = {communicate}
    abort_wait: asyncio.Future[object] | None = None
    if abort_signal is not None:
        abort_wait = asyncio.ensure_future(abort_signal.wait())
        waiters.add(abort_wait)

    timed_out = False
    aborted = False
    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=timeout_ms / 1000 if timeout_ms else None,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if communicate not in done:
            reason = abort_signal.reason if abort_signal is not None else None
            timed_out = abort_wait not in done or bool(reason and reason.startswith("timed out"))
            aborted = not timed_out
            await _sigterm_sigkill(proc)
        stdout, stderr = await communicate
    finally:
        if abort_wait is not None:
            abort_wait.cancel()
        if not communicate.done():
            communicate.cancel()

    return ProcessResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=proc.returncode,
        timed_out=timed_out,
        aborted=aborted,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


# ------------------------------------------------------------------ #
# Security: shell command deny-list
# ------------------------------------------------------------------ #

SHELL_DENY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\brm\s+-[^\s]*r[^\s]*f\s+/\s*$"),  # rm -rf /
    re.compile(r"\bmkfs\b"),
    re.compile(r"\bdd\s+.*of=/dev/"),
    re.compile(r":\(\)\s*\{"),  # fork bomb
    re.compile(r"\bshutdown\b"),
    re.compile(r"\breboot\b"),
]


def check_shell_command(command: str) -> str | None:
    """Return an error message if *command* matches the deny-list."""
    for pattern in SHELL_DENY_PATTERNS:
        if pattern.search(command):
            return f"Command blocked by safety filter. Pattern matched: {pattern.pattern}"
    return None


# ------------------------------------------------------------------ #
# bash
# ------------------------------------------------------------------ #


class BashInput(BaseModel):
    command: str = Field(min_length=1, description="Shell command to run with bash -c")
    cwd: str | None = Field(default=None, description="Working directory override")
    stdin: str | None = Field(default=None, description="Data written to stdin")
    timeout_ms: int | None = Field(default=None, ge=1, description="Timeout in milliseconds")


async def _bash(args: BashInput, context: ExecutionContext) -> ToolResult:
    blocked = check_shell_command(args.command)
    if blocked:
        return ToolResult.error(blocked, details={"command": args.command})

    cwd = resolve_path(context.cwd, args.cwd) if args.cwd else context.cwd
    timeout_ms = args.timeout_ms or context.timeout_ms or DEFAULT_TIMEOUT_MS

    result = await run_process(
        ["bash", "-c", args.command],
        cwd=cwd,
        env=context.env,
        stdin=args.stdin,
        abort_signal=context.signal,
        timeout_ms=timeout_ms,
    )

    output = result.output
    truncation = truncate_command_output(output, context.truncation.command)
    details: dict[str, object] = {
        "command": args.command,
        "cwd": str(cwd),
        "exit_code": result.exit_code,
        "timed_out": result.timed_out,
        "aborted": result.aborted,
        "duration_ms": result.duration_ms,
        "truncated": truncation.truncated,
        "omitted_bytes": truncation.omitted_bytes,
    }
    if truncation.truncated:
        full = await asyncio.to_thread(
            write_temp_file, "bash-output", output, tmp_dir=context.tmp_dir
        )
        details["full_output_path"] = str(full)

    is_error = result.timed_out or result.aborted or result.exit_code != 0
    return ToolResult(
        content=[ContentPart.text_part(truncation.value)],
        details=details,
        is_error=is_error,
    )


BASH = make_tool(
    name="bash",
    description=(
        "Run a shell command with bash -c. Output is byte-capped; when truncated the "
        "full output is saved to a temp file listed in the result details."
    ),
    input_schema=BashInput,
    execute=_bash,
    truncates_output=True,
)

SHELL_TOOLS: list[AgentTool] = [BASH]
