"""Execution context handed to every tool handler.

The registry holds one default context that is shared read-only across
calls. Per-call overrides are copy-merged into a fresh context, so a call
can never leak its cwd, env or limits into the next one.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any

from relay_agent.abort import AbortSignal
from relay_agent.tools.truncation import TruncationConfig

# Env var suffixes that indicate secrets. More precise than substring matching.
_SECRET_SUFFIXES = (
    "_KEY",
    "_SECRET",
    "_TOKEN",
    "_PASSWORD",
    "_CREDENTIAL",
)
_SECRET_EXACT = {
    "DATABASE_URL",
    "REDIS_URL",
    "PGPASSWORD",
    "MYSQL_PWD",
}


def filtered_environ(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Process environment minus variables that look like credentials."""
    source = os.environ if environ is None else environ
    return {
        k: v
        for k, v in source.items()
        if k not in _SECRET_EXACT
        and not any(k.upper().endswith(suffix) for suffix in _SECRET_SUFFIXES)
    }


@dataclass(frozen=True)
class ExecutionContext:
    """Where and how a tool runs."""

    cwd: Path
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    tmp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    truncation: TruncationConfig = field(default_factory=TruncationConfig)
    signal: AbortSignal | None = None
    tool_call_id: str | None = None
    timeout_ms: int | None = None

    @classmethod
    def default(cls, cwd: str | Path | None = None) -> ExecutionContext:
        return cls(
            cwd=Path(cwd or os.getcwd()),
            env=MappingProxyType(filtered_environ()),
            tmp_dir=Path(tempfile.gettempdir()) / "relay",
        )

    def merged(self, overrides: Mapping[str, Any] | None = None) -> ExecutionContext:
        """Build a fresh context with *overrides* applied.

        ``env`` overrides are layered on top of the default env.
        ``truncation`` may be a full ``TruncationConfig`` or a mapping with
        optional ``text`` / ``command`` tiers, merged field by field.
        """
        values = dict(overrides or {})

        env = values.pop("env", None)
        if env is not None:
            values["env"] = MappingProxyType({**self.env, **env})

        truncation = values.pop("truncation", None)
        if isinstance(truncation, TruncationConfig):
            values["truncation"] = truncation
        elif truncation is not None:
            values["truncation"] = self.truncation.merged(
                text=truncation.get("text"), command=truncation.get("command")
            )

        for key in ("cwd", "tmp_dir"):
            if key in values and values[key] is not None:
                values[key] = Path(values[key])

        return replace(self, **values)
