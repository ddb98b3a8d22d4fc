"""Atomic file persistence for file-mutating tools.

``write_file_atomic`` writes to a sibling temp file and renames it over the
target, so a reader (or a crash) never observes a half-written file. On
filesystems that cannot rename over an existing file (Windows) the target is
removed first, which leaves a short window where it does not exist.
"""

from __future__ import annotations

import os
import tempfile
import time
import uuid
from pathlib import Path

TEMP_PREFIX = ".relay-tmp"

# False where rename-over-existing is unsupported.
RENAME_REPLACES_TARGET = os.name != "nt"


def resolve_path(cwd: str | Path, target: str | Path) -> Path:
    """Resolve *target* against *cwd* unless it is already absolute."""
    path = Path(target).expanduser()
    if not path.is_absolute():
        path = Path(cwd) / path
    return Path(os.path.normpath(path))


def relative_to(cwd: str | Path, target: str | Path) -> str:
    """Display form of *target* relative to *cwd* (absolute if outside)."""
    absolute = resolve_path(cwd, target)
    rel = os.path.relpath(absolute, os.path.normpath(cwd))
    return str(absolute) if rel.startswith("..") else rel


def write_file_atomic(
    target: str | Path,
    data: str | bytes,
    *,
    encoding: str = "utf-8",
    mode: int | None = None,
) -> None:
    """Write *data* to *target* via temp file + rename.

    Parent directories are created. On any failure before the rename the
    temp file is removed and the original target is left untouched.
    """
    target_path = Path(target)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = target_path.parent / f"{TEMP_PREFIX}-{target_path.name}-{uuid.uuid4().hex}"
    payload = data.encode(encoding) if isinstance(data, str) else data

    committed = False
    try:
        with open(temp_path, "wb") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)

        if not RENAME_REPLACES_TARGET:
            target_path.unlink(missing_ok=True)

        os.replace(temp_path, target_path)
        committed = True
    finally:
        if not committed:
            temp_path.unlink(missing_ok=True)


def write_temp_file(
    base_name: str,
    data: str | bytes,
    *,
    tmp_dir: str | Path | None = None,
    encoding: str = "utf-8",
) -> Path:
    """Write a side artifact (full tool output, edit backup) and return its path."""
    root = Path(tmp_dir) if tmp_dir is not None else Path(tempfile.gettempdir())
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"{base_name}-{int(time.time() * 1000)}-{uuid.uuid4().hex}"
    payload = data.encode(encoding) if isinstance(data, str) else data
    path.write_bytes(payload)
    return path
