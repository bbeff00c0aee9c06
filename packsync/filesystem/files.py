"""Filesystem helpers: path containment checks and atomic writes."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path, PurePosixPath

from packsync.exceptions import PathSafetyError


def resolve_inside(base: Path, relative: str) -> Path | None:
    """Resolve a relative path within base, returning None on traversal."""
    resolved = (base / relative).resolve()
    if not resolved.is_relative_to(base.resolve()):
        return None
    return resolved


def require_inside(base: Path, relative: str) -> Path:
    """Like ``resolve_inside`` but raises ``PathSafetyError`` on traversal."""
    resolved = resolve_inside(base, relative)
    if resolved is None:
        raise PathSafetyError(f"Path escapes {base}: {relative}")
    return resolved


def is_safe_relative_path(file_path: str) -> bool:
    """Return True for a non-empty, relative, forward-slash path without ``..``."""
    if not file_path or "\\" in file_path or "\x00" in file_path:
        return False
    pure = PurePosixPath(file_path)
    if pure.is_absolute():
        return False
    return all(part not in ("", ".", "..") for part in file_path.split("/"))


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to path via a temporary sibling and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
