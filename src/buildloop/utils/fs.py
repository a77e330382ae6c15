"""
buildloop — filesystem utilities

File: src/buildloop/utils/fs.py

Purpose
- Safe, minimal filesystem helpers for atomic writes and root-confined paths.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Relative keys never resolve outside their root.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path, PurePosixPath

PathLike = str | os.PathLike[str]

__all__ = ["atomic_write", "is_within", "resolve_within", "validate_relative_key"]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    Readers either see the previous file or the complete new one, never a
    partially written object.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target_parent)
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        Path(child).resolve().relative_to(Path(parent).resolve())
    except ValueError:
        return False
    return True


def validate_relative_key(key: str) -> PurePosixPath:
    """Reject empty, absolute, or traversing ``/``-separated keys."""

    pure = PurePosixPath(key)
    if not key or pure.is_absolute() or any(part in {"", ".", ".."} for part in key.split("/")):
        raise ValueError(f"invalid relative key: {key!r}")
    return pure


def resolve_within(root: PathLike, key: str) -> Path:
    """Map a ``/``-separated relative key onto a path under ``root``."""

    pure = validate_relative_key(key)
    candidate = Path(root).joinpath(*pure.parts)
    if not is_within(candidate, root):
        raise ValueError(f"key escapes root: {key!r}")
    return candidate


def _fsync_directory(path: Path) -> None:
    """Best-effort directory fsync for metadata durability after ``os.replace``."""

    if os.name == "nt":
        return
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
