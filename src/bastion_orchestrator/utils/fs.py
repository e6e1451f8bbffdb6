"""
bastion-orchestrator — filesystem utilities

File: src/bastion_orchestrator/utils/fs.py
Last updated: 2026-10-19

Purpose
- Scratch directory lifecycle for sandbox executions: private creation, atomic file
  materialization, and guarded deletion.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Deletion refuses paths outside the owning root.
- Scratch directories are created exclusively; an existing path is never reused.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "create_private_directory",
    "safe_delete",
]


def create_private_directory(root: PathLike, name: str) -> Path:
    """Create ``root/name`` with owner-only permissions; fail if it already exists."""

    if not name or "/" in name or name in {".", ".."}:
        raise ValueError(f"invalid directory name: {name!r}")
    parent = Path(root)
    parent.mkdir(parents=True, exist_ok=True)
    target = parent.resolve(strict=True) / name
    target.mkdir(mode=0o700)
    return target


def atomic_write(
    path: PathLike, data: bytes | str, *, encoding: str = "utf-8", mode: int = 0o644
) -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def safe_delete(path: PathLike, root: PathLike) -> bool:
    """
    Delete ``path`` only if it is contained within ``root``.

    Returns ``False`` when the path is already gone. Symlinks are unlinked without
    traversing into their targets.
    """

    owner = Path(root).resolve(strict=True)
    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return False

    candidate = target.parent.resolve(strict=True) / target.name
    if not _is_relative_to(candidate, owner) or candidate == owner:
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink() or not target.is_dir():
        target.unlink()
    else:
        shutil.rmtree(target)
    return True


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
