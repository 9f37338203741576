"""
File system utilities for Storyloop.

Safe file operations used by the history store and the file generator:
- Atomic writes (write to temp file, then rename)
- Directory creation
- Workspace-confined path resolution
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """Create path and its parents if missing; return it as a Path."""
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"Cannot create directory {path}: {e}")
    return path


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace a file's content atomically.

    The temp file is created beside the target so os.replace never
    crosses filesystems; readers see either the old or the new content.

    Raises:
        FileSystemError: If the write or the replace fails.
    """
    path = Path(path)
    directory = ensure_dir(path.parent)
    fd, temp_name = tempfile.mkstemp(dir=directory, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
        os.replace(temp_name, path)
    except OSError as e:
        Path(temp_name).unlink(missing_ok=True)
        raise FileSystemError(f"Cannot write {path}: {e}")


def resolve_inside(root: str | Path, relative: str | Path) -> Path:
    """
    Resolve a relative path against root, refusing to escape it.

    Raises:
        FileSystemError: If the resolved path lies outside root.
    """
    root_path = Path(root).resolve()
    target = (root_path / relative).resolve()
    if target != root_path and root_path not in target.parents:
        raise FileSystemError(f"Path {relative} escapes {root_path}")
    return target


def move_into(src: str | Path, dst_dir: str | Path) -> Path:
    """Move a file into a directory, creating it first."""
    dst = ensure_dir(dst_dir) / Path(src).name
    try:
        shutil.move(str(src), dst)
    except OSError as e:
        raise FileSystemError(f"Failed to move {src} to {dst}: {e}")
    return dst
