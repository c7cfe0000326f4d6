"""
nexus-verifier — filesystem helpers for overlays and patch workspaces

- ``atomic_write`` stages into a sibling temp file so readers never see a torn file.
- ``safe_delete`` only removes paths strictly inside the root that owns them.
- ``resolve_relative`` keeps repository-relative paths from patches and stack
  frames from escaping the checkout they name.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "copy_tree",
    "resolve_relative",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Write ``data`` to ``path`` through an fsynced temp file and ``os.replace``."""

    target = Path(path)
    payload = data.encode(encoding) if isinstance(data, str) else data
    staged: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=target.parent, prefix=f".{target.name}.", suffix=".tmp", delete=False
        ) as handle:
            staged = Path(handle.name)
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, target)
    except BaseException:
        if staged is not None:
            staged.unlink(missing_ok=True)
        raise


def resolve_relative(root: PathLike, relative_posix_path: str) -> Path:
    """Join a relative POSIX path onto ``root``; absolute or ``..`` paths raise ``ValueError``."""

    posix = PurePosixPath(relative_posix_path)
    if posix.is_absolute():
        raise ValueError(f"path must be relative: {relative_posix_path!r}")
    if not posix.parts:
        raise ValueError("relative path must not be empty")
    if ".." in posix.parts:
        raise ValueError(f"path is not safe: {relative_posix_path!r}")
    return Path(root).joinpath(*posix.parts)


def copy_tree(source: PathLike, destination: PathLike, *, ignore: tuple[str, ...] = ()) -> None:
    """Copy ``source`` into ``destination`` (created if needed), keeping symlinks as links."""

    shutil.copytree(
        source,
        destination,
        symlinks=True,
        ignore=shutil.ignore_patterns(*ignore) if ignore else None,
        dirs_exist_ok=True,
    )


def safe_delete(path: PathLike, workspace_root: PathLike) -> None:
    """Remove ``path`` (file, symlink or directory tree) if it lies strictly inside ``workspace_root``."""

    root = Path(workspace_root).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{root!s} is not a directory")

    target = Path(path)
    # Resolve the parent only: a symlink is judged by where it sits, not where it points.
    located = target.parent.resolve(strict=True) / target.name
    if located == root or not located.is_relative_to(root):
        raise ValueError(f"refusing to delete path outside workspace root: {target!s}")

    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
