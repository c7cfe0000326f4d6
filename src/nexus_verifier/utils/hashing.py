"""
nexus-verifier — content digests

Purpose
- SHA-256 over bytes, text, files and canonical JSON. Execution requests are
  content-addressed through these, so equal inputs must always hash equally.
- Tree manifests fingerprint repository snapshots: two checkouts with the same
  file contents get the same digest regardless of mtimes or VCS metadata.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Collection, Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "canonical_json_digest",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
    "snapshot_digest",
    "tree_manifest",
]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return sha256_bytes(text.encode(encoding))


def sha256_file(path: PathLike) -> str:
    with Path(path).open("rb") as handle:
        return hashlib.file_digest(handle, "sha256").hexdigest()


def canonical_json_digest(payload: object) -> str:
    """Hash ``payload`` encoded as compact JSON with sorted keys."""

    return sha256_text(
        json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    )


def tree_manifest(root: PathLike, *, skip_dirs: Collection[str] = (".git",)) -> dict[str, str]:
    """Map every regular file under ``root`` to its SHA-256, keyed by relative POSIX path.

    Symlinks and special files are left out, as are directories named in
    ``skip_dirs`` at any depth. Keys come back sorted.
    """

    base = Path(root).resolve(strict=True)
    if not base.is_dir():
        raise NotADirectoryError(f"{base!s} is not a directory")
    entries = (
        (path.relative_to(base).as_posix(), sha256_file(path))
        for path in _regular_files(base, skip_dirs)
    )
    return dict(sorted(entries))


def snapshot_digest(directory: PathLike) -> str:
    """Single digest for a repository tree; changes when any tracked path or content does."""

    return canonical_json_digest(tree_manifest(directory))


def _regular_files(base: Path, skip_dirs: Collection[str]) -> Iterator[Path]:
    for current, dir_names, file_names in os.walk(base, followlinks=False):
        dir_names[:] = [name for name in dir_names if name not in skip_dirs]
        for name in file_names:
            candidate = Path(current, name)
            try:
                mode = candidate.lstat().st_mode
            except FileNotFoundError:
                # Deleted mid-walk.
                continue
            if stat.S_ISREG(mode):
                yield candidate
