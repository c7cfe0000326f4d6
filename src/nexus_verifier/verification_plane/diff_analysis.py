"""Unified diff parsing: per-file hunks, size metrics, and patched line regions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from nexus_verifier.domain.models import JSONValue

_HUNK_HEADER: Final = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_GIT_HEADER: Final = re.compile(r"^diff --git (?P<old>\S+) (?P<new>\S+)$")
_WINDOWS_ABSOLUTE_PATH: Final = re.compile(r"^[A-Za-z]:[\\/]")
_DEV_NULL: Final[str] = "/dev/null"


class DiffParseError(ValueError):
    """Raised for diffs that are empty, malformed, or touch forbidden paths."""


@dataclass(frozen=True, slots=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    added: int
    removed: int

    @property
    def new_region(self) -> tuple[int, int]:
        """Line range the hunk covers in the post-image (a pure deletion maps to its anchor line)."""

        start = max(1, self.new_start)
        return (start, start + max(self.new_count, 1) - 1)

    @property
    def old_region(self) -> tuple[int, int]:
        start = max(1, self.old_start)
        return (start, start + max(self.old_count, 1) - 1)


@dataclass(frozen=True, slots=True)
class FilePatch:
    old_path: str | None
    new_path: str | None
    hunks: tuple[Hunk, ...]
    is_binary: bool = False

    @property
    def path(self) -> str:
        path = self.new_path or self.old_path
        assert path is not None
        return path

    @property
    def is_new(self) -> bool:
        return self.old_path is None

    @property
    def is_deleted(self) -> bool:
        return self.new_path is None

    @property
    def is_rename(self) -> bool:
        return self.old_path is not None and self.new_path is not None and self.old_path != self.new_path

    @property
    def added(self) -> int:
        return sum(hunk.added for hunk in self.hunks)

    @property
    def removed(self) -> int:
        return sum(hunk.removed for hunk in self.hunks)


@dataclass(frozen=True, slots=True)
class DiffStats:
    files_changed: int
    hunks: int
    added_lines: int
    removed_lines: int

    @property
    def changed_lines(self) -> int:
        return self.added_lines + self.removed_lines

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "files_changed": self.files_changed,
            "hunks": self.hunks,
            "added_lines": self.added_lines,
            "removed_lines": self.removed_lines,
            "changed_lines": self.changed_lines,
        }


@dataclass(frozen=True, slots=True)
class ParsedDiff:
    files: tuple[FilePatch, ...]
    text: str

    @property
    def stats(self) -> DiffStats:
        return DiffStats(
            files_changed=len(self.files),
            hunks=sum(len(item.hunks) for item in self.files),
            added_lines=sum(item.added for item in self.files),
            removed_lines=sum(item.removed for item in self.files),
        )

    @property
    def pre_image_paths(self) -> tuple[str, ...]:
        """Paths that must already exist in the snapshot for the diff to apply."""

        return tuple(sorted({item.old_path for item in self.files if item.old_path is not None}))

    @property
    def post_image_paths(self) -> tuple[str, ...]:
        return tuple(sorted({item.new_path for item in self.files if item.new_path is not None}))

    def patched_regions(self) -> dict[str, tuple[tuple[int, int], ...]]:
        regions: dict[str, tuple[tuple[int, int], ...]] = {}
        for item in self.files:
            if item.new_path is None:
                continue
            regions[item.new_path] = tuple(hunk.new_region for hunk in item.hunks)
        return regions

    def pre_image_regions(self) -> dict[str, tuple[tuple[int, int], ...]]:
        """Line ranges each hunk replaces, in the coordinates of the original files."""

        regions: dict[str, tuple[tuple[int, int], ...]] = {}
        for item in self.files:
            if item.old_path is None:
                continue
            regions[item.old_path] = tuple(hunk.old_region for hunk in item.hunks)
        return regions

    def overlaps(self, path: str, start_line: int, end_line: int) -> bool:
        """Whether a pre-image line range intersects a hunk."""

        for region_start, region_end in self.pre_image_regions().get(path, ()):
            if start_line <= region_end and region_start <= end_line:
                return True
        return False


def parse_unified_diff(text: str) -> ParsedDiff:
    """Parse git-style or plain unified diff text.

    Raises ``DiffParseError`` when the text contains no file patches, when a hunk
    is truncated, or when a path is absolute, escapes the tree, or targets ``.git``.
    """

    if not text.strip():
        raise DiffParseError("patch is empty")
    lines = text.splitlines()
    files: list[FilePatch] = []
    index = 0

    old_path: str | None = None
    new_path: str | None = None
    hunks: list[Hunk] = []
    is_binary = False
    open_file = False

    def close() -> None:
        nonlocal old_path, new_path, hunks, is_binary, open_file
        if open_file and (old_path is not None or new_path is not None):
            files.append(FilePatch(old_path, new_path, tuple(hunks), is_binary))
        old_path, new_path, hunks, is_binary, open_file = None, None, [], False, False

    while index < len(lines):
        line = lines[index]
        git_header = _GIT_HEADER.match(line)
        if git_header is not None:
            close()
            open_file = True
            old_path = normalize_patch_path(git_header.group("old"))
            new_path = normalize_patch_path(git_header.group("new"))
            index += 1
            continue
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            if not open_file or hunks:
                close()
                open_file = True
            old_path = normalize_patch_path(_header_path(line))
            new_path = normalize_patch_path(_header_path(lines[index + 1]))
            index += 2
            continue
        if open_file and line.startswith("new file mode"):
            old_path = None
        elif open_file and line.startswith("deleted file mode"):
            new_path = None
        elif open_file and line.startswith("rename from "):
            old_path = normalize_patch_path(line[len("rename from ") :])
        elif open_file and line.startswith("rename to "):
            new_path = normalize_patch_path(line[len("rename to ") :])
        elif open_file and (line.startswith("Binary files ") or line == "GIT binary patch"):
            is_binary = True
        elif line.startswith("@@"):
            if not open_file:
                raise DiffParseError(f"hunk without file header at line {index + 1}")
            hunk, index = _parse_hunk(lines, index)
            hunks.append(hunk)
            continue
        index += 1
    close()

    if not files:
        raise DiffParseError("patch contains no file changes")
    return ParsedDiff(files=tuple(files), text=text if text.endswith("\n") else f"{text}\n")


def normalize_patch_path(raw_path: str) -> str | None:
    """Strip quoting and ``a/``/``b/`` prefixes; ``/dev/null`` maps to ``None``."""

    normalized = raw_path.strip()
    if normalized.startswith('"') and normalized.endswith('"') and len(normalized) >= 2:
        normalized = normalized[1:-1]
    if normalized == _DEV_NULL:
        return None
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if normalized.startswith("a/") or normalized.startswith("b/"):
        normalized = normalized[2:]
    posix = PurePosixPath(normalized)
    if normalized in {"", "."}:
        raise DiffParseError(f"patch path {raw_path!r} is empty")
    if posix.is_absolute() or _WINDOWS_ABSOLUTE_PATH.match(normalized):
        raise DiffParseError(f"patch path {raw_path!r} is absolute")
    if ".." in posix.parts:
        raise DiffParseError(f"patch path {raw_path!r} escapes the repository")
    if ".git" in posix.parts:
        raise DiffParseError(f"patch path {raw_path!r} targets .git")
    return posix.as_posix()


def _header_path(line: str) -> str:
    return line[4:].split("\t", 1)[0].strip()


def _parse_hunk(lines: list[str], index: int) -> tuple[Hunk, int]:
    header = _HUNK_HEADER.match(lines[index])
    if header is None:
        raise DiffParseError(f"malformed hunk header at line {index + 1}: {lines[index]!r}")
    old_start = int(header.group("old_start"))
    old_count = int(header.group("old_count") or "1")
    new_start = int(header.group("new_start"))
    new_count = int(header.group("new_count") or "1")

    old_remaining, new_remaining = old_count, new_count
    added = removed = 0
    index += 1
    while old_remaining > 0 or new_remaining > 0:
        if index >= len(lines):
            raise DiffParseError("patch ends inside a hunk")
        line = lines[index]
        if line.startswith("\\"):
            index += 1
            continue
        marker = line[:1]
        if marker == "+":
            added += 1
            new_remaining -= 1
        elif marker == "-":
            removed += 1
            old_remaining -= 1
        elif marker in {" ", ""}:
            old_remaining -= 1
            new_remaining -= 1
        else:
            raise DiffParseError(f"unexpected line in hunk at line {index + 1}: {line!r}")
        index += 1
    while index < len(lines) and lines[index].startswith("\\"):
        index += 1
    return Hunk(old_start, old_count, new_start, new_count, added, removed), index


__all__ = [
    "DiffParseError",
    "DiffStats",
    "FilePatch",
    "Hunk",
    "ParsedDiff",
    "normalize_patch_path",
    "parse_unified_diff",
]
