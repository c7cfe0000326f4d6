"""
Repository context for correlation.

``RepositoryIndex`` is a deterministic catalog of a repository snapshot: every
indexed text file with its line count and a recency rank derived from
modification times. ``CodeLookupService`` is the interface of the external code
lookup/semantic retrieval service; ``StaticCodeLookup`` answers both calls from
the index alone and backs offline use and tests.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final, Protocol

from nexus_verifier.domain.errors import CodeLookupError
from nexus_verifier.utils.fs import resolve_relative

DEFAULT_MAX_FILE_BYTES: Final[int] = 1_000_000

_DEFAULT_EXCLUDED_DIRECTORIES: Final[frozenset[str]] = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".venv",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        "__pycache__",
        "node_modules",
        "target",
        "build",
        "dist",
    }
)
_BINARY_SNIFF_BYTES: Final[int] = 8192
_IDENTIFIER: Final = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_SPLIT_CAMEL: Final = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_STOPWORDS: Final[frozenset[str]] = frozenset(
    {
        "the",
        "and",
        "for",
        "with",
        "not",
        "none",
        "null",
        "true",
        "false",
        "self",
        "this",
        "from",
        "line",
        "file",
        "error",
        "exception",
        "traceback",
        "recent",
        "call",
        "last",
    }
)


@dataclass(frozen=True, slots=True)
class IndexedFile:
    path: str
    line_count: int
    recency: float = 0.0

    def __post_init__(self) -> None:
        if self.line_count < 0:
            raise ValueError(f"IndexedFile({self.path}).line_count must be >= 0")
        if not 0.0 <= self.recency <= 1.0:
            raise ValueError(f"IndexedFile({self.path}).recency must be within [0, 1]")

    def contains_line(self, line: int) -> bool:
        return 1 <= line <= self.line_count


@dataclass(frozen=True, slots=True)
class CodeChunk:
    """One ranked result from a code lookup: a line range with a similarity score."""

    path: str
    start_line: int
    end_line: int
    score: float
    symbol: str | None = None

    def __post_init__(self) -> None:
        if self.start_line < 1 or self.end_line < self.start_line:
            raise ValueError(
                f"CodeChunk({self.path}) has invalid range {self.start_line}-{self.end_line}"
            )
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"CodeChunk({self.path}).score must be within [0, 1]")


class RepositoryIndex:
    """Immutable catalog of the text files in one repository snapshot."""

    def __init__(self, root: Path | str, files: Iterable[IndexedFile]) -> None:
        self._root = Path(root)
        ordered = sorted(files, key=lambda item: item.path)
        self._files: dict[str, IndexedFile] = {item.path: item for item in ordered}
        self._by_name: dict[str, list[IndexedFile]] = {}
        for item in ordered:
            self._by_name.setdefault(PurePosixPath(item.path).name, []).append(item)

    @classmethod
    def from_directory(
        cls,
        root: Path | str,
        *,
        excluded_directories: frozenset[str] = _DEFAULT_EXCLUDED_DIRECTORIES,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    ) -> RepositoryIndex:
        """Walk ``root`` and index every text file no larger than ``max_file_bytes``.

        Recency is a rank, not a timestamp: the most recently modified file gets
        1.0 and the oldest 0.0, with ties ordered by path.
        """

        base = Path(root).resolve()
        if not base.is_dir():
            raise ValueError(f"repository root is not a directory: {base}")

        scanned: list[tuple[str, int, float]] = []
        for current, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(name for name in dirnames if name not in excluded_directories)
            for filename in sorted(filenames):
                path = Path(current) / filename
                if path.is_symlink() or not path.is_file():
                    continue
                stat = path.stat()
                if stat.st_size > max_file_bytes:
                    continue
                data = path.read_bytes()
                if b"\x00" in data[:_BINARY_SNIFF_BYTES]:
                    continue
                relative = path.relative_to(base).as_posix()
                scanned.append((relative, _count_lines(data), stat.st_mtime))

        by_age = sorted(scanned, key=lambda item: (-item[2], item[0]))
        span = max(1, len(by_age) - 1)
        files = [
            IndexedFile(
                path=relative,
                line_count=line_count,
                recency=1.0 if len(by_age) == 1 else 1.0 - rank / span,
            )
            for rank, (relative, line_count, _mtime) in enumerate(by_age)
        ]
        return cls(base, files)

    @classmethod
    def from_mapping(
        cls,
        root: Path | str,
        line_counts: Mapping[str, int],
        *,
        recency: Mapping[str, float] | None = None,
    ) -> RepositoryIndex:
        recency = recency or {}
        return cls(
            root,
            (
                IndexedFile(path=path, line_count=count, recency=recency.get(path, 0.0))
                for path, count in line_counts.items()
            ),
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def files(self) -> tuple[IndexedFile, ...]:
        return tuple(self._files.values())

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, path: object) -> bool:
        return path in self._files

    def get(self, path: str) -> IndexedFile | None:
        return self._files.get(path)

    def recency(self, path: str) -> float:
        item = self._files.get(path)
        return item.recency if item is not None else 0.0

    def resolve(self, file_hint: str | None) -> IndexedFile | None:
        """Map a frame's file hint to an indexed file.

        Exact relative paths win; otherwise the file sharing the longest path
        suffix with the hint is chosen (shortest path, then lexical order, on ties).
        Absolute hints under the index root are made relative first.
        """

        if not file_hint:
            return None
        hint = file_hint.replace("\\", "/")
        absolute = PurePosixPath(hint)
        if absolute.is_absolute():
            root = PurePosixPath(self._root.as_posix())
            if absolute.is_relative_to(root):
                hint = absolute.relative_to(root).as_posix()
        hint = hint.removeprefix("./")
        exact = self._files.get(hint)
        if exact is not None:
            return exact

        parts = [part for part in PurePosixPath(hint).parts if part not in ("/", "", ".")]
        if not parts:
            return None
        candidates = self._by_name.get(parts[-1], [])
        best: IndexedFile | None = None
        best_key: tuple[int, int, str] | None = None
        for candidate in candidates:
            shared = _shared_suffix(PurePosixPath(candidate.path).parts, parts)
            key = (-shared, len(candidate.path), candidate.path)
            if best_key is None or key < best_key:
                best, best_key = candidate, key
        return best

    def read_lines(self, path: str) -> list[str]:
        if path not in self._files:
            raise CodeLookupError(f"{path!r} is not indexed")
        target = resolve_relative(self._root, path)
        return target.read_text(encoding="utf-8", errors="replace").splitlines()


class CodeLookupService(Protocol):
    async def lookup(
        self,
        repo: RepositoryIndex,
        file_path_hint: str | None,
        symbol_hint: str | None,
    ) -> Sequence[CodeChunk]: ...

    async def semantic_search(self, repo: RepositoryIndex, query_text: str) -> Sequence[CodeChunk]: ...


class StaticCodeLookup:
    """Index-backed lookup: definition search for symbols, token overlap for queries."""

    def __init__(self, *, chunk_lines: int = 40, max_results: int = 5) -> None:
        if chunk_lines <= 0:
            raise ValueError("chunk_lines must be > 0")
        if max_results <= 0:
            raise ValueError("max_results must be > 0")
        self._chunk_lines = chunk_lines
        self._max_results = max_results

    async def lookup(
        self,
        repo: RepositoryIndex,
        file_path_hint: str | None,
        symbol_hint: str | None,
    ) -> Sequence[CodeChunk]:
        return await asyncio.to_thread(self._lookup, repo, file_path_hint, symbol_hint)

    async def semantic_search(self, repo: RepositoryIndex, query_text: str) -> Sequence[CodeChunk]:
        return await asyncio.to_thread(self._semantic_search, repo, query_text)

    def _lookup(
        self,
        repo: RepositoryIndex,
        file_path_hint: str | None,
        symbol_hint: str | None,
    ) -> list[CodeChunk]:
        hinted = repo.resolve(file_path_hint)
        name = _symbol_name(symbol_hint)
        if name is None:
            if hinted is None or hinted.line_count == 0:
                return []
            end = min(hinted.line_count, self._chunk_lines)
            return [CodeChunk(hinted.path, 1, end, 0.5)]

        definition = _definition_pattern(name)
        files = [hinted] if hinted is not None else []
        files.extend(item for item in repo.files if hinted is None or item.path != hinted.path)
        chunks: list[CodeChunk] = []
        for item in files:
            for number, text in enumerate(self._read(repo, item.path), start=1):
                if definition.search(text) is None:
                    continue
                end = min(item.line_count, number + self._chunk_lines - 1)
                score = 1.0 if hinted is not None and item.path == hinted.path else 0.8
                chunks.append(CodeChunk(item.path, number, max(number, end), score, symbol=name))
        chunks.sort(key=lambda chunk: (-chunk.score, chunk.path, chunk.start_line))
        return chunks[: self._max_results]

    def _semantic_search(self, repo: RepositoryIndex, query_text: str) -> list[CodeChunk]:
        query = tokenize(query_text)
        if not query:
            return []
        step = max(1, self._chunk_lines // 2)
        chunks: list[CodeChunk] = []
        for item in repo.files:
            lines = self._read(repo, item.path)
            best: CodeChunk | None = None
            for start in range(0, max(1, len(lines)), step):
                window = lines[start : start + self._chunk_lines]
                if not window:
                    break
                overlap = len(query & tokenize("\n".join(window)))
                if overlap == 0:
                    continue
                score = overlap / len(query)
                if best is None or score > best.score:
                    best = CodeChunk(item.path, start + 1, start + len(window), score)
            if best is not None:
                chunks.append(best)
        chunks.sort(key=lambda chunk: (-chunk.score, chunk.path, chunk.start_line))
        return chunks[: self._max_results]

    @staticmethod
    def _read(repo: RepositoryIndex, path: str) -> list[str]:
        try:
            return repo.read_lines(path)
        except OSError as exc:
            raise CodeLookupError(f"cannot read {path}: {exc}") from exc


def tokenize(text: str) -> frozenset[str]:
    """Lower-cased identifier tokens, with camelCase and snake_case split apart."""

    tokens: set[str] = set()
    for identifier in _IDENTIFIER.findall(text):
        for word in _SPLIT_CAMEL.sub("_", identifier).split("_"):
            lowered = word.lower()
            if len(lowered) >= 3 and lowered not in _STOPWORDS:
                tokens.add(lowered)
    return frozenset(tokens)


def _symbol_name(symbol_hint: str | None) -> str | None:
    if not symbol_hint:
        return None
    for separator in ("::", "$"):
        symbol_hint = symbol_hint.replace(separator, ".")
    for segment in reversed(re.split(r"[./]", symbol_hint)):
        candidate = segment.strip("()*")
        if _IDENTIFIER.fullmatch(candidate) and candidate not in {"main", "module"}:
            return candidate
    return None


def _definition_pattern(name: str) -> re.Pattern[str]:
    escaped = re.escape(name)
    return re.compile(
        r"(?:\b(?:def|class|function|func|fn|struct|enum|trait|interface|type)\s+"
        rf"(?:\([^)]*\)\s*)?{escaped}\b)"
        r"|(?:^\s*(?:(?:public|private|protected|static|final|async|override|export)\s+)+"
        rf"[\w<>\[\],\s]*\b{escaped}\s*\()"
        rf"|(?:\b(?:const|let|var)\s+{escaped}\s*=)"
    )


def _count_lines(data: bytes) -> int:
    if not data:
        return 0
    return data.count(b"\n") + (0 if data.endswith(b"\n") else 1)


def _shared_suffix(left: Sequence[str], right: Sequence[str]) -> int:
    shared = 0
    for a, b in zip(reversed(left), reversed(right), strict=False):
        if a != b:
            break
        shared += 1
    return shared


__all__ = [
    "CodeChunk",
    "CodeLookupService",
    "DEFAULT_MAX_FILE_BYTES",
    "IndexedFile",
    "RepositoryIndex",
    "StaticCodeLookup",
    "tokenize",
]
