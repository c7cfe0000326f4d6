"""Unit tests for the repository index and the index-backed code lookup."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from nexus_verifier.domain.errors import CodeLookupError
from nexus_verifier.knowledge_plane.repository import (
    CodeChunk,
    IndexedFile,
    RepositoryIndex,
    StaticCodeLookup,
    tokenize,
)

if TYPE_CHECKING:
    from pathlib import Path


def _write(path: Path, text: str, mtime: float) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    os.utime(path, (mtime, mtime))


def _sample_repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    _write(root / "app.py", "import billing\n\nbilling.total([])\n", 1_000)
    _write(
        root / "billing" / "invoice.py",
        "def total(items):\n    count = len(items)\n    return sum(items) / count\n",
        3_000,
    )
    _write(root / "docs" / "notes.md", "Invoice totals divide by the item count", 2_000)
    _write(root / "node_modules" / "dep" / "index.js", "module.exports = 1\n", 4_000)
    (root / "logo.bin").write_bytes(b"\x89PNG\x00\x00data")
    return root


def test_from_directory_indexes_text_files_with_recency_rank(tmp_path: Path) -> None:
    index = RepositoryIndex.from_directory(_sample_repo(tmp_path))

    assert [item.path for item in index.files] == ["app.py", "billing/invoice.py", "docs/notes.md"]
    assert index.get("billing/invoice.py") == IndexedFile("billing/invoice.py", 3, 1.0)
    assert index.get("docs/notes.md") == IndexedFile("docs/notes.md", 1, 0.5)
    assert index.recency("app.py") == 0.0
    assert "node_modules/dep/index.js" not in index
    assert len(index) == 3


def test_from_directory_rejects_missing_root(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="not a directory"):
        RepositoryIndex.from_directory(tmp_path / "missing")


def _resolved(index: RepositoryIndex, hint: str | None) -> str | None:
    indexed = index.resolve(hint)
    return indexed.path if indexed is not None else None


def test_resolve_prefers_exact_then_longest_suffix(tmp_path: Path) -> None:
    index = RepositoryIndex.from_mapping(
        tmp_path,
        {"src/billing/invoice.py": 10, "tests/invoice.py": 10, "invoice.py": 10},
    )

    assert _resolved(index, "invoice.py") == "invoice.py"
    assert _resolved(index, "./tests/invoice.py") == "tests/invoice.py"
    assert _resolved(index, "/srv/app/billing/invoice.py") == "src/billing/invoice.py"
    assert _resolved(index, f"{tmp_path.as_posix()}/tests/invoice.py") == "tests/invoice.py"
    assert _resolved(index, "C:\\work\\src\\billing\\invoice.py") == "src/billing/invoice.py"
    assert _resolved(index, "unknown.py") is None
    assert _resolved(index, None) is None


def test_read_lines_requires_indexed_path(tmp_path: Path) -> None:
    index = RepositoryIndex.from_directory(_sample_repo(tmp_path))

    assert index.read_lines("billing/invoice.py")[0] == "def total(items):"
    with pytest.raises(CodeLookupError):
        index.read_lines("node_modules/dep/index.js")


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"line_count": -1}, "line_count"),
        ({"recency": 1.5}, "recency"),
    ],
)
def test_indexed_file_validation(overrides: dict[str, object], message: str) -> None:
    payload: dict[str, object] = {"path": "a.py", "line_count": 1}
    payload.update(overrides)
    with pytest.raises(ValueError, match=message):
        IndexedFile(**payload)  # type: ignore[arg-type]


def test_code_chunk_validation() -> None:
    with pytest.raises(ValueError, match="invalid range"):
        CodeChunk("a.py", 5, 4, 0.5)
    with pytest.raises(ValueError, match="score"):
        CodeChunk("a.py", 1, 4, 1.5)


async def test_static_lookup_finds_symbol_definitions(tmp_path: Path) -> None:
    index = RepositoryIndex.from_directory(_sample_repo(tmp_path))
    lookup = StaticCodeLookup(chunk_lines=2)

    hinted = await lookup.lookup(index, "billing/invoice.py", "billing.invoice.total")
    unhinted = await lookup.lookup(index, "vendor/other.py", "total")
    file_only = await lookup.lookup(index, "app.py", None)

    assert hinted == [CodeChunk("billing/invoice.py", 1, 2, 1.0, symbol="total")]
    assert unhinted == [CodeChunk("billing/invoice.py", 1, 2, 0.8, symbol="total")]
    assert file_only == [CodeChunk("app.py", 1, 2, 0.5)]
    assert await lookup.lookup(index, None, None) == []


async def test_static_semantic_search_ranks_by_token_overlap(tmp_path: Path) -> None:
    index = RepositoryIndex.from_directory(_sample_repo(tmp_path))

    query = "ZeroDivisionError in total items count"
    chunks = await StaticCodeLookup().semantic_search(index, query)

    assert [chunk.path for chunk in chunks] == ["billing/invoice.py", "app.py", "docs/notes.md"]
    assert chunks[0].score == pytest.approx(0.6)
    assert chunks[1].score == chunks[2].score == pytest.approx(0.2)
    assert await StaticCodeLookup().semantic_search(index, "the and for") == []


def test_tokenize_splits_identifiers() -> None:
    assert tokenize("getUserById snake_case_name x") == frozenset(
        {"get", "user", "snake", "case", "name"}
    )
