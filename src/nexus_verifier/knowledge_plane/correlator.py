"""
Stacktrace-to-location correlation.

Each parsed frame is matched against the repository index first. A frame whose
file is indexed and whose line falls inside the file is an exact
``stack_frame`` match. Frames that only partially match fall back to the code
lookup service (``fuzzy_symbol``), and the error message plus recent log lines
feed a semantic search (``semantic``). If the lookup service fails, correlation
continues with frame matches only.

Candidates are scored as a weighted sum of frame proximity, file recency and
retrieval similarity, de-duplicated by overlapping line range, and returned
best first. The ordering is a pure function of the inputs.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

import structlog

from nexus_verifier.domain.errors import CodeLookupError
from nexus_verifier.domain.models import CandidateLocation, MatchProvenance
from nexus_verifier.knowledge_plane.repository import StaticCodeLookup
from nexus_verifier.knowledge_plane.trace_parsing import parse_stacktrace

if TYPE_CHECKING:
    from nexus_verifier.knowledge_plane.repository import (
        CodeChunk,
        CodeLookupService,
        RepositoryIndex,
    )
    from nexus_verifier.knowledge_plane.trace_parsing import StackFrame

PROXIMITY_BY_PROVENANCE: Final[dict[MatchProvenance, float]] = {
    MatchProvenance.STACK_FRAME: 1.0,
    MatchProvenance.FUZZY_SYMBOL: 0.7,
    MatchProvenance.SEMANTIC: 0.4,
}
_LOOKUP_FAILURES: Final = (CodeLookupError, OSError, TimeoutError)


@dataclass(frozen=True, slots=True)
class CorrelatorWeights:
    proximity: float = 0.6
    recency: float = 0.15
    similarity: float = 0.25

    def __post_init__(self) -> None:
        for name in ("proximity", "recency", "similarity"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"correlator weight {name} must be a finite value >= 0")
        if self.proximity + self.recency + self.similarity <= 0:
            raise ValueError("correlator weights must not all be zero")

    def normalized(self) -> CorrelatorWeights:
        total = self.proximity + self.recency + self.similarity
        return CorrelatorWeights(self.proximity / total, self.recency / total, self.similarity / total)


@dataclass(frozen=True, slots=True)
class CorrelatorConfig:
    top_n: int = 10
    context_lines: int = 5
    log_tail_lines: int = 20
    lookup_timeout_seconds: float = 10.0
    weights: CorrelatorWeights = field(default_factory=CorrelatorWeights)

    def __post_init__(self) -> None:
        if self.top_n <= 0:
            raise ValueError("top_n must be > 0")
        if self.context_lines < 0:
            raise ValueError("context_lines must be >= 0")
        if self.log_tail_lines < 0:
            raise ValueError("log_tail_lines must be >= 0")
        if self.lookup_timeout_seconds <= 0:
            raise ValueError("lookup_timeout_seconds must be > 0")


@dataclass(frozen=True, slots=True)
class _Match:
    path: str
    start_line: int
    end_line: int
    provenance: MatchProvenance
    similarity: float
    depth: int | None
    symbol: str | None


class StacktraceCorrelator:
    """Ranks candidate source regions for a failure."""

    def __init__(
        self,
        lookup: CodeLookupService | None = None,
        *,
        config: CorrelatorConfig | None = None,
        logger: Any | None = None,
    ) -> None:
        self._lookup = lookup if lookup is not None else StaticCodeLookup()
        self._config = config or CorrelatorConfig()
        self._weights = self._config.weights.normalized()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def correlate(
        self,
        stacktrace: str,
        logs: str | Sequence[str],
        repo_context: RepositoryIndex,
    ) -> tuple[CandidateLocation, ...]:
        parsed = parse_stacktrace(stacktrace)
        log_lines = logs.splitlines() if isinstance(logs, str) else list(logs)

        matches: list[_Match] = []
        lookup_available = True
        for frame in parsed.frames:
            exact = self._exact_match(frame, repo_context)
            if exact is not None:
                matches.append(exact)
                continue
            if not lookup_available:
                continue
            try:
                chunks = await self._call(
                    self._lookup.lookup(repo_context, frame.file_hint, frame.symbol)
                )
            except _LOOKUP_FAILURES as exc:
                lookup_available = False
                self._degrade("lookup", exc)
                continue
            matches.extend(
                self._from_chunks(chunks, repo_context, MatchProvenance.FUZZY_SYMBOL, frame.depth)
            )

        query = self._semantic_query(parsed.summary, log_lines)
        if lookup_available and query:
            try:
                chunks = await self._call(self._lookup.semantic_search(repo_context, query))
            except _LOOKUP_FAILURES as exc:
                self._degrade("semantic_search", exc)
            else:
                matches.extend(
                    self._from_chunks(chunks, repo_context, MatchProvenance.SEMANTIC, None)
                )

        ranked = sorted(
            (self._score(match, repo_context) for match in matches),
            key=_rank_key,
        )
        selected: list[CandidateLocation] = []
        for candidate in ranked:
            if any(candidate.overlaps(kept) for kept in selected):
                continue
            selected.append(candidate)
            if len(selected) == self._config.top_n:
                break

        self._logger.info(
            "correlator_ranked",
            language=parsed.language.value,
            frames=len(parsed.frames),
            matches=len(matches),
            candidates=len(selected),
            lookup_available=lookup_available,
        )
        return tuple(selected)

    def _exact_match(self, frame: StackFrame, repo: RepositoryIndex) -> _Match | None:
        indexed = repo.resolve(frame.file_hint)
        if indexed is None or frame.line_hint is None or not indexed.contains_line(frame.line_hint):
            return None
        context = self._config.context_lines
        return _Match(
            path=indexed.path,
            start_line=max(1, frame.line_hint - context),
            end_line=min(indexed.line_count, frame.line_hint + context),
            provenance=MatchProvenance.STACK_FRAME,
            similarity=1.0,
            depth=frame.depth,
            symbol=frame.symbol,
        )

    @staticmethod
    def _from_chunks(
        chunks: Sequence[CodeChunk],
        repo: RepositoryIndex,
        provenance: MatchProvenance,
        depth: int | None,
    ) -> list[_Match]:
        matches: list[_Match] = []
        for chunk in chunks:
            indexed = repo.get(chunk.path)
            # Chunks pointing outside the snapshot are dropped rather than trusted.
            if indexed is None or not indexed.contains_line(chunk.start_line):
                continue
            matches.append(
                _Match(
                    path=chunk.path,
                    start_line=chunk.start_line,
                    end_line=min(chunk.end_line, indexed.line_count),
                    provenance=provenance,
                    similarity=min(1.0, max(0.0, chunk.score)),
                    depth=depth,
                    symbol=chunk.symbol,
                )
            )
        return matches

    def _score(self, match: _Match, repo: RepositoryIndex) -> CandidateLocation:
        proximity = PROXIMITY_BY_PROVENANCE[match.provenance]
        recency = repo.recency(match.path)
        weights = self._weights
        score = (
            weights.proximity * proximity
            + weights.recency * recency
            + weights.similarity * match.similarity
        )
        return CandidateLocation(
            path=match.path,
            start_line=match.start_line,
            end_line=match.end_line,
            score=min(1.0, max(0.0, score)),
            provenance=match.provenance,
            depth=match.depth,
            symbol=match.symbol,
            components=(
                ("proximity", proximity),
                ("recency", recency),
                ("similarity", match.similarity),
            ),
        )

    def _semantic_query(self, summary: str, log_lines: list[str]) -> str:
        tail = log_lines[-self._config.log_tail_lines :] if self._config.log_tail_lines else []
        return "\n".join(part for part in (summary, *tail) if part.strip())

    async def _call(self, awaitable: Any) -> Sequence[CodeChunk]:
        return await asyncio.wait_for(awaitable, timeout=self._config.lookup_timeout_seconds)

    def _degrade(self, operation: str, exc: BaseException) -> None:
        self._logger.warning(
            "correlator_lookup_unavailable",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )


def _rank_key(candidate: CandidateLocation) -> tuple[float, int, str, int, str]:
    depth = candidate.depth if candidate.depth is not None else 1 << 30
    return (-candidate.score, depth, candidate.path, candidate.start_line, candidate.provenance.value)


__all__ = [
    "CorrelatorConfig",
    "CorrelatorWeights",
    "PROXIMITY_BY_PROVENANCE",
    "StacktraceCorrelator",
]
