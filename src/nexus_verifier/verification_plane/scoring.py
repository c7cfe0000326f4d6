"""
Confidence scoring for verified patches.

Five signals each normalize to [0, 1] and are combined with normalized weights
into a score in [0, 100]:

- ``test_pass``: fraction of test commands that passed.
- ``lint``: full credit when the patch adds no lint findings, decaying linearly
  to zero at ``lint_tolerance`` new findings.
- ``diff_size``: full credit up to ``small_diff_lines`` changed lines, zero at
  ``large_diff_lines``.
- ``evidence``: mean credit over cited line ranges. A citation that exists in
  the original snapshot and overlaps a hunk earns 1.0, one that exists but
  touches no hunk earns ``non_overlap_credit``, anything else earns 0.
- ``historical``: the caller's historical success rate, or a neutral prior.

The full breakdown is returned with every report.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from nexus_verifier.domain.models import (
    ConfidenceCategory,
    ConfidenceReport,
    EvidenceCitation,
    SignalScore,
)
from nexus_verifier.utils.fs import resolve_relative
from nexus_verifier.verification_plane.patch_verifier import VerificationStatus

if TYPE_CHECKING:
    from nexus_verifier.verification_plane.patch_verifier import VerificationOutcome
    from nexus_verifier.verification_plane.static_signals import StaticSignals

SIGNAL_NAMES: Final[tuple[str, ...]] = ("test_pass", "lint", "diff_size", "evidence", "historical")

DEFAULT_WEIGHTS: Final[Mapping[str, float]] = {
    "test_pass": 0.50,
    "lint": 0.15,
    "diff_size": 0.10,
    "evidence": 0.15,
    "historical": 0.10,
}


@dataclass(frozen=True, slots=True)
class ScoringConfig:
    weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    high_threshold: float = 80.0
    medium_threshold: float = 50.0
    small_diff_lines: int = 10
    large_diff_lines: int = 400
    lint_tolerance: int = 5
    historical_prior: float = 0.5
    non_overlap_credit: float = 0.5

    def __post_init__(self) -> None:
        unknown = sorted(set(self.weights) - set(SIGNAL_NAMES))
        if unknown:
            raise ValueError(f"scoring.weights: unknown signals {unknown}")
        if any(value < 0 for value in self.weights.values()):
            raise ValueError("scoring.weights: weights must be >= 0")
        if sum(self.weights.get(name, 0.0) for name in SIGNAL_NAMES) <= 0:
            raise ValueError("scoring.weights: at least one weight must be positive")
        if not 0.0 <= self.medium_threshold <= self.high_threshold <= 100.0:
            raise ValueError("scoring thresholds must satisfy 0 <= medium <= high <= 100")
        if self.small_diff_lines < 0 or self.large_diff_lines <= self.small_diff_lines:
            raise ValueError("scoring: large_diff_lines must exceed small_diff_lines")
        if self.lint_tolerance <= 0:
            raise ValueError("scoring.lint_tolerance must be > 0")
        if not 0.0 <= self.historical_prior <= 1.0:
            raise ValueError("scoring.historical_prior must be within [0, 1]")
        if not 0.0 <= self.non_overlap_credit <= 1.0:
            raise ValueError("scoring.non_overlap_credit must be within [0, 1]")

    def normalized_weights(self) -> dict[str, float]:
        total = sum(self.weights.get(name, 0.0) for name in SIGNAL_NAMES)
        return {name: self.weights.get(name, 0.0) / total for name in SIGNAL_NAMES}

    def category_for(self, score: float) -> ConfidenceCategory:
        if score >= self.high_threshold:
            return ConfidenceCategory.HIGH
        if score >= self.medium_threshold:
            return ConfidenceCategory.MEDIUM
        return ConfidenceCategory.LOW


class ConfidenceScorer:
    """Turns a verification outcome plus evidence into a ``ConfidenceReport``."""

    def __init__(self, config: ScoringConfig | None = None, *, logger: Any | None = None) -> None:
        self._config = config or ScoringConfig()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def config(self) -> ScoringConfig:
        return self._config

    def score(
        self,
        outcome: VerificationOutcome,
        static_signals: StaticSignals | None = None,
        evidence: Sequence[EvidenceCitation | Mapping[str, object]] = (),
        historical_rate: float | None = None,
    ) -> ConfidenceReport:
        signals = static_signals if static_signals is not None else outcome.static_signals
        citations = tuple(
            item if isinstance(item, EvidenceCitation) else EvidenceCitation.from_mapping(item)
            for item in evidence
        )
        weights = self._config.normalized_weights()

        raw_scores = {
            "test_pass": self._test_pass(outcome),
            "lint": self._lint(signals),
            "diff_size": self._diff_size(signals),
            "evidence": self._evidence(outcome, citations),
            "historical": self._historical(historical_rate),
        }
        breakdown = tuple(
            SignalScore(
                name=name,
                raw=raw_scores[name][0],
                normalized=_clamp(raw_scores[name][1]),
                weight=weights[name],
                detail=raw_scores[name][2],
            )
            for name in SIGNAL_NAMES
        )
        total = _clamp(sum(item.contribution for item in breakdown)) * 100.0
        # Float sums of exact weights can land a hair under a threshold.
        total = min(100.0, max(0.0, round(total, 9)))
        report = ConfidenceReport(
            score=total,
            category=self._config.category_for(total),
            breakdown=breakdown,
        )
        self._logger.info(
            "confidence_scored",
            score=round(total, 4),
            category=report.category.value,
            verification_status=outcome.status.value,
            citations=len(citations),
        )
        return report

    def _test_pass(self, outcome: VerificationOutcome) -> tuple[float | None, float, str]:
        if outcome.status is VerificationStatus.PATCH_DID_NOT_APPLY:
            return (None, 0.0, "patch did not apply")
        if outcome.tests_total == 0:
            return (None, 0.0, "no test commands ran")
        ratio = outcome.tests_passed / outcome.tests_total
        return (ratio, ratio, f"{outcome.tests_passed}/{outcome.tests_total} commands passed")

    def _lint(self, signals: StaticSignals | None) -> tuple[float | None, float, str]:
        delta = signals.lint_delta if signals is not None else None
        if delta is None:
            return (None, 0.5, "lint unavailable")
        if delta <= 0:
            return (float(delta), 1.0, f"lint delta {delta}")
        return (
            float(delta),
            max(0.0, 1.0 - delta / self._config.lint_tolerance),
            f"lint delta +{delta}",
        )

    def _diff_size(self, signals: StaticSignals | None) -> tuple[float | None, float, str]:
        if signals is None:
            return (None, 0.0, "no diff")
        changed = signals.diff_stats.changed_lines
        small, large = self._config.small_diff_lines, self._config.large_diff_lines
        if changed <= small:
            value = 1.0
        elif changed >= large:
            value = 0.0
        else:
            value = 1.0 - (changed - small) / (large - small)
        return (float(changed), value, f"{changed} changed lines")

    def _evidence(
        self,
        outcome: VerificationOutcome,
        citations: tuple[EvidenceCitation, ...],
    ) -> tuple[float | None, float, str]:
        if not citations:
            return (0.0, 0.0, "no citations")
        line_counts: dict[str, int | None] = {}
        credits: list[float] = []
        for citation in citations:
            if citation.path not in line_counts:
                line_counts[citation.path] = _line_count(outcome.repo_snapshot, citation.path)
            available = line_counts[citation.path]
            if (
                available is None
                or citation.start_line < 1
                or citation.end_line < citation.start_line
                or citation.end_line > available
            ):
                credits.append(0.0)
            elif outcome.overlaps_patch(citation.path, citation.start_line, citation.end_line):
                credits.append(1.0)
            else:
                credits.append(self._config.non_overlap_credit)
        mean = sum(credits) / len(credits)
        valid = sum(1 for credit in credits if credit > 0)
        return (mean, mean, f"{valid}/{len(credits)} citations valid")

    def _historical(self, rate: float | None) -> tuple[float | None, float, str]:
        if rate is None:
            return (None, self._config.historical_prior, "no history, prior applied")
        return (rate, _clamp(rate), "historical success rate")


def _line_count(root: Path, relative: str) -> int | None:
    try:
        target = resolve_relative(root, relative)
    except ValueError:
        return None
    if not target.is_file():
        return None
    try:
        data = target.read_bytes()
    except OSError:
        return None
    if not data:
        return 0
    return data.count(b"\n") + (0 if data.endswith(b"\n") else 1)


def _clamp(value: float) -> float:
    if value != value:
        return 0.0
    return min(1.0, max(0.0, value))


__all__ = ["DEFAULT_WEIGHTS", "SIGNAL_NAMES", "ConfidenceScorer", "ScoringConfig"]
