"""Unit tests for confidence scoring."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from nexus_verifier.domain.models import ConfidenceCategory, EvidenceCitation
from nexus_verifier.verification_plane.diff_analysis import DiffStats
from nexus_verifier.verification_plane.patch_verifier import (
    CommandOutcome,
    CommandStatus,
    VerificationOutcome,
    VerificationStatus,
)
from nexus_verifier.verification_plane.scoring import (
    SIGNAL_NAMES,
    ConfidenceScorer,
    ScoringConfig,
)
from nexus_verifier.verification_plane.static_signals import StaticSignals

if TYPE_CHECKING:
    from pathlib import Path

CALC = "def divide(a, b):\n    return a / b\n\n\ndef add(a, b):\n    return a + b\n"


def _outcome(
    root: Path,
    *statuses: CommandStatus,
    status: VerificationStatus = VerificationStatus.PASSED,
    lint: tuple[int, int] | None = (0, 0),
    changed: tuple[int, int] = (3, 1),
) -> VerificationOutcome:
    target = root / "src" / "calc.py"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(CALC, encoding="utf-8")
    signals = StaticSignals(
        diff_stats=DiffStats(1, 1, added_lines=changed[0], removed_lines=changed[1]),
        lint_tool="syntax" if lint is not None else None,
        lint_before=lint[0] if lint is not None else None,
        lint_after=lint[1] if lint is not None else None,
    )
    return VerificationOutcome(
        status=status,
        repo_snapshot=root,
        commands=tuple(CommandOutcome(("pytest",), item) for item in statuses),
        static_signals=signals,
        patched_regions={"src/calc.py": ((1, 2),)},
    )


def test_passing_small_cited_patch_without_history_scores_high(tmp_path: Path) -> None:
    outcome = _outcome(tmp_path, CommandStatus.PASSED)
    evidence = [{"path": "src/calc.py", "line": 2}, EvidenceCitation("src/calc.py", 1, 2)]

    report = ConfidenceScorer().score(outcome, evidence=evidence)

    assert report.score == pytest.approx(95.0)
    assert report.category is ConfidenceCategory.HIGH
    assert tuple(item.name for item in report.breakdown) == SIGNAL_NAMES
    assert report.signal("test_pass").normalized == 1.0
    assert report.signal("lint").normalized == 1.0
    assert report.signal("diff_size").normalized == 1.0
    assert report.signal("evidence").normalized == 1.0
    historical = report.signal("historical")
    assert historical.raw is None
    assert historical.normalized == 0.5
    assert sum(item.contribution for item in report.breakdown) * 100 == pytest.approx(95.0)
    assert report.to_dict()["category"] == "high"


def test_citation_credit_depends_on_validity_and_overlap(tmp_path: Path) -> None:
    outcome = _outcome(tmp_path, CommandStatus.PASSED)
    evidence = [
        {"path": "src/calc.py", "line": 2},
        {"path": "src/calc.py", "start_line": 5, "end_line": 6},
        {"path": "src/missing.py", "line": 1},
        {"path": "src/calc.py", "line": 7},
        {"path": "../outside.py", "line": 1},
    ]

    evidence_signal = ConfidenceScorer().score(outcome, evidence=evidence).signal("evidence")

    assert evidence_signal.normalized == pytest.approx((1.0 + 0.5) / 5)
    assert evidence_signal.detail == "2/5 citations valid"


def test_partial_failure_with_lint_regression_scores_low(tmp_path: Path) -> None:
    outcome = _outcome(
        tmp_path,
        CommandStatus.PASSED,
        CommandStatus.FAILED,
        status=VerificationStatus.FAILED,
        lint=(1, 3),
        changed=(200, 5),
    )

    report = ConfidenceScorer().score(outcome, historical_rate=0.2)

    assert report.signal("test_pass").normalized == pytest.approx(0.5)
    assert report.signal("lint").normalized == pytest.approx(0.6)
    assert report.signal("diff_size").normalized == pytest.approx(0.5)
    assert report.signal("evidence").normalized == 0.0
    assert report.score == pytest.approx(41.0)
    assert report.category is ConfidenceCategory.LOW


@pytest.mark.parametrize(
    ("lint", "expected"),
    [(None, 0.5), ((4, 1), 1.0), ((0, 10), 0.0)],
)
def test_lint_signal(tmp_path: Path, lint: tuple[int, int] | None, expected: float) -> None:
    outcome = _outcome(tmp_path, CommandStatus.PASSED, lint=lint)
    assert ConfidenceScorer().score(outcome).signal("lint").normalized == expected


def test_patch_that_did_not_apply_gets_no_test_credit(tmp_path: Path) -> None:
    outcome = _outcome(tmp_path, status=VerificationStatus.PATCH_DID_NOT_APPLY)
    test_pass = ConfidenceScorer().score(outcome).signal("test_pass")
    assert (test_pass.normalized, test_pass.detail) == (0.0, "patch did not apply")


def test_historical_rate_is_clamped(tmp_path: Path) -> None:
    outcome = _outcome(tmp_path, CommandStatus.PASSED)
    historical = ConfidenceScorer().score(outcome, historical_rate=1.5).signal("historical")
    assert (historical.raw, historical.normalized) == (1.5, 1.0)


def test_explicit_static_signals_override_outcome(tmp_path: Path) -> None:
    outcome = _outcome(tmp_path, CommandStatus.PASSED)
    override = StaticSignals(diff_stats=DiffStats(1, 1, 400, 0))
    report = ConfidenceScorer().score(outcome, static_signals=override)
    assert report.signal("diff_size").normalized == 0.0


def test_custom_weights_are_normalized(tmp_path: Path) -> None:
    scorer = ConfidenceScorer(ScoringConfig(weights={"test_pass": 3.0}))
    outcome = _outcome(
        tmp_path, CommandStatus.PASSED, CommandStatus.FAILED, status=VerificationStatus.FAILED
    )

    report = scorer.score(outcome)

    assert report.signal("test_pass").weight == 1.0
    assert report.score == pytest.approx(50.0)
    assert report.category is ConfidenceCategory.MEDIUM


def test_category_boundaries() -> None:
    config = ScoringConfig()
    assert config.category_for(80.0) is ConfidenceCategory.HIGH
    assert config.category_for(79.99) is ConfidenceCategory.MEDIUM
    assert config.category_for(50.0) is ConfidenceCategory.MEDIUM
    assert config.category_for(49.99) is ConfidenceCategory.LOW


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"weights": {"coverage": 1.0}}, "unknown signals"),
        ({"weights": {"test_pass": -1.0}}, ">= 0"),
        ({"weights": {"test_pass": 0.0}}, "positive"),
        ({"medium_threshold": 90.0}, "thresholds"),
        ({"small_diff_lines": 10, "large_diff_lines": 10}, "large_diff_lines"),
        ({"lint_tolerance": 0}, "lint_tolerance"),
        ({"historical_prior": 2.0}, "historical_prior"),
        ({"non_overlap_credit": -0.1}, "non_overlap_credit"),
    ],
)
def test_config_validation(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ScoringConfig(**overrides)  # type: ignore[arg-type]


@settings(max_examples=60, deadline=None)
@given(
    statuses=st.lists(st.sampled_from(list(CommandStatus)), min_size=0, max_size=5),
    lint=st.one_of(st.none(), st.tuples(st.integers(0, 50), st.integers(0, 50))),
    changed=st.tuples(st.integers(0, 1000), st.integers(0, 1000)),
    rate=st.one_of(st.none(), st.floats(min_value=-1.0, max_value=2.0)),
)
def test_score_stays_in_range(
    tmp_path_factory: pytest.TempPathFactory,
    statuses: list[CommandStatus],
    lint: tuple[int, int] | None,
    changed: tuple[int, int],
    rate: float | None,
) -> None:
    outcome = _outcome(tmp_path_factory.mktemp("repo"), *statuses, lint=lint, changed=changed)
    scorer = ConfidenceScorer()

    evidence = [{"path": "src/calc.py", "line": 1}]
    report = scorer.score(outcome, evidence=evidence, historical_rate=rate)

    assert 0.0 <= report.score <= 100.0
    assert report.category is scorer.config.category_for(report.score)
