"""Unit tests for deterministic plain-text CLI rendering."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from nexus_verifier.domain.models import (
    CandidateLocation,
    ConfidenceCategory,
    ConfidenceReport,
    ExecutionOutcome,
    ExecutionResult,
    MatchProvenance,
    SignalScore,
)
from nexus_verifier.reduction_plane.minimizer import (
    Attempt,
    MinimizationResult,
    MinimizationStatus,
)
from nexus_verifier.reduction_plane.oracle import OracleVerdict
from nexus_verifier.ui.render import CLIRenderer
from nexus_verifier.verification_plane.diff_analysis import DiffStats
from nexus_verifier.verification_plane.patch_verifier import (
    CommandOutcome,
    CommandStatus,
    VerificationOutcome,
    VerificationStatus,
)
from nexus_verifier.verification_plane.static_signals import StaticSignals


def _renderer(*, verbose: bool = False) -> tuple[CLIRenderer, io.StringIO]:
    stream = io.StringIO()
    return CLIRenderer(verbose=verbose, stream=stream), stream


def test_table_pads_columns_and_skips_empty_rows() -> None:
    renderer, stream = _renderer()

    renderer.table(["a", "value"], [])
    renderer.table(["a", "value"], [["long-cell", "1"], ["x", "22"]], title="Rows:")

    assert stream.getvalue() == (
        "\nRows:\n"
        "  a          value\n"
        "  ---------  -----\n"
        "  long-cell  1\n"
        "  x          22\n"
    )


def test_non_tty_stream_is_never_colored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    renderer, stream = _renderer()

    renderer.status("Verification", "passed", good=True)
    renderer.warning("careful")

    assert "\033[" not in stream.getvalue()
    assert stream.getvalue() == "Verification: passed\n  Warning: careful\n"


def test_candidates_render_ranked_locations() -> None:
    renderer, stream = _renderer()

    renderer.candidates([])
    renderer.candidates(
        [
            CandidateLocation(
                path="billing/invoice.py",
                start_line=37,
                end_line=47,
                score=0.91234,
                provenance=MatchProvenance.STACK_FRAME,
                symbol="total",
            )
        ]
    )

    lines = stream.getvalue().splitlines()
    assert lines[0] == "No candidate locations found."
    assert lines[-1].split() == ["1", "0.912", "billing/invoice.py:37-47", "stack_frame", "total"]


def test_verification_reports_warnings_commands_and_signals() -> None:
    renderer, stream = _renderer()
    result = ExecutionResult(
        content_hash="0" * 64,
        outcome=ExecutionOutcome.COMPLETED,
        exit_code=1,
        duration_ms=420,
    )
    outcome = VerificationOutcome(
        status=VerificationStatus.INDETERMINATE,
        repo_snapshot=Path("/repo"),
        commands=(
            CommandOutcome(("pytest", "-q"), CommandStatus.FAILED, job_id="job-1", result=result),
            CommandOutcome(("ruff", "check"), CommandStatus.ERROR, error="ProvisioningFailedError"),
        ),
        static_signals=StaticSignals(
            diff_stats=DiffStats(files_changed=2, hunks=3, added_lines=5, removed_lines=1),
        ),
        reason="infrastructure error",
        missing_paths=("src/gone.py",),
    )

    renderer.verification(outcome)

    out = stream.getvalue()
    assert out.startswith("Verification: indeterminate\nReason: infrastructure error\n")
    assert "  Warning: infrastructure failure; the verification may be retried\n" in out
    assert "  Warning: missing from snapshot: src/gone.py\n" in out
    assert "  pytest -q   failed  1     420ms\n" in out
    assert "  Diff: 2 files, +5/-1\n" in out
    assert "  Lint delta: unavailable (none)\n" in out


def test_minimization_verbose_lists_attempts() -> None:
    renderer, stream = _renderer(verbose=True)
    result = MinimizationResult(
        minimized_input="b\n",
        status=MinimizationStatus.PARTIAL,
        attempt_log=(
            Attempt(0, 2, None, 3, OracleVerdict.FAILS, from_history=False, accepted=True),
            Attempt(1, 2, 1, 1, OracleVerdict.FAILS, from_history=True, accepted=True),
        ),
        oracle_calls=1,
        initial_size=3,
        final_size=1,
        stop_reason="budget_exhausted",
    )

    renderer.minimization(result)

    lines = stream.getvalue().splitlines()
    assert lines[:4] == [
        "Status: partial",
        "Size: 3 -> 1 units",
        "Oracle calls: 1",
        "Stopped: budget_exhausted",
    ]
    assert lines[-5].split() == ["0", "initial", "3", "fails", "yes"]
    assert lines[-4].split() == ["1", "2/2", "1", "fails", "cached", "yes"]
    assert lines[-2:] == ["Minimized input:", "b"]


def test_confidence_breakdown_shows_points() -> None:
    renderer, stream = _renderer()
    report = ConfidenceReport(
        score=72.5,
        category=ConfidenceCategory.MEDIUM,
        breakdown=(
            SignalScore("test_pass", 1.0, 1.0, 0.5, detail="2/2 commands passed"),
            SignalScore("lint", None, 0.5, 0.45),
        ),
    )

    renderer.confidence(report)

    lines = stream.getvalue().splitlines()
    assert lines[0] == "Confidence: 72.5 (Medium)"
    assert lines[3].split() == ["signal", "value", "weight", "points", "detail"]
    assert lines[5].split() == ["test_pass", "1.000", "0.500", "50.00", "2/2", "commands", "passed"]
    assert lines[6].split() == ["lint", "0.500", "0.450", "22.50"]
