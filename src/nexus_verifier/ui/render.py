"""Plain-text rendering for nexus-verifier CLI output.

Respects ``NO_COLOR`` and ``--no-color``; output is deterministic so it can be
diffed in CI logs. ``--json`` output bypasses this module entirely.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

    from nexus_verifier.domain.models import CandidateLocation, ConfidenceReport
    from nexus_verifier.reduction_plane.minimizer import MinimizationResult
    from nexus_verifier.verification_plane.patch_verifier import VerificationOutcome

_GREEN = "\033[32m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_RESET = "\033[0m"


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def text(self, line: str = "") -> None:
        print(line, file=self._stream)

    def kv(self, key: str, value: object) -> None:
        self.text(f"{key}: {value}")

    def section(self, title: str) -> None:
        self.text(f"\n{title}")

    def warning(self, text: str) -> None:
        self.text(f"  Warning: {self._paint(text, _YELLOW)}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a left-aligned ASCII table; nothing is printed for zero rows."""

        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(cell))

        def _pad(cells: Sequence[str]) -> str:
            return "  ".join(
                (cells[index] if index < len(cells) else "").ljust(widths[index])
                for index in range(len(headers))
            ).rstrip()

        if title:
            self.section(title)
        self.text(f"  {_pad(list(headers))}")
        self.text(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self.text(f"  {_pad(list(row))}")

    def status(self, label: str, value: str, *, good: bool | None) -> None:
        color = None if good is None else (_GREEN if good else _RED)
        self.kv(label, self._paint(value, color))

    def candidates(self, items: Sequence[CandidateLocation]) -> None:
        if not items:
            self.text("No candidate locations found.")
            return
        rows = [
            [
                str(rank),
                f"{item.score:.3f}",
                f"{item.path}:{item.start_line}-{item.end_line}",
                item.provenance.value,
                item.symbol or "",
            ]
            for rank, item in enumerate(items, start=1)
        ]
        self.table(["#", "score", "location", "provenance", "symbol"], rows, title="Candidates:")

    def minimization(self, result: MinimizationResult) -> None:
        self.status(
            "Status",
            result.status.value,
            good=None if result.is_partial else True,
        )
        self.kv("Size", f"{result.initial_size} -> {result.final_size} units")
        self.kv("Oracle calls", result.oracle_calls)
        if result.stop_reason:
            self.kv("Stopped", result.stop_reason)
        if self.verbose:
            rows = [
                [
                    str(attempt.sequence),
                    _partition_label(attempt.partition, attempt.partitions),
                    str(attempt.size),
                    attempt.verdict.value,
                    "cached" if attempt.from_history else "",
                    "yes" if attempt.accepted else "",
                ]
                for attempt in result.attempt_log
            ]
            self.table(
                ["seq", "part", "size", "verdict", "memo", "accepted"], rows, title="Attempts:"
            )
        self.section("Minimized input:")
        self.text(result.minimized_input.rstrip("\n"))

    def verification(self, outcome: VerificationOutcome) -> None:
        self.status(
            "Verification",
            outcome.status.value,
            good=outcome.status.value == "passed",
        )
        if outcome.reason:
            self.kv("Reason", outcome.reason)
        if outcome.retryable:
            self.warning("infrastructure failure; the verification may be retried")
        for path in outcome.missing_paths:
            self.warning(f"missing from snapshot: {path}")
        rows = [
            [
                " ".join(item.command),
                item.status.value,
                "" if item.result is None else str(item.result.exit_code),
                "" if item.result is None else f"{item.result.duration_ms}ms",
            ]
            for item in outcome.commands
        ]
        self.table(["command", "status", "exit", "duration"], rows, title="Commands:")
        signals = outcome.static_signals
        if signals is not None:
            stats = signals.diff_stats
            self.section("Static signals:")
            self.kv(
                "  Diff",
                f"{stats.files_changed} files, +{stats.added_lines}/-{stats.removed_lines}",
            )
            lint = "unavailable" if signals.lint_delta is None else f"{signals.lint_delta:+d}"
            self.kv("  Lint delta", f"{lint} ({signals.lint_tool or 'none'})")

    def confidence(self, report: ConfidenceReport) -> None:
        self.status(
            "Confidence",
            f"{report.score:.1f} ({report.category.value})",
            good=None if report.category.value == "Medium" else report.category.value == "High",
        )
        rows = [
            [
                item.name,
                f"{item.normalized:.3f}",
                f"{item.weight:.3f}",
                f"{item.contribution * 100:.2f}",
                item.detail,
            ]
            for item in report.breakdown
        ]
        self.table(["signal", "value", "weight", "points", "detail"], rows, title="Breakdown:")

    def _paint(self, text: str, color: str | None) -> str:
        if not self._color or color is None:
            return text
        return f"{color}{text}{_RESET}"


def _partition_label(partition: int | None, partitions: int) -> str:
    if partition is None:
        return "initial"
    return f"{partition + 1}/{partitions}"


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
