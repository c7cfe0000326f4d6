"""
Static signals computed outside the sandbox: lint delta and diff size.

Lint findings are counted on the files a patch touches, before and after the
patch, and the delta is ``after - before``. ``RuffLintRunner`` shells out to
``ruff check --output-format json``; ``SyntaxLintRunner`` only reports Python
files that no longer parse and needs nothing beyond the interpreter.
"""

from __future__ import annotations

import ast
import json
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final, Protocol

import structlog

from nexus_verifier.utils.fs import resolve_relative

if TYPE_CHECKING:
    from nexus_verifier.domain.models import JSONValue
    from nexus_verifier.verification_plane.diff_analysis import DiffStats, ParsedDiff

logger = structlog.get_logger(__name__)

_PYTHON_SUFFIXES: Final[frozenset[str]] = frozenset({".py", ".pyi"})


class LintUnavailableError(RuntimeError):
    """Raised when a lint tool cannot run at all (missing binary, unreadable output)."""


@dataclass(frozen=True, slots=True)
class LintReport:
    tool: str
    findings: tuple[tuple[str, int], ...]

    @property
    def total(self) -> int:
        return sum(count for _, count in self.findings)

    def count_for(self, path: str) -> int:
        return dict(self.findings).get(path, 0)


class LintRunner(Protocol):
    name: str

    def run(self, root: Path, paths: Sequence[str]) -> LintReport: ...


class SyntaxLintRunner:
    """One finding per Python file that fails to compile."""

    name = "syntax"

    def run(self, root: Path, paths: Sequence[str]) -> LintReport:
        findings: list[tuple[str, int]] = []
        for relative in sorted(set(paths)):
            if PurePosixPath(relative).suffix not in _PYTHON_SUFFIXES:
                continue
            target = resolve_relative(root, relative)
            if not target.is_file():
                continue
            source = target.read_bytes()
            try:
                ast.parse(source, filename=relative)
            except (SyntaxError, ValueError):
                findings.append((relative, 1))
        return LintReport(tool=self.name, findings=tuple(findings))


class RuffLintRunner:
    name = "ruff"

    def __init__(self, *, binary: str = "ruff", timeout_seconds: float = 90.0) -> None:
        self._binary = binary
        self._timeout_seconds = timeout_seconds

    def run(self, root: Path, paths: Sequence[str]) -> LintReport:
        targets = sorted(
            {
                relative
                for relative in paths
                if PurePosixPath(relative).suffix in _PYTHON_SUFFIXES
                and resolve_relative(root, relative).is_file()
            }
        )
        if not targets:
            return LintReport(tool=self.name, findings=())
        binary = shutil.which(self._binary)
        if binary is None:
            raise LintUnavailableError(f"{self._binary!r} not found on PATH")
        try:
            completed = subprocess.run(
                [binary, "check", "--output-format", "json", "--exit-zero", "--no-cache", *targets],
                cwd=root,
                text=True,
                capture_output=True,
                check=False,
                timeout=self._timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise LintUnavailableError(f"ruff did not run: {exc}") from exc
        if completed.returncode != 0:
            detail = completed.stderr.strip()[:500]
            raise LintUnavailableError(f"ruff exited {completed.returncode}: {detail}")
        try:
            diagnostics = json.loads(completed.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise LintUnavailableError(f"unreadable ruff output: {exc}") from exc

        counts: dict[str, int] = {}
        resolved_root = root.resolve()
        for diagnostic in diagnostics:
            filename = Path(str(diagnostic.get("filename", "")))
            try:
                relative = filename.resolve().relative_to(resolved_root).as_posix()
            except ValueError:
                relative = filename.as_posix()
            counts[relative] = counts.get(relative, 0) + 1
        return LintReport(tool=self.name, findings=tuple(sorted(counts.items())))


def default_lint_runner() -> LintRunner:
    """Ruff when it is installed, otherwise the syntax-only runner."""

    if shutil.which("ruff") is not None:
        return RuffLintRunner()
    return SyntaxLintRunner()


@dataclass(frozen=True, slots=True)
class StaticSignals:
    """Lint counts before/after a patch plus its diff size.

    ``lint_before``/``lint_after`` are ``None`` when no lint tool could run.
    """

    diff_stats: DiffStats
    lint_tool: str | None = None
    lint_before: int | None = None
    lint_after: int | None = None

    @property
    def lint_delta(self) -> int | None:
        if self.lint_before is None or self.lint_after is None:
            return None
        return self.lint_after - self.lint_before

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "diff": self.diff_stats.to_dict(),
            "lint_tool": self.lint_tool,
            "lint_before": self.lint_before,
            "lint_after": self.lint_after,
            "lint_delta": self.lint_delta,
        }


def compute_static_signals(
    pre_root: Path,
    post_root: Path,
    diff: ParsedDiff,
    lint_runner: LintRunner,
) -> StaticSignals:
    try:
        before = lint_runner.run(pre_root, diff.pre_image_paths)
        after = lint_runner.run(post_root, diff.post_image_paths)
    except LintUnavailableError as exc:
        logger.warning("lint_unavailable", tool=lint_runner.name, error=str(exc))
        return StaticSignals(diff_stats=diff.stats)
    return StaticSignals(
        diff_stats=diff.stats,
        lint_tool=lint_runner.name,
        lint_before=before.total,
        lint_after=after.total,
    )


__all__ = [
    "LintReport",
    "LintRunner",
    "LintUnavailableError",
    "RuffLintRunner",
    "StaticSignals",
    "SyntaxLintRunner",
    "compute_static_signals",
    "default_lint_runner",
]
