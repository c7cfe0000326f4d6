"""Verification-plane public API: patch application, test runs, static signals, scoring."""

from nexus_verifier.verification_plane.diff_analysis import (
    DiffParseError,
    DiffStats,
    FilePatch,
    Hunk,
    ParsedDiff,
    parse_unified_diff,
)
from nexus_verifier.verification_plane.patch_verifier import (
    CommandOutcome,
    CommandStatus,
    PatchVerifier,
    VerificationOutcome,
    VerificationStatus,
)
from nexus_verifier.verification_plane.patching import GitPatchApplier, PatchApplier
from nexus_verifier.verification_plane.scoring import ConfidenceScorer, ScoringConfig
from nexus_verifier.verification_plane.static_signals import (
    LintReport,
    LintRunner,
    LintUnavailableError,
    RuffLintRunner,
    StaticSignals,
    SyntaxLintRunner,
    compute_static_signals,
)

__all__ = [
    "CommandOutcome",
    "CommandStatus",
    "ConfidenceScorer",
    "DiffParseError",
    "DiffStats",
    "FilePatch",
    "GitPatchApplier",
    "Hunk",
    "LintReport",
    "LintRunner",
    "LintUnavailableError",
    "ParsedDiff",
    "PatchApplier",
    "PatchVerifier",
    "RuffLintRunner",
    "ScoringConfig",
    "StaticSignals",
    "SyntaxLintRunner",
    "VerificationOutcome",
    "VerificationStatus",
    "compute_static_signals",
    "parse_unified_diff",
]
