"""Reduction-plane public API: ddmin input minimization and failure oracles."""

from nexus_verifier.reduction_plane.minimizer import (
    Attempt,
    Budget,
    DeltaMinimizer,
    MinimizationResult,
    MinimizationStatus,
    ReductionState,
    minimize_text,
)
from nexus_verifier.reduction_plane.oracle import (
    FailureSignature,
    Oracle,
    OracleVerdict,
    SchedulerOracle,
)

__all__ = [
    "Attempt",
    "Budget",
    "DeltaMinimizer",
    "FailureSignature",
    "MinimizationResult",
    "MinimizationStatus",
    "Oracle",
    "OracleVerdict",
    "ReductionState",
    "SchedulerOracle",
    "minimize_text",
]
