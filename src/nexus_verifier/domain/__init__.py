"""Domain value types, identifiers, and the engine error taxonomy."""

from nexus_verifier.domain.errors import (
    CodeLookupError,
    JobCancelledError,
    NetworkPolicyViolationError,
    PatchDidNotApplyError,
    ProvisioningError,
    ProvisioningFailedError,
    QuotaExceededError,
    UnknownJobError,
    VerifierError,
)
from nexus_verifier.domain.models import (
    ArtifactRef,
    CandidateLocation,
    ConfidenceCategory,
    ConfidenceReport,
    EvidenceCitation,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
    InlineFile,
    JobHandle,
    JobState,
    MatchProvenance,
    MinimizeRequest,
    NetworkAccess,
    NetworkMode,
    ResourceLimits,
    SignalScore,
    SnapshotRef,
    VerifyRequest,
)

__all__ = [
    "ArtifactRef",
    "CandidateLocation",
    "CodeLookupError",
    "ConfidenceCategory",
    "ConfidenceReport",
    "EvidenceCitation",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ExecutionResult",
    "InlineFile",
    "JobCancelledError",
    "JobHandle",
    "JobState",
    "MatchProvenance",
    "MinimizeRequest",
    "NetworkAccess",
    "NetworkMode",
    "NetworkPolicyViolationError",
    "PatchDidNotApplyError",
    "ProvisioningError",
    "ProvisioningFailedError",
    "QuotaExceededError",
    "ResourceLimits",
    "SignalScore",
    "SnapshotRef",
    "UnknownJobError",
    "VerifierError",
    "VerifyRequest",
]
