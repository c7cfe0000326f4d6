"""Error taxonomy shared by the scheduler, executors, and verification components."""

from __future__ import annotations


class VerifierError(RuntimeError):
    """Base class for engine failures surfaced to callers."""


class QuotaExceededError(VerifierError):
    """Raised by ``submit`` when a tenant's pending queue is already full."""

    def __init__(self, tenant_id: str, queued: int, limit: int) -> None:
        super().__init__(
            f"tenant {tenant_id!r} has {queued} queued jobs; queue depth limit is {limit}"
        )
        self.tenant_id = tenant_id
        self.queued = queued
        self.limit = limit


class NetworkPolicyViolationError(VerifierError):
    """Raised when a request asks for egress its tenant is not entitled to."""


class ProvisioningError(VerifierError):
    """Raised by executors when an isolated environment cannot be created.

    ``transient`` marks failures worth retrying (image pull hiccups, container
    engine errors, exhausted host resources).
    """

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class ProvisioningFailedError(VerifierError):
    """Raised from ``await_result`` once provisioning retries are exhausted."""

    def __init__(self, job_id: str, attempts: int, cause: str) -> None:
        super().__init__(f"job {job_id} failed to provision after {attempts} attempt(s): {cause}")
        self.job_id = job_id
        self.attempts = attempts
        self.cause = cause


class JobCancelledError(VerifierError):
    """Raised from ``await_result`` for jobs that were cancelled."""

    def __init__(self, job_id: str, *, acknowledged: bool) -> None:
        suffix = "" if acknowledged else " (executor did not acknowledge within grace period)"
        super().__init__(f"job {job_id} was cancelled{suffix}")
        self.job_id = job_id
        self.acknowledged = acknowledged


class UnknownJobError(VerifierError, KeyError):
    """Raised when a handle does not refer to a job the scheduler knows about."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown job"


class PatchDidNotApplyError(VerifierError):
    """Raised by patch appliers when a diff cannot be applied to a snapshot."""

    def __init__(self, message: str, *, paths: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.paths = paths


class CodeLookupError(VerifierError):
    """Raised by code-lookup services; correlators degrade instead of failing."""


__all__ = [
    "CodeLookupError",
    "JobCancelledError",
    "NetworkPolicyViolationError",
    "PatchDidNotApplyError",
    "ProvisioningError",
    "ProvisioningFailedError",
    "QuotaExceededError",
    "UnknownJobError",
    "VerifierError",
]
