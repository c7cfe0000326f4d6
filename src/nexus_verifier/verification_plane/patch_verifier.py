"""
Patch verification.

``PatchVerifier.verify`` parses the diff, applies it to a scratch copy of the
snapshot, and runs every distinct test command against the patched tree through
the job scheduler, all under one job group. Lint delta and diff size are
computed on the host, outside the sandbox.

A patch that cannot be applied is reported as ``patch_did_not_apply`` without
submitting anything. ``failed`` is a definite verdict: at least one command
exited non-zero, timed out, or crashed. ``indeterminate`` means the
infrastructure could not produce an answer (provisioning exhausted its retries,
a job was cancelled, git was unavailable) and is the only retryable status.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from nexus_verifier.domain.errors import (
    JobCancelledError,
    PatchDidNotApplyError,
    ProvisioningError,
    VerifierError,
)
from nexus_verifier.domain.ids import generate_group_id
from nexus_verifier.domain.models import (
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
    ResourceLimits,
    SnapshotRef,
)
from nexus_verifier.utils.fs import safe_delete
from nexus_verifier.verification_plane.diff_analysis import DiffParseError, parse_unified_diff
from nexus_verifier.verification_plane.patching import GitPatchApplier
from nexus_verifier.verification_plane.static_signals import (
    StaticSignals,
    compute_static_signals,
    default_lint_runner,
)

if TYPE_CHECKING:
    from nexus_verifier.control_plane.scheduler import JobScheduler
    from nexus_verifier.domain.models import JSONValue, VerifyRequest
    from nexus_verifier.verification_plane.diff_analysis import DiffStats, ParsedDiff
    from nexus_verifier.verification_plane.patching import PatchApplier
    from nexus_verifier.verification_plane.static_signals import LintRunner


class VerificationStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"
    PATCH_DID_NOT_APPLY = "patch_did_not_apply"


class CommandStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class CommandOutcome:
    command: tuple[str, ...]
    status: CommandStatus
    job_id: str | None = None
    result: ExecutionResult | None = None
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.status is CommandStatus.PASSED

    @property
    def definite(self) -> bool:
        return self.status is not CommandStatus.ERROR

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "command": list(self.command),
            "status": self.status.value,
            "job_id": self.job_id,
            "exit_code": self.result.exit_code if self.result is not None else None,
            "outcome": self.result.outcome.value if self.result is not None else None,
            "duration_ms": self.result.duration_ms if self.result is not None else None,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class VerificationOutcome:
    status: VerificationStatus
    repo_snapshot: Path
    commands: tuple[CommandOutcome, ...] = ()
    group_id: str | None = None
    static_signals: StaticSignals | None = None
    patched_regions: Mapping[str, tuple[tuple[int, int], ...]] = field(default_factory=dict)
    reason: str | None = None
    missing_paths: tuple[str, ...] = ()

    @property
    def retryable(self) -> bool:
        return self.status is VerificationStatus.INDETERMINATE

    @property
    def tests_total(self) -> int:
        return len(self.commands)

    @property
    def tests_passed(self) -> int:
        return sum(1 for item in self.commands if item.passed)

    @property
    def diff_stats(self) -> DiffStats | None:
        return self.static_signals.diff_stats if self.static_signals is not None else None

    def overlaps_patch(self, path: str, start_line: int, end_line: int) -> bool:
        for region_start, region_end in self.patched_regions.get(path, ()):
            if start_line <= region_end and region_start <= end_line:
                return True
        return False

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "retryable": self.retryable,
            "reason": self.reason,
            "group_id": self.group_id,
            "tests_passed": self.tests_passed,
            "tests_total": self.tests_total,
            "commands": [item.to_dict() for item in self.commands],
            "static_signals": self.static_signals.to_dict() if self.static_signals is not None else None,
            "missing_paths": list(self.missing_paths),
        }


class PatchVerifier:
    """Runs a candidate patch's tests in isolation and gathers static signals."""

    def __init__(
        self,
        scheduler: JobScheduler,
        *,
        workspace_root: Path,
        applier: PatchApplier | None = None,
        lint_runner: LintRunner | None = None,
        logger: Any | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._workspace_root = Path(workspace_root)
        self._applier = applier or GitPatchApplier()
        self._lint_runner = lint_runner or default_lint_runner()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def verify(self, request: VerifyRequest) -> VerificationOutcome:
        snapshot = request.repo_snapshot
        try:
            diff = parse_unified_diff(request.patch_diff)
        except DiffParseError as exc:
            return self._not_applied(request, str(exc))

        self._workspace_root.mkdir(parents=True, exist_ok=True)
        try:
            patched = await asyncio.to_thread(
                self._applier.apply, snapshot, diff, self._workspace_root
            )
        except PatchDidNotApplyError as exc:
            return self._not_applied(request, str(exc), missing=exc.paths, diff=diff)
        except ProvisioningError as exc:
            self._logger.warning("verifier_apply_unavailable", error=str(exc))
            return VerificationOutcome(
                status=VerificationStatus.INDETERMINATE,
                repo_snapshot=snapshot,
                reason=str(exc),
            )

        try:
            signals = await asyncio.to_thread(
                compute_static_signals, snapshot, patched, diff, self._lint_runner
            )
            post_image = await asyncio.to_thread(SnapshotRef.from_directory, patched)
            group_id = generate_group_id()
            commands = await self._run_commands(request, post_image, group_id)
        finally:
            await asyncio.to_thread(safe_delete, patched, self._workspace_root)

        status = _overall_status(commands)
        outcome = VerificationOutcome(
            status=status,
            repo_snapshot=snapshot,
            commands=commands,
            group_id=group_id,
            static_signals=signals,
            patched_regions=diff.pre_image_regions(),
            reason=_reason(status, commands),
        )
        self._logger.info(
            "verifier_finished",
            tenant_id=request.tenant_id,
            group_id=group_id,
            status=status.value,
            tests_passed=outcome.tests_passed,
            tests_total=outcome.tests_total,
            lint_delta=signals.lint_delta,
            changed_lines=signals.diff_stats.changed_lines,
        )
        return outcome

    async def _run_commands(
        self,
        request: VerifyRequest,
        post_image: SnapshotRef,
        group_id: str,
    ) -> tuple[CommandOutcome, ...]:
        limits = request.limits or ResourceLimits(timeout_seconds=request.timeout_seconds)
        if limits.timeout_seconds > request.timeout_seconds:
            limits = limits.with_timeout(request.timeout_seconds)

        handles = []
        submitted: list[tuple[tuple[str, ...], Any]] = []
        for command in request.distinct_commands:
            execution = ExecutionRequest(
                tenant_id=request.tenant_id,
                command=command,
                snapshot=post_image,
                limits=limits,
            )
            try:
                handle = await self._scheduler.submit(execution, group_id=group_id)
            except VerifierError as exc:
                submitted.append((command, exc))
                continue
            handles.append(handle)
            submitted.append((command, handle))

        results = await asyncio.gather(
            *(self._scheduler.await_result(handle) for handle in handles),
            return_exceptions=True,
        )
        by_job = {handle.job_id: result for handle, result in zip(handles, results, strict=True)}

        outcomes: list[CommandOutcome] = []
        for command, entry in submitted:
            if isinstance(entry, BaseException):
                outcomes.append(_errored(command, None, entry))
                continue
            result = by_job[entry.job_id]
            if isinstance(result, (VerifierError, JobCancelledError)):
                outcomes.append(_errored(command, entry.job_id, result))
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes.append(
                    CommandOutcome(
                        command=command,
                        status=_command_status(result),
                        job_id=entry.job_id,
                        result=result,
                    )
                )
        return tuple(outcomes)

    def _not_applied(
        self,
        request: VerifyRequest,
        reason: str,
        *,
        missing: tuple[str, ...] = (),
        diff: ParsedDiff | None = None,
    ) -> VerificationOutcome:
        self._logger.info(
            "verifier_patch_did_not_apply",
            tenant_id=request.tenant_id,
            reason=reason,
            missing_paths=list(missing),
        )
        return VerificationOutcome(
            status=VerificationStatus.PATCH_DID_NOT_APPLY,
            repo_snapshot=request.repo_snapshot,
            static_signals=StaticSignals(diff_stats=diff.stats) if diff is not None else None,
            reason=reason,
            missing_paths=missing,
        )


def _command_status(result: ExecutionResult) -> CommandStatus:
    if result.outcome is ExecutionOutcome.TIMED_OUT:
        return CommandStatus.TIMED_OUT
    if result.outcome is ExecutionOutcome.CRASHED:
        return CommandStatus.CRASHED
    return CommandStatus.PASSED if result.exit_code == 0 else CommandStatus.FAILED


def _errored(command: tuple[str, ...], job_id: str | None, exc: BaseException) -> CommandOutcome:
    return CommandOutcome(
        command=command,
        status=CommandStatus.ERROR,
        job_id=job_id,
        error=f"{type(exc).__name__}: {exc}",
    )


def _overall_status(commands: tuple[CommandOutcome, ...]) -> VerificationStatus:
    if any(item.definite and not item.passed for item in commands):
        return VerificationStatus.FAILED
    if any(not item.definite for item in commands):
        return VerificationStatus.INDETERMINATE
    return VerificationStatus.PASSED


def _reason(status: VerificationStatus, commands: tuple[CommandOutcome, ...]) -> str | None:
    if status is VerificationStatus.PASSED:
        return None
    if status is VerificationStatus.FAILED:
        failing = [" ".join(item.command) for item in commands if item.definite and not item.passed]
        return f"failing commands: {'; '.join(failing)}"
    errors = [item.error for item in commands if item.error]
    return f"infrastructure failure: {'; '.join(errors)}"


__all__ = [
    "CommandOutcome",
    "CommandStatus",
    "PatchVerifier",
    "VerificationOutcome",
    "VerificationStatus",
]
