"""Failure oracles for input reduction."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import structlog

from nexus_verifier.domain.errors import JobCancelledError
from nexus_verifier.domain.models import (
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
    InlineFile,
    NetworkAccess,
    ResourceLimits,
)

if TYPE_CHECKING:
    from nexus_verifier.control_plane.scheduler import JobScheduler
    from nexus_verifier.domain.models import MinimizeRequest, SnapshotRef

logger = structlog.get_logger(__name__)


class OracleVerdict(StrEnum):
    FAILS = "fails"
    PASSES = "passes"
    AMBIGUOUS = "ambiguous"


class Oracle(Protocol):
    async def __call__(self, candidate: str) -> OracleVerdict: ...


@dataclass(frozen=True, slots=True)
class FailureSignature:
    """What "still fails the same way" means for a candidate's execution.

    ``exit_codes`` of ``None`` accepts any non-zero exit. A run that exits with a
    failing code but whose output misses ``output_pattern`` failed differently and
    is ambiguous, as is a non-zero exit outside ``exit_codes``. Timeouts count as
    the failure by default; crashes are ambiguous unless ``crash_is_failure``.
    """

    exit_codes: frozenset[int] | None = None
    output_pattern: str | None = None
    timeout_is_failure: bool = True
    crash_is_failure: bool = False

    def __post_init__(self) -> None:
        if self.exit_codes is not None:
            object.__setattr__(self, "exit_codes", frozenset(self.exit_codes))
        if self.output_pattern is not None:
            re.compile(self.output_pattern)

    @classmethod
    def from_request(cls, request: MinimizeRequest) -> FailureSignature:
        return cls(
            exit_codes=(
                frozenset(request.expected_exit_codes)
                if request.expected_exit_codes is not None
                else None
            ),
            output_pattern=request.output_pattern,
            timeout_is_failure=request.timeout_is_failure,
            crash_is_failure=request.crash_is_failure,
        )

    def classify(self, result: ExecutionResult) -> OracleVerdict:
        if result.outcome is ExecutionOutcome.TIMED_OUT:
            return OracleVerdict.FAILS if self.timeout_is_failure else OracleVerdict.AMBIGUOUS
        if result.outcome is ExecutionOutcome.CRASHED:
            return OracleVerdict.FAILS if self.crash_is_failure else OracleVerdict.AMBIGUOUS

        exit_code = result.exit_code
        if self.exit_codes is not None:
            failing_exit = exit_code in self.exit_codes
        else:
            failing_exit = exit_code not in (None, 0)
        if failing_exit:
            if self.output_pattern is None or self._output_matches(result):
                return OracleVerdict.FAILS
            return OracleVerdict.AMBIGUOUS
        if exit_code == 0:
            return OracleVerdict.PASSES
        return OracleVerdict.AMBIGUOUS

    def _output_matches(self, result: ExecutionResult) -> bool:
        assert self.output_pattern is not None
        pattern = re.compile(self.output_pattern, re.MULTILINE)
        return bool(pattern.search(result.stdout) or pattern.search(result.stderr))


class SchedulerOracle:
    """Runs each candidate through the job scheduler as an inline input file.

    Every candidate becomes an ``ExecutionRequest`` whose content hash depends on
    the candidate text, so repeated candidates across runs are answered by the
    result cache.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        *,
        tenant_id: str,
        command: tuple[str, ...],
        signature: FailureSignature,
        input_path: str = "input.txt",
        snapshot: SnapshotRef | None = None,
        limits: ResourceLimits | None = None,
        env: Mapping[str, str] | None = None,
        group_id: str | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._tenant_id = tenant_id
        self._command = command
        self._signature = signature
        self._input_path = input_path
        self._snapshot = snapshot
        self._limits = limits or ResourceLimits()
        self._env = dict(env or {})
        self._group_id = group_id
        self.executions = 0

    def request_for(self, candidate: str) -> ExecutionRequest:
        return ExecutionRequest(
            tenant_id=self._tenant_id,
            command=self._command,
            snapshot=self._snapshot,
            inputs=(InlineFile(self._input_path, candidate.encode("utf-8")),),
            env=self._env,
            limits=self._limits,
            network=NetworkAccess.deny(),
        )

    async def run(self, candidate: str) -> ExecutionResult:
        handle = await self._scheduler.submit(self.request_for(candidate), group_id=self._group_id)
        self.executions += 1
        try:
            return await self._scheduler.await_result(handle)
        except asyncio.CancelledError:
            self._scheduler.cancel(handle)
            raise

    async def __call__(self, candidate: str) -> OracleVerdict:
        try:
            result = await self.run(candidate)
        except JobCancelledError:
            return OracleVerdict.AMBIGUOUS
        verdict = self._signature.classify(result)
        logger.debug(
            "oracle_verdict",
            verdict=verdict.value,
            content_hash=result.content_hash,
            outcome=result.outcome.value,
            exit_code=result.exit_code,
            candidate_bytes=len(candidate),
        )
        return verdict


__all__ = ["FailureSignature", "Oracle", "OracleVerdict", "SchedulerOracle"]
