"""
Composition root wiring the scheduler, correlator, minimizer, verifier, and scorer.

``VerificationEngine.from_config`` builds every component from a validated
config mapping; tests and embedders can instead pass the components directly.
All sandbox work, including minimizer oracle runs and patch test commands, goes
through the one ``JobScheduler`` and therefore shares its result cache and
tenant quotas.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from nexus_verifier.config import factories
from nexus_verifier.control_plane.scheduler import JobScheduler
from nexus_verifier.domain.ids import generate_group_id
from nexus_verifier.domain.models import ResourceLimits, SnapshotRef
from nexus_verifier.knowledge_plane.correlator import StacktraceCorrelator
from nexus_verifier.knowledge_plane.repository import RepositoryIndex
from nexus_verifier.observability.events import JsonlAuditSink
from nexus_verifier.observability.metrics import MetricsRegistry
from nexus_verifier.reduction_plane.minimizer import Budget, DeltaMinimizer
from nexus_verifier.reduction_plane.oracle import FailureSignature, SchedulerOracle
from nexus_verifier.sandbox.executor import build_executor
from nexus_verifier.verification_plane.patch_verifier import PatchVerifier
from nexus_verifier.verification_plane.scoring import ConfidenceScorer

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from nexus_verifier.control_plane.cache import ResultCache
    from nexus_verifier.domain.models import (
        CandidateLocation,
        ConfidenceReport,
        EvidenceCitation,
        ExecutionRequest,
        ExecutionResult,
        JobHandle,
        MinimizeRequest,
        VerifyRequest,
    )
    from nexus_verifier.knowledge_plane.repository import CodeLookupService
    from nexus_verifier.observability.events import AuditSink, JobEvent
    from nexus_verifier.reduction_plane.minimizer import MinimizationResult
    from nexus_verifier.sandbox.executor import IsolationExecutor
    from nexus_verifier.utils.concurrency import CancellationToken
    from nexus_verifier.verification_plane.patch_verifier import VerificationOutcome
    from nexus_verifier.verification_plane.patching import PatchApplier


class VerificationEngine:
    """Single entry point for the correlate, minimize, verify, and score operations."""

    def __init__(
        self,
        scheduler: JobScheduler,
        *,
        workspace_root: Path,
        correlator: StacktraceCorrelator | None = None,
        minimizer: DeltaMinimizer | None = None,
        verifier: PatchVerifier | None = None,
        scorer: ConfidenceScorer | None = None,
        default_limits: ResourceLimits | None = None,
        budget: Budget | None = None,
        logger: Any | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._correlator = correlator or StacktraceCorrelator()
        self._minimizer = minimizer or DeltaMinimizer()
        self._verifier = verifier or PatchVerifier(scheduler, workspace_root=workspace_root)
        self._scorer = scorer or ConfidenceScorer()
        self._default_limits = default_limits or ResourceLimits()
        self._budget = budget or Budget()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        executor: IsolationExecutor | None = None,
        audit_sink: AuditSink | None = None,
        lookup: CodeLookupService | None = None,
        applier: PatchApplier | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> VerificationEngine:
        """Build every component from a validated config mapping."""

        paths = config["paths"]
        sandbox = config["sandbox"]
        workspace_root = Path(paths["workspace_root"])
        if executor is None:
            executor = build_executor(
                sandbox["backend"],
                factories.executor_settings_from(config),
                image=sandbox.get("image"),
                egress_network=sandbox.get("egress_network", "bridge"),
            )
        if audit_sink is None:
            audit_sink = JsonlAuditSink(paths["audit_log"])

        scheduler = JobScheduler(
            executor,
            cache=factories.result_cache_from(config),
            config=factories.scheduler_config_from(config),
            retry_policy=factories.retry_policy_from(config),
            network_policy=factories.network_policy_from(config),
            audit_sink=audit_sink,
            metrics=metrics or MetricsRegistry(),
        )
        return cls(
            scheduler,
            workspace_root=workspace_root,
            correlator=StacktraceCorrelator(lookup, config=factories.correlator_config_from(config)),
            verifier=PatchVerifier(
                scheduler,
                workspace_root=workspace_root,
                applier=applier,
                lint_runner=factories.lint_runner_from(config),
            ),
            scorer=ConfidenceScorer(factories.scoring_config_from(config)),
            default_limits=factories.default_limits_from(config),
            budget=factories.budget_from(config),
        )

    @property
    def scheduler(self) -> JobScheduler:
        return self._scheduler

    @property
    def cache(self) -> ResultCache:
        return self._scheduler.cache

    @property
    def metrics(self) -> MetricsRegistry:
        return self._scheduler.metrics

    @property
    def default_limits(self) -> ResourceLimits:
        return self._default_limits

    async def __aenter__(self) -> VerificationEngine:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._scheduler.shutdown()

    async def submit(
        self,
        request: ExecutionRequest,
        *,
        deadline: float | None = None,
        bypass_cache: bool = False,
    ) -> JobHandle:
        return await self._scheduler.submit(request, deadline=deadline, bypass_cache=bypass_cache)

    async def await_result(self, handle: JobHandle) -> ExecutionResult:
        return await self._scheduler.await_result(handle)

    def cancel(self, handle: JobHandle) -> bool:
        return self._scheduler.cancel(handle)

    def events(self, handle: JobHandle) -> AsyncIterator[JobEvent]:
        return self._scheduler.events(handle)

    async def correlate(
        self,
        stacktrace: str,
        logs: str | Sequence[str],
        repo_context: RepositoryIndex | Path | str,
    ) -> tuple[CandidateLocation, ...]:
        if not isinstance(repo_context, RepositoryIndex):
            repo_context = await asyncio.to_thread(RepositoryIndex.from_directory, repo_context)
        return await self._correlator.correlate(stacktrace, logs, repo_context)

    async def minimize(
        self,
        request: MinimizeRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> MinimizationResult:
        snapshot = None
        if request.snapshot is not None:
            snapshot = await asyncio.to_thread(SnapshotRef.from_directory, request.snapshot)
        oracle = SchedulerOracle(
            self._scheduler,
            tenant_id=request.tenant_id,
            command=request.command,
            signature=FailureSignature.from_request(request),
            input_path=request.input_path,
            snapshot=snapshot,
            limits=request.limits or self._default_limits,
            group_id=generate_group_id(),
        )
        budget = self._budget
        if request.max_oracle_calls is not None:
            budget = replace(budget, max_oracle_calls=request.max_oracle_calls)
        if request.max_wall_clock_seconds is not None:
            budget = replace(budget, max_wall_clock_seconds=request.max_wall_clock_seconds)

        result = await self._minimizer.minimize(
            request.input_text,
            oracle,
            budget,
            unit=request.granularity,
            cancel_token=cancel_token,
        )
        self._logger.info(
            "engine_minimize_finished",
            tenant_id=request.tenant_id,
            status=result.status.value,
            oracle_calls=result.oracle_calls,
            sandbox_executions=oracle.executions,
            initial_size=result.initial_size,
            final_size=result.final_size,
        )
        return result

    async def verify(self, request: VerifyRequest) -> VerificationOutcome:
        return await self._verifier.verify(request)

    def score(
        self,
        outcome: VerificationOutcome,
        evidence: Sequence[EvidenceCitation | Mapping[str, object]] = (),
        historical_rate: float | None = None,
    ) -> ConfidenceReport:
        return self._scorer.score(outcome, outcome.static_signals, evidence, historical_rate)

    async def verify_and_score(
        self,
        request: VerifyRequest,
        evidence: Sequence[EvidenceCitation | Mapping[str, object]] = (),
        historical_rate: float | None = None,
    ) -> tuple[VerificationOutcome, ConfidenceReport]:
        outcome = await self.verify(request)
        return outcome, self.score(outcome, evidence, historical_rate)


__all__ = ["VerificationEngine"]
