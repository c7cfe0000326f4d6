"""
Multi-tenant job scheduler for sandboxed executions.

Responsibilities:
- enforce per-tenant and global concurrency caps, queueing overflow FIFO per
  tenant up to a bounded depth and dispatching across tenants round-robin
- consult the result cache before dispatch so cache hits and identical in-flight
  requests never consume an execution slot
- enforce wall-clock timeouts independently of the executor, cache timeout
  results, and honor caller deadlines
- retry transient provisioning failures with an injected ``RetryPolicy``
- cancel queued jobs cooperatively and running jobs forcibly with a grace period
- keep an append-only event stream per job and emit one audit record per
  terminal job

All bookkeeping happens on the event loop thread; dispatch is driven by state
changes (submission, completion, cancellation), never by polling.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog

from nexus_verifier.control_plane.cache import Reservation, ReservationKind, ResultCache
from nexus_verifier.control_plane.jobs import JobRecord
from nexus_verifier.domain.errors import (
    JobCancelledError,
    NetworkPolicyViolationError,
    ProvisioningError,
    ProvisioningFailedError,
    QuotaExceededError,
    UnknownJobError,
)
from nexus_verifier.domain.ids import generate_job_id
from nexus_verifier.domain.models import ExecutionOutcome, ExecutionResult, JobState
from nexus_verifier.observability import metrics as metric_names
from nexus_verifier.observability.events import AuditRecord, JobEventType
from nexus_verifier.observability.logging import correlation_scope
from nexus_verifier.observability.metrics import MetricsRegistry
from nexus_verifier.sandbox.network_policy import NetworkPolicy
from nexus_verifier.utils.concurrency import run_with_timeout
from nexus_verifier.utils.retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from nexus_verifier.domain.models import ExecutionRequest, JobHandle
    from nexus_verifier.observability.events import AuditSink, JobEvent
    from nexus_verifier.sandbox.executor import IsolationExecutor

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Concurrency, queueing, and cancellation limits."""

    global_max_concurrency: int = 8
    tenant_max_concurrency: int = 4
    tenant_overrides: Mapping[str, int] = field(default_factory=dict)
    max_queue_depth: int = 64
    cancel_grace_seconds: float = 5.0
    timeout_slack_seconds: float = 1.0
    job_retention_seconds: float = 3600.0
    privileged_tenants: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.global_max_concurrency <= 0:
            raise ValueError("global_max_concurrency must be > 0")
        if self.tenant_max_concurrency <= 0:
            raise ValueError("tenant_max_concurrency must be > 0")
        for tenant, limit in self.tenant_overrides.items():
            if limit <= 0:
                raise ValueError(f"tenant_overrides[{tenant}] must be > 0")
        if self.max_queue_depth < 0:
            raise ValueError("max_queue_depth must be >= 0")
        if self.cancel_grace_seconds < 0:
            raise ValueError("cancel_grace_seconds must be >= 0")
        if self.timeout_slack_seconds < 0:
            raise ValueError("timeout_slack_seconds must be >= 0")
        if self.job_retention_seconds <= 0:
            raise ValueError("job_retention_seconds must be > 0")
        object.__setattr__(self, "privileged_tenants", frozenset(self.privileged_tenants))

    def tenant_limit(self, tenant_id: str) -> int:
        return self.tenant_overrides.get(tenant_id, self.tenant_max_concurrency)


class JobScheduler:
    """Schedules ``ExecutionRequest`` jobs onto an isolation executor."""

    def __init__(
        self,
        executor: IsolationExecutor,
        *,
        cache: ResultCache | None = None,
        config: SchedulerConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        network_policy: NetworkPolicy | None = None,
        audit_sink: AuditSink | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Clock = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._config = config or SchedulerConfig()
        self._cache = cache or ResultCache()
        self._retry = retry_policy or RetryPolicy()
        self._network = network_policy or NetworkPolicy(
            privileged_tenants=self._config.privileged_tenants
        )
        self._audit = audit_sink
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._jobs: dict[str, JobRecord] = {}
        self._finished: OrderedDict[str, float] = OrderedDict()
        self._queues: dict[str, deque[JobRecord]] = {}
        self._rotation: deque[str] = deque()
        self._running: dict[str, int] = {}
        self._running_total = 0
        self._background: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    async def __aenter__(self) -> JobScheduler:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.shutdown()

    async def submit(
        self,
        request: ExecutionRequest,
        *,
        deadline: float | None = None,
        bypass_cache: bool = False,
        group_id: str | None = None,
    ) -> JobHandle:
        """Accept ``request`` and return a handle immediately.

        ``deadline`` is an absolute time on the scheduler clock (``time.monotonic``
        by default). Raises ``QuotaExceededError`` when the tenant's queue is full
        and ``NetworkPolicyViolationError`` for egress the tenant may not use.
        """

        if self._closed:
            raise RuntimeError("scheduler is shut down")
        tenant_id = request.tenant_id
        try:
            self._network.enforce(tenant_id, request.network)
        except NetworkPolicyViolationError:
            self._metrics.inc(
                metric_names.JOBS_REJECTED, labels={"tenant": tenant_id, "reason": "network"}
            )
            raise
        self._purge_expired()

        job = JobRecord(
            job_id=generate_job_id(),
            request=request,
            group_id=group_id,
            deadline=deadline,
            bypass_cache=bypass_cache,
            submitted_at=self._clock(),
        )
        job.record(
            JobEventType.SUBMITTED,
            content_hash=job.content_hash,
            group_id=group_id,
            bypass_cache=bypass_cache,
        )
        self._route(job, enforce_quota=True)
        self._jobs[job.job_id] = job
        self._metrics.inc(metric_names.JOBS_SUBMITTED, labels={"tenant": tenant_id})
        self._logger.info(
            "scheduler_job_submitted",
            job_id=job.job_id,
            tenant_id=tenant_id,
            content_hash=job.content_hash,
            group_id=group_id,
            route=job.reservation.kind.value if job.reservation is not None else "hit",
        )
        if not job.state.is_terminal:
            self._arm_deadline(job)
        self._dispatch()
        return job.handle

    async def await_result(self, handle: JobHandle) -> ExecutionResult:
        """Wait for a job to finish.

        Raises ``ProvisioningFailedError`` for failed jobs and ``JobCancelledError``
        for cancelled ones; timed-out jobs return a ``TIMED_OUT`` result.
        """

        job = self._require(handle)
        await job.done.wait()
        if job.state is JobState.CANCELLED:
            await job.settled.wait()
            raise JobCancelledError(job.job_id, acknowledged=job.cancel_acknowledged)
        if job.state is JobState.FAILED:
            assert job.error is not None
            raise job.error
        assert job.result is not None
        return job.result

    def cancel(self, handle: JobHandle) -> bool:
        """Request cancellation; returns ``False`` when the job had already finished."""

        job = self._require(handle)
        if job.state.is_terminal:
            return False
        job.record(JobEventType.CANCEL_REQUESTED)

        if job.state is JobState.QUEUED:
            queue = self._queues.get(job.tenant_id)
            if queue is not None and job in queue:
                queue.remove(job)
                self._forget_empty_queue(job.tenant_id)
            if job.task is not None:
                job.task.cancel()
            self._abandon(job)
            job.cancel_acknowledged = True
            self._finish(job, JobState.CANCELLED)
            self._dispatch()
            return True

        job.cancel_token.cancel("cancelled by caller")
        self._abandon(job)
        self._finish(job, JobState.CANCELLED, settled=False)
        self._release_slot(job)
        loop = asyncio.get_running_loop()
        loop.call_later(self._config.cancel_grace_seconds, self._settle_cancel, job, False)
        self._dispatch()
        return True

    def job(self, handle: JobHandle) -> JobRecord:
        return self._require(handle)

    def events(self, handle: JobHandle) -> AsyncIterator[JobEvent]:
        """Follow the job's event stream from the beginning until it settles."""

        return self._require(handle).events.follow()

    def stats(self) -> dict[str, object]:
        return {
            "running_total": self._running_total,
            "running": {tenant: count for tenant, count in sorted(self._running.items()) if count},
            "queued": {tenant: len(queue) for tenant, queue in sorted(self._queues.items())},
            "jobs_tracked": len(self._jobs),
            "cache": self._cache.stats().to_dict(),
        }

    async def shutdown(self) -> None:
        """Cancel outstanding work and wait (bounded by the grace period) for executors."""

        self._closed = True
        for job in list(self._jobs.values()):
            if not job.state.is_terminal:
                self.cancel(job.handle)
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        tasks.extend(self._background)
        pending = [task for task in tasks if not task.done()]
        if pending:
            _, stragglers = await asyncio.wait(pending, timeout=self._config.cancel_grace_seconds)
            for task in stragglers:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Routing and dispatch
    # ------------------------------------------------------------------

    def _route(self, job: JobRecord, *, enforce_quota: bool) -> None:
        key = ResultCache.key_for(job.tenant_id, job.content_hash)
        reservation = self._cache.reserve(key, bypass=job.bypass_cache)

        if reservation.kind is ReservationKind.HIT:
            assert reservation.result is not None
            job.cache_hit = True
            job.record(JobEventType.CACHE_HIT)
            self._metrics.inc(metric_names.CACHE_HITS, labels={"tenant": job.tenant_id})
            state = (
                JobState.TIMED_OUT
                if reservation.result.outcome is ExecutionOutcome.TIMED_OUT
                else JobState.COMPLETED
            )
            self._finish(job, state, result=reservation.result)
            return

        if reservation.kind is ReservationKind.FOLLOWER:
            job.reservation = reservation
            job.record(JobEventType.FOLLOWING)
            self._metrics.inc(metric_names.CACHE_FOLLOWERS, labels={"tenant": job.tenant_id})
            job.task = asyncio.create_task(self._follow(job, reservation))
            return

        queue = self._queues.setdefault(job.tenant_id, deque())
        if (
            enforce_quota
            and len(queue) >= self._config.max_queue_depth
            and not self._can_start_now(job.tenant_id)
        ):
            self._cache.abandon(reservation)
            self._forget_empty_queue(job.tenant_id)
            self._metrics.inc(
                metric_names.JOBS_REJECTED, labels={"tenant": job.tenant_id, "reason": "quota"}
            )
            raise QuotaExceededError(job.tenant_id, len(queue), self._config.max_queue_depth)
        job.reservation = reservation
        queue.append(job)
        if job.tenant_id not in self._rotation:
            self._rotation.append(job.tenant_id)
        self._update_queue_gauge(job.tenant_id)

    async def _follow(self, job: JobRecord, reservation: Reservation) -> None:
        result = await reservation.wait()
        if job.state.is_terminal:
            return
        if result is None:
            # The leader gave up; compete for leadership again without quota checks.
            job.task = None
            job.reservation = None
            self._route(job, enforce_quota=False)
            self._dispatch()
            return
        job.cache_hit = True
        timed_out = result.outcome is ExecutionOutcome.TIMED_OUT
        state = JobState.TIMED_OUT if timed_out else JobState.COMPLETED
        self._finish(job, state, result=result)

    def _dispatch(self) -> None:
        while self._running_total < self._config.global_max_concurrency:
            job = self._next_dispatchable()
            if job is None:
                return
            if job.deadline is not None and job.deadline <= self._clock():
                self._expire_queued(job)
                continue
            self._start(job)

    def _next_dispatchable(self) -> JobRecord | None:
        for _ in range(len(self._rotation)):
            tenant_id = self._rotation[0]
            self._rotation.rotate(-1)
            queue = self._queues.get(tenant_id)
            if not queue:
                self._forget_empty_queue(tenant_id)
                continue
            if not self._has_room(tenant_id):
                continue
            job = queue.popleft()
            self._forget_empty_queue(tenant_id)
            self._update_queue_gauge(tenant_id)
            return job
        return None

    def _has_room(self, tenant_id: str) -> bool:
        return self._running.get(tenant_id, 0) < self._config.tenant_limit(tenant_id)

    def _can_start_now(self, tenant_id: str) -> bool:
        return (
            self._running_total < self._config.global_max_concurrency
            and self._has_room(tenant_id)
        )

    def _start(self, job: JobRecord) -> None:
        job.holds_slot = True
        self._running[job.tenant_id] = self._running.get(job.tenant_id, 0) + 1
        self._running_total += 1
        self._metrics.set_gauge(metric_names.RUNNING_JOBS, float(self._running_total))
        job.transition(JobState.PROVISIONING, attempt=1)
        job.task = asyncio.create_task(self._run(job), name=f"nexus-verifier:{job.job_id}")

    def _release_slot(self, job: JobRecord) -> None:
        if not job.holds_slot:
            return
        job.holds_slot = False
        self._running[job.tenant_id] -= 1
        self._running_total -= 1
        self._metrics.set_gauge(metric_names.RUNNING_JOBS, float(self._running_total))

    def _forget_empty_queue(self, tenant_id: str) -> None:
        queue = self._queues.get(tenant_id)
        if queue is not None and not queue:
            del self._queues[tenant_id]
            if tenant_id in self._rotation:
                self._rotation.remove(tenant_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, job: JobRecord) -> None:
        with correlation_scope(job_id=job.job_id, tenant_id=job.tenant_id, group_id=job.group_id):
            try:
                await self._run_attempts(job)
            except asyncio.CancelledError:
                if not job.state.is_terminal:
                    self._abandon(job)
                    self._finish(job, JobState.CANCELLED)
                raise
            except Exception as exc:
                if not job.state.is_terminal:
                    self._abandon(job)
                    self._finish(job, JobState.FAILED, error=exc)
                self._logger.error(
                    "scheduler_job_crashed",
                    job_id=job.job_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            finally:
                if job.state is JobState.CANCELLED:
                    self._settle_cancel(job, True)
                self._release_slot(job)
                self._dispatch()

    async def _run_attempts(self, job: JobRecord) -> None:
        request = job.request
        while True:
            job.attempts += 1
            timeout = request.limits.timeout_seconds
            shortened = False
            if job.deadline is not None:
                remaining = job.deadline - self._clock()
                if remaining <= 0:
                    self._abandon(job)
                    self._finish(job, JobState.TIMED_OUT, result=_deadline_result(job))
                    return
                if remaining < timeout:
                    timeout, shortened = remaining, True

            run_request = request
            if shortened:
                run_request = replace(request, limits=request.limits.with_timeout(timeout))

            self._metrics.inc(metric_names.EXECUTIONS, labels={"tenant": job.tenant_id})
            started = self._clock()
            try:
                result = await run_with_timeout(
                    self._executor.run(
                        run_request,
                        cancel_token=job.cancel_token,
                        on_phase=lambda state: self._on_phase(job, state),
                    ),
                    timeout + self._config.timeout_slack_seconds,
                )
            except TimeoutError:
                job.cancel_token.cancel("scheduler timeout")
                result = ExecutionResult(
                    content_hash=request.content_hash,
                    outcome=ExecutionOutcome.TIMED_OUT,
                    exit_code=None,
                    duration_ms=int((self._clock() - started) * 1000),
                    termination_reason="scheduler_timeout",
                )
            except ProvisioningError as exc:
                if job.state.is_terminal:
                    return
                if exc.transient and self._retry.should_retry(job.attempts):
                    delay = self._retry.delay_for(job.attempts)
                    self._metrics.inc(
                        metric_names.PROVISIONING_RETRIES, labels={"tenant": job.tenant_id}
                    )
                    job.record(
                        JobEventType.RETRY_SCHEDULED,
                        attempt=job.attempts,
                        delay_seconds=round(delay, 3),
                        error=str(exc),
                    )
                    self._logger.warning(
                        "scheduler_provisioning_retry",
                        job_id=job.job_id,
                        attempt=job.attempts,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    if await self._sleep_unless_cancelled(job, delay):
                        return
                    if job.state is not JobState.PROVISIONING:
                        job.transition(JobState.PROVISIONING, attempt=job.attempts + 1)
                    continue
                self._abandon(job)
                self._finish(
                    job,
                    JobState.FAILED,
                    error=ProvisioningFailedError(job.job_id, job.attempts, str(exc)),
                )
                return

            if job.state.is_terminal:
                # Cancelled while running; the late result is discarded.
                return
            if result.content_hash != request.content_hash:
                result = replace(result, content_hash=request.content_hash)
            timed_out = result.outcome is ExecutionOutcome.TIMED_OUT
            self._settle_reservation(job, result, cacheable=not (timed_out and shortened))
            self._finish(job, JobState.TIMED_OUT if timed_out else JobState.COMPLETED, result=result)
            return

    def _on_phase(self, job: JobRecord, state: JobState) -> None:
        if job.state.is_terminal or job.state is state:
            return
        job.transition(state)

    async def _sleep_unless_cancelled(self, job: JobRecord, delay: float) -> bool:
        """Sleep for ``delay``; returns ``True`` if the job was cancelled meanwhile."""

        if delay <= 0:
            return job.cancel_token.is_cancelled
        waiter = asyncio.create_task(job.cancel_token.wait())
        try:
            await asyncio.wait({waiter}, timeout=delay)
        finally:
            waiter.cancel()
        return job.cancel_token.is_cancelled

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _settle_reservation(self, job: JobRecord, result: ExecutionResult, *, cacheable: bool) -> None:
        reservation = job.reservation
        job.reservation = None
        if reservation is not None and reservation.kind is ReservationKind.LEADER:
            self._cache.fulfill(reservation, result, cacheable=cacheable)

    def _abandon(self, job: JobRecord) -> None:
        reservation = job.reservation
        job.reservation = None
        if reservation is not None and reservation.kind is ReservationKind.LEADER:
            self._cache.abandon(reservation)

    def _expire_queued(self, job: JobRecord) -> None:
        self._abandon(job)
        self._finish(job, JobState.TIMED_OUT, result=_deadline_result(job))

    def _arm_deadline(self, job: JobRecord) -> None:
        if job.deadline is None:
            return
        delay = max(0.0, job.deadline - self._clock())
        job.deadline_timer = asyncio.get_running_loop().call_later(
            delay, self._on_deadline, job
        )

    def _on_deadline(self, job: JobRecord) -> None:
        job.deadline_timer = None
        if job.state is not JobState.QUEUED:
            return
        queue = self._queues.get(job.tenant_id)
        if queue is not None and job in queue:
            queue.remove(job)
            self._forget_empty_queue(job.tenant_id)
            self._update_queue_gauge(job.tenant_id)
        if job.task is not None:
            job.task.cancel()
        self._expire_queued(job)

    def _settle_cancel(self, job: JobRecord, acknowledged: bool) -> None:
        if job.settled.is_set():
            return
        job.cancel_acknowledged = acknowledged
        if acknowledged:
            job.record(JobEventType.CANCEL_ACKNOWLEDGED)
        else:
            self._logger.warning(
                "scheduler_cancel_unacknowledged",
                job_id=job.job_id,
                grace_seconds=self._config.cancel_grace_seconds,
            )
        job.settle()

    def _finish(
        self,
        job: JobRecord,
        state: JobState,
        *,
        result: ExecutionResult | None = None,
        error: BaseException | None = None,
        settled: bool = True,
    ) -> None:
        job.finish(state, result=result, error=error, settled=settled)
        self._finished[job.job_id] = self._clock()
        labels = {"tenant": job.tenant_id, "state": state.value}
        self._metrics.inc(metric_names.JOBS_FINISHED, labels=labels)
        self._metrics.observe(metric_names.JOB_DURATION_MS, float(job.duration_ms), labels=labels)
        self._logger.info(
            "scheduler_job_finished",
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            state=state.value,
            outcome=result.outcome.value if result is not None else None,
            cache_hit=job.cache_hit,
            attempts=job.attempts,
            duration_ms=job.duration_ms,
        )
        if self._audit is not None:
            self._audit.record(
                AuditRecord(
                    job_id=job.job_id,
                    content_hash=job.content_hash,
                    tenant_id=job.tenant_id,
                    state=state,
                    outcome=result.outcome.value if result is not None else None,
                    duration_ms=job.duration_ms,
                    cache_hit=job.cache_hit,
                    attempts=job.attempts,
                    group_id=job.group_id,
                )
            )

    def _purge_expired(self) -> None:
        horizon = self._clock() - self._config.job_retention_seconds
        while self._finished:
            job_id, finished_at = next(iter(self._finished.items()))
            if finished_at > horizon:
                return
            del self._finished[job_id]
            job = self._jobs.get(job_id)
            if job is not None and job.settled.is_set():
                del self._jobs[job_id]

    def _update_queue_gauge(self, tenant_id: str) -> None:
        depth = len(self._queues.get(tenant_id, ()))
        self._metrics.set_gauge(metric_names.QUEUE_DEPTH, float(depth), labels={"tenant": tenant_id})

    def _require(self, handle: JobHandle) -> JobRecord:
        job = self._jobs.get(handle.job_id)
        if job is None:
            raise UnknownJobError(f"unknown job {handle.job_id!r}")
        return job


def _deadline_result(job: JobRecord) -> ExecutionResult:
    return ExecutionResult(
        content_hash=job.content_hash,
        outcome=ExecutionOutcome.TIMED_OUT,
        exit_code=None,
        termination_reason="deadline_exceeded",
    )


__all__ = ["JobScheduler", "SchedulerConfig"]
