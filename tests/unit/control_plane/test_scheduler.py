"""Unit tests for multi-tenant job scheduling, caching, retries, and cancellation."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from nexus_verifier.control_plane.cache import ResultCache
from nexus_verifier.control_plane.scheduler import JobScheduler, SchedulerConfig
from nexus_verifier.domain.errors import (
    JobCancelledError,
    NetworkPolicyViolationError,
    ProvisioningFailedError,
    QuotaExceededError,
    UnknownJobError,
)
from nexus_verifier.domain.models import (
    ExecutionOutcome,
    ExecutionRequest,
    JobHandle,
    JobState,
    NetworkAccess,
    ResourceLimits,
)
from nexus_verifier.observability import metrics as metric_names
from nexus_verifier.observability.events import InMemoryAuditSink, JobEventType
from nexus_verifier.sandbox.network_policy import NetworkPolicy
from nexus_verifier.utils.retry import RetryPolicy

if TYPE_CHECKING:
    from conftest import FakeExecutor

_NO_DELAY_RETRIES = RetryPolicy(
    max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter=0.0
)


def _request(
    command: str = "pytest -q",
    *,
    tenant_id: str = "tenant-a",
    timeout_seconds: float = 30.0,
    network: NetworkAccess | None = None,
) -> ExecutionRequest:
    return ExecutionRequest(
        tenant_id=tenant_id,
        command=command,
        limits=ResourceLimits(timeout_seconds=timeout_seconds),
        network=network or NetworkAccess.deny(),
    )


def _scheduler(executor: FakeExecutor, **config: object) -> JobScheduler:
    retry = config.pop("retry_policy", _NO_DELAY_RETRIES)
    audit = config.pop("audit_sink", None)
    return JobScheduler(
        executor,
        config=SchedulerConfig(**config),  # type: ignore[arg-type]
        retry_policy=retry,  # type: ignore[arg-type]
        audit_sink=audit,  # type: ignore[arg-type]
    )


async def _yield_to_tasks(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def test_identical_resubmission_is_served_from_cache(fake_executor: FakeExecutor) -> None:
    scheduler = _scheduler(fake_executor)

    first = await scheduler.submit(_request())
    result = await scheduler.await_result(first)
    second = await scheduler.submit(_request())
    cached = await scheduler.await_result(second)

    assert result.succeeded
    assert cached == result
    assert fake_executor.runs == 1
    assert scheduler.job(second).cache_hit
    assert scheduler.job(second).state is JobState.COMPLETED
    tenant = {"tenant": "tenant-a"}
    assert scheduler.metrics.get_counter(metric_names.EXECUTIONS, labels=tenant) == 1
    assert scheduler.metrics.get_counter(metric_names.CACHE_HITS, labels=tenant) == 1


async def test_cache_is_scoped_per_tenant(fake_executor: FakeExecutor) -> None:
    scheduler = _scheduler(fake_executor)

    for tenant in ("tenant-a", "tenant-b"):
        handle = await scheduler.submit(_request(tenant_id=tenant))
        await scheduler.await_result(handle)

    assert fake_executor.runs == 2


async def test_bypass_cache_executes_again(fake_executor: FakeExecutor) -> None:
    scheduler = _scheduler(fake_executor)
    await scheduler.await_result(await scheduler.submit(_request()))

    handle = await scheduler.submit(_request(), bypass_cache=True)
    await scheduler.await_result(handle)

    assert fake_executor.runs == 2
    assert not scheduler.job(handle).cache_hit


async def test_concurrent_identical_requests_execute_once(fake_executor: FakeExecutor) -> None:
    fake_executor.gate = asyncio.Event()
    scheduler = _scheduler(fake_executor)

    leader = await scheduler.submit(_request())
    follower = await scheduler.submit(_request())
    await _yield_to_tasks()
    fake_executor.gate.set()

    leader_result, follower_result = await asyncio.gather(
        scheduler.await_result(leader), scheduler.await_result(follower)
    )

    assert fake_executor.runs == 1
    assert leader_result == follower_result
    assert scheduler.job(follower).cache_hit
    assert scheduler.metrics.get_counter(
        metric_names.CACHE_FOLLOWERS, labels={"tenant": "tenant-a"}
    ) == 1


async def test_follower_takes_over_when_leader_is_cancelled(fake_executor: FakeExecutor) -> None:
    fake_executor.gate = asyncio.Event()
    scheduler = _scheduler(fake_executor, cancel_grace_seconds=0.5)

    leader = await scheduler.submit(_request())
    follower = await scheduler.submit(_request())
    await _yield_to_tasks()

    assert scheduler.cancel(leader)
    await _yield_to_tasks()
    fake_executor.gate.set()

    result = await scheduler.await_result(follower)
    assert result.succeeded
    assert fake_executor.runs == 2
    with pytest.raises(JobCancelledError):
        await scheduler.await_result(leader)


async def test_queue_depth_limit_rejects_overflow(fake_executor: FakeExecutor) -> None:
    fake_executor.gate = asyncio.Event()
    scheduler = _scheduler(
        fake_executor, global_max_concurrency=1, tenant_max_concurrency=1, max_queue_depth=1
    )

    running = await scheduler.submit(_request("job one"))
    queued = await scheduler.submit(_request("job two"))
    with pytest.raises(QuotaExceededError) as excinfo:
        await scheduler.submit(_request("job three"))

    assert excinfo.value.tenant_id == "tenant-a"
    assert excinfo.value.limit == 1
    assert scheduler.metrics.get_counter(
        metric_names.JOBS_REJECTED, labels={"tenant": "tenant-a", "reason": "quota"}
    ) == 1

    other_tenant = await scheduler.submit(_request("job one", tenant_id="tenant-b"))
    fake_executor.gate.set()
    for handle in (running, queued, other_tenant):
        assert (await scheduler.await_result(handle)).succeeded


async def test_zero_queue_depth_only_admits_immediately_runnable_jobs(
    fake_executor: FakeExecutor,
) -> None:
    fake_executor.gate = asyncio.Event()
    scheduler = _scheduler(fake_executor, global_max_concurrency=1, max_queue_depth=0)

    first = await scheduler.submit(_request("job one"))
    with pytest.raises(QuotaExceededError):
        await scheduler.submit(_request("job two"))

    fake_executor.gate.set()
    await scheduler.await_result(first)
    await scheduler.await_result(await scheduler.submit(_request("job two")))


async def test_tenants_are_dispatched_round_robin(fake_executor: FakeExecutor) -> None:
    scheduler = _scheduler(fake_executor, global_max_concurrency=1, tenant_max_concurrency=1)

    handles = [
        await scheduler.submit(_request("a1")),
        await scheduler.submit(_request("a2")),
        await scheduler.submit(_request("a3")),
        await scheduler.submit(_request("b1", tenant_id="tenant-b")),
    ]
    for handle in handles:
        await scheduler.await_result(handle)

    order = [call.command[0] for call in fake_executor.calls]
    assert order[0] == "a1"
    assert order.index("b1") < order.index("a3")


async def test_tenant_override_limits_concurrency(fake_executor: FakeExecutor) -> None:
    fake_executor.delay_seconds = 0.01
    scheduler = _scheduler(
        fake_executor,
        global_max_concurrency=8,
        tenant_max_concurrency=4,
        tenant_overrides={"tenant-a": 1},
    )

    handles = [await scheduler.submit(_request(f"job {index}")) for index in range(5)]
    for handle in handles:
        await scheduler.await_result(handle)

    assert fake_executor.peak_by_tenant["tenant-a"] == 1


async def test_transient_provisioning_failures_are_retried(fake_executor: FakeExecutor) -> None:
    fake_executor.transient_failures = 2
    scheduler = _scheduler(fake_executor)

    handle = await scheduler.submit(_request())
    result = await scheduler.await_result(handle)

    job = scheduler.job(handle)
    assert result.succeeded
    assert job.attempts == 3
    retries = [e for e in job.events.snapshot() if e.event_type is JobEventType.RETRY_SCHEDULED]
    assert [event.detail["attempt"] for event in retries] == [1, 2]
    assert scheduler.metrics.get_counter(
        metric_names.PROVISIONING_RETRIES, labels={"tenant": "tenant-a"}
    ) == 2


async def test_exhausted_retries_fail_with_provisioning_error(fake_executor: FakeExecutor) -> None:
    fake_executor.transient_failures = 10
    scheduler = _scheduler(
        fake_executor,
        retry_policy=RetryPolicy(
            max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter=0.0
        ),
    )

    handle = await scheduler.submit(_request())
    with pytest.raises(ProvisioningFailedError) as excinfo:
        await scheduler.await_result(handle)

    assert excinfo.value.attempts == 2
    assert scheduler.job(handle).state is JobState.FAILED
    assert fake_executor.runs == 2


async def test_permanent_provisioning_failure_is_not_retried(fake_executor: FakeExecutor) -> None:
    fake_executor.permanent_failure = True
    scheduler = _scheduler(fake_executor)

    handle = await scheduler.submit(_request())
    with pytest.raises(ProvisioningFailedError, match="sandbox image not found"):
        await scheduler.await_result(handle)
    assert fake_executor.runs == 1

    # Failures are never cached.
    fake_executor.permanent_failure = False
    assert (await scheduler.await_result(await scheduler.submit(_request()))).succeeded


async def test_wall_clock_timeout_is_enforced_and_cached(fake_executor: FakeExecutor) -> None:
    fake_executor.delay_seconds = 5.0
    scheduler = _scheduler(fake_executor, timeout_slack_seconds=0.05)

    handle = await scheduler.submit(_request(timeout_seconds=0.05))
    result = await scheduler.await_result(handle)

    assert result.outcome is ExecutionOutcome.TIMED_OUT
    assert result.termination_reason == "scheduler_timeout"
    assert scheduler.job(handle).state is JobState.TIMED_OUT

    again = await scheduler.submit(_request(timeout_seconds=0.05))
    cached = await scheduler.await_result(again)
    assert cached.outcome is ExecutionOutcome.TIMED_OUT
    assert scheduler.job(again).cache_hit
    assert fake_executor.runs == 1


async def test_deadline_shortens_timeout_and_result_is_not_cached(
    fake_executor: FakeExecutor,
) -> None:
    fake_executor.delay_seconds = 5.0
    scheduler = _scheduler(fake_executor, timeout_slack_seconds=0.05)

    handle = await scheduler.submit(_request(), deadline=time.monotonic() + 0.1)
    result = await scheduler.await_result(handle)

    assert result.outcome is ExecutionOutcome.TIMED_OUT
    assert fake_executor.calls[0].limits.timeout_seconds <= 0.1

    fake_executor.delay_seconds = 0.0
    retry = await scheduler.submit(_request())
    assert (await scheduler.await_result(retry)).succeeded
    assert fake_executor.runs == 2


async def test_queued_job_past_deadline_times_out_without_running(
    fake_executor: FakeExecutor,
) -> None:
    fake_executor.gate = asyncio.Event()
    scheduler = _scheduler(fake_executor, global_max_concurrency=1)

    blocker = await scheduler.submit(_request("blocker"))
    late = await scheduler.submit(_request("late"), deadline=time.monotonic() + 0.05)

    result = await scheduler.await_result(late)
    assert result.outcome is ExecutionOutcome.TIMED_OUT
    assert result.termination_reason == "deadline_exceeded"

    fake_executor.gate.set()
    await scheduler.await_result(blocker)
    assert [call.command[0] for call in fake_executor.calls] == ["blocker"]


async def test_cancel_queued_job(fake_executor: FakeExecutor) -> None:
    fake_executor.gate = asyncio.Event()
    scheduler = _scheduler(fake_executor, global_max_concurrency=1)

    running = await scheduler.submit(_request("running"))
    queued = await scheduler.submit(_request("queued"))

    assert scheduler.cancel(queued)
    assert not scheduler.cancel(queued)
    with pytest.raises(JobCancelledError) as excinfo:
        await scheduler.await_result(queued)
    assert excinfo.value.acknowledged

    fake_executor.gate.set()
    await scheduler.await_result(running)
    assert fake_executor.runs == 1


async def test_cancel_running_job_is_acknowledged_by_executor(
    fake_executor: FakeExecutor,
) -> None:
    fake_executor.gate = asyncio.Event()
    scheduler = _scheduler(fake_executor, cancel_grace_seconds=1.0)

    handle = await scheduler.submit(_request())
    await _yield_to_tasks()
    assert scheduler.cancel(handle)

    with pytest.raises(JobCancelledError) as excinfo:
        await scheduler.await_result(handle)
    assert excinfo.value.acknowledged
    kinds = [event.event_type for event in scheduler.job(handle).events.snapshot()]
    assert JobEventType.CANCEL_REQUESTED in kinds
    assert kinds[-1] is JobEventType.CANCEL_ACKNOWLEDGED


async def test_unresponsive_executor_settles_after_grace_and_frees_slot(
    fake_executor: FakeExecutor,
) -> None:
    fake_executor.gate = asyncio.Event()
    fake_executor.ignore_cancel = True
    scheduler = _scheduler(fake_executor, global_max_concurrency=1, cancel_grace_seconds=0.05)

    stuck = await scheduler.submit(_request("stuck"))
    await _yield_to_tasks()
    scheduler.cancel(stuck)

    fake_executor.gate = None
    follow_up = await scheduler.submit(_request("next"))
    assert (await scheduler.await_result(follow_up)).succeeded

    with pytest.raises(JobCancelledError) as excinfo:
        await scheduler.await_result(stuck)
    assert not excinfo.value.acknowledged
    await scheduler.shutdown()


async def test_network_policy_violation_is_rejected_at_submit(fake_executor: FakeExecutor) -> None:
    scheduler = JobScheduler(
        fake_executor,
        network_policy=NetworkPolicy(
            privileged_tenants=["trusted"], tenant_ceilings={"trusted": ["*.pypi.org"]}
        ),
    )
    egress = NetworkAccess.allow("files.pypi.org")

    with pytest.raises(NetworkPolicyViolationError):
        await scheduler.submit(_request(network=egress))
    with pytest.raises(NetworkPolicyViolationError, match="ceiling"):
        await scheduler.submit(_request(tenant_id="trusted", network=NetworkAccess.allow("x.io")))

    handle = await scheduler.submit(_request(tenant_id="trusted", network=egress))
    assert (await scheduler.await_result(handle)).succeeded
    assert fake_executor.runs == 1


async def test_audit_record_per_terminal_job(fake_executor: FakeExecutor) -> None:
    audit = InMemoryAuditSink()
    scheduler = _scheduler(fake_executor, audit_sink=audit)

    first = await scheduler.submit(_request())
    await scheduler.await_result(first)
    second = await scheduler.submit(_request())
    await scheduler.await_result(second)

    records = audit.records
    assert [record.job_id for record in records] == [first.job_id, second.job_id]
    assert [record.cache_hit for record in records] == [False, True]
    assert records[0].state is JobState.COMPLETED
    assert records[0].attempts == 1
    assert records[0].content_hash == first.content_hash


async def test_event_stream_covers_lifecycle(fake_executor: FakeExecutor) -> None:
    scheduler = _scheduler(fake_executor)

    handle = await scheduler.submit(_request())
    events = [event async for event in scheduler.events(handle)]

    assert events[0].event_type is JobEventType.SUBMITTED
    assert events[-1].event_type is JobEventType.FINISHED
    states = [event.detail.get("previous") for event in events if event.detail.get("previous")]
    assert states == ["queued", "provisioning", "running", "collecting"]

    hit = await scheduler.submit(_request())
    kinds = [event.event_type async for event in scheduler.events(hit)]
    assert kinds[0] is JobEventType.SUBMITTED
    assert JobEventType.CACHE_HIT in kinds


async def test_unknown_handle_and_shutdown(fake_executor: FakeExecutor) -> None:
    scheduler = _scheduler(fake_executor)
    bogus = JobHandle(job_id="job-missing", tenant_id="tenant-a", content_hash="0" * 64)

    with pytest.raises(UnknownJobError):
        scheduler.cancel(bogus)

    await scheduler.shutdown()
    with pytest.raises(RuntimeError, match="shut down"):
        await scheduler.submit(_request())


async def test_stats_reports_cache_and_queues(fake_executor: FakeExecutor) -> None:
    scheduler = JobScheduler(fake_executor, cache=ResultCache(max_entries=8))
    await scheduler.await_result(await scheduler.submit(_request()))

    stats = scheduler.stats()
    assert stats["running_total"] == 0
    assert stats["cache"]["entries"] == 1  # type: ignore[index]


def test_scheduler_config_validation() -> None:
    with pytest.raises(ValueError):
        SchedulerConfig(global_max_concurrency=0)
    with pytest.raises(ValueError):
        SchedulerConfig(tenant_overrides={"tenant-a": 0})
    assert SchedulerConfig(tenant_overrides={"t": 2}).tenant_limit("t") == 2
    assert SchedulerConfig().tenant_limit("other") == 4


@settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
@given(
    tenants=st.lists(st.sampled_from(["alpha", "beta", "gamma"]), min_size=1, max_size=20),
    tenant_limit=st.integers(min_value=1, max_value=3),
    global_limit=st.integers(min_value=1, max_value=4),
)
def test_concurrency_caps_hold_for_any_submission_mix(
    executor_factory: type[FakeExecutor],
    tenants: list[str],
    tenant_limit: int,
    global_limit: int,
) -> None:
    async def scenario() -> FakeExecutor:
        executor = executor_factory()
        executor.delay_seconds = 0.001
        scheduler = _scheduler(
            executor,
            global_max_concurrency=global_limit,
            tenant_max_concurrency=tenant_limit,
            max_queue_depth=len(tenants),
        )
        handles = [
            await scheduler.submit(_request(f"job {index}", tenant_id=tenant))
            for index, tenant in enumerate(tenants)
        ]
        for handle in handles:
            await scheduler.await_result(handle)
        await scheduler.shutdown()
        return executor

    executor = asyncio.run(scenario())

    assert executor.runs == len(tenants)
    assert executor.peak_active <= global_limit
    assert all(peak <= tenant_limit for peak in executor.peak_by_tenant.values())
