"""Scheduler-owned job records and their lifecycle state machine."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from nexus_verifier.domain.models import JobHandle, JobState
from nexus_verifier.observability.events import JobEventLog, JobEventType
from nexus_verifier.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from nexus_verifier.control_plane.cache import Reservation
    from nexus_verifier.domain.models import ExecutionRequest, ExecutionResult, JSONValue

_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset(
        {
            JobState.PROVISIONING,
            JobState.COMPLETED,
            JobState.TIMED_OUT,
            JobState.CANCELLED,
            JobState.FAILED,
        }
    ),
    JobState.PROVISIONING: frozenset(
        {
            JobState.RUNNING,
            JobState.COLLECTING,
            JobState.COMPLETED,
            JobState.TIMED_OUT,
            JobState.CANCELLED,
            JobState.FAILED,
        }
    ),
    JobState.RUNNING: frozenset(
        {
            JobState.PROVISIONING,
            JobState.COLLECTING,
            JobState.COMPLETED,
            JobState.TIMED_OUT,
            JobState.CANCELLED,
            JobState.FAILED,
        }
    ),
    JobState.COLLECTING: frozenset(
        {
            JobState.PROVISIONING,
            JobState.COMPLETED,
            JobState.TIMED_OUT,
            JobState.CANCELLED,
            JobState.FAILED,
        }
    ),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a job is moved along an edge the lifecycle does not allow."""


@dataclass(slots=True)
class JobRecord:
    """Mutable scheduler bookkeeping for one submitted job.

    ``done`` is set when the job reaches a terminal state. For jobs cancelled while
    running, ``settled`` is set later, once the executor acknowledges or the grace
    period elapses; for every other job both events fire together.
    """

    job_id: str
    request: ExecutionRequest
    group_id: str | None
    deadline: float | None
    bypass_cache: bool
    submitted_at: float = field(default_factory=time.monotonic)
    state: JobState = JobState.QUEUED
    cache_hit: bool = False
    attempts: int = 0
    result: ExecutionResult | None = None
    error: BaseException | None = None
    cancel_acknowledged: bool = False
    holds_slot: bool = False
    started_at: float | None = None
    finished_at: float | None = None
    reservation: Reservation | None = None
    task: asyncio.Task[None] | None = None
    deadline_timer: asyncio.TimerHandle | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    events: JobEventLog = field(init=False)

    def __post_init__(self) -> None:
        self.events = JobEventLog(self.job_id)

    @property
    def tenant_id(self) -> str:
        return self.request.tenant_id

    @property
    def content_hash(self) -> str:
        return self.request.content_hash

    @property
    def handle(self) -> JobHandle:
        return JobHandle(
            job_id=self.job_id,
            tenant_id=self.tenant_id,
            content_hash=self.content_hash,
            group_id=self.group_id,
        )

    @property
    def duration_ms(self) -> int:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(0, int((end - self.submitted_at) * 1000))

    def record(self, event_type: JobEventType, **detail: JSONValue) -> None:
        if not self.events.closed:
            self.events.append(event_type, self.state, **detail)

    def transition(self, target: JobState, **detail: JSONValue) -> None:
        if self.state.is_terminal:
            raise InvalidTransitionError(
                f"job {self.job_id} is already {self.state.value}; cannot move to {target.value}"
            )
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"job {self.job_id}: {self.state.value} -> {target.value} is not allowed"
            )
        previous = self.state
        self.state = target
        if target is JobState.PROVISIONING and self.started_at is None:
            self.started_at = time.monotonic()
        self.record(JobEventType.STATE_CHANGED, previous=previous.value, **detail)

    def finish(
        self,
        state: JobState,
        *,
        result: ExecutionResult | None = None,
        error: BaseException | None = None,
        settled: bool = True,
    ) -> None:
        if not state.is_terminal:
            raise InvalidTransitionError(f"{state.value} is not a terminal state")
        self.transition(state)
        self.result = result
        self.error = error
        self.finished_at = time.monotonic()
        if self.deadline_timer is not None:
            self.deadline_timer.cancel()
            self.deadline_timer = None
        self.record(
            JobEventType.FINISHED,
            outcome=result.outcome.value if result is not None else None,
            cache_hit=self.cache_hit,
            error=str(error) if error is not None else None,
        )
        self.done.set()
        if settled:
            self.settle()

    def settle(self) -> None:
        if self.settled.is_set():
            return
        self.settled.set()
        self.events.close()


__all__ = ["InvalidTransitionError", "JobRecord"]
