"""Per-job event streams and the append-only audit trail.

Each job owns a ``JobEventLog``: an append-only sequence of ``JobEvent`` values
that callers can replay or follow asynchronously until the job reaches a
terminal state. Subscriber failures are captured as ``DispatchError`` records
instead of interrupting the scheduler.

Terminal jobs produce one ``AuditRecord`` delivered to an ``AuditSink``;
``JsonlAuditSink`` appends them as JSON lines.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from nexus_verifier.constants import AUDIT_RECORD_SCHEMA_VERSION
from nexus_verifier.domain.models import JobState, JSONValue

JobEventSubscriber = Callable[["JobEvent"], object]


class JobEventType(StrEnum):
    SUBMITTED = "submitted"
    CACHE_HIT = "cache_hit"
    FOLLOWING = "following"
    STATE_CHANGED = "state_changed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANCEL_REQUESTED = "cancel_requested"
    CANCEL_ACKNOWLEDGED = "cancel_acknowledged"
    FINISHED = "finished"


@dataclass(frozen=True, slots=True)
class JobEvent:
    job_id: str
    sequence: int
    event_type: JobEventType
    state: JobState
    at_monotonic: float
    detail: dict[str, JSONValue] = field(default_factory=dict)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "job_id": self.job_id,
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "state": self.state.value,
            "at_monotonic": self.at_monotonic,
            "detail": dict(self.detail),
        }


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the publisher."""

    job_id: str
    sequence: int
    target: str
    error_type: str
    message: str


class JobEventLog:
    """Append-only event stream for one job."""

    def __init__(self, job_id: str) -> None:
        self._job_id = job_id
        self._events: list[JobEvent] = []
        self._subscribers: list[JobEventSubscriber] = []
        self._dispatch_errors: list[DispatchError] = []
        self._lock = threading.RLock()
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._dispatch_errors)

    def snapshot(self) -> tuple[JobEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def subscribe(self, callback: JobEventSubscriber) -> None:
        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            self._subscribers.append(callback)

    def append(
        self,
        event_type: JobEventType,
        state: JobState,
        **detail: JSONValue,
    ) -> JobEvent:
        with self._lock:
            if self._closed:
                raise RuntimeError(f"event log for {self._job_id} is closed")
            event = JobEvent(
                job_id=self._job_id,
                sequence=len(self._events),
                event_type=event_type,
                state=state,
                at_monotonic=time.monotonic(),
                detail=dict(detail),
            )
            self._events.append(event)
            subscribers = tuple(self._subscribers)
            waiter, self._changed = self._changed, asyncio.Event()
        waiter.set()

        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001 - subscriber isolation.
                with self._lock:
                    self._dispatch_errors.append(
                        DispatchError(
                            job_id=self._job_id,
                            sequence=event.sequence,
                            target=getattr(callback, "__qualname__", repr(callback)),
                            error_type=type(exc).__name__,
                            message=str(exc),
                        )
                    )
        return event

    def close(self) -> None:
        with self._lock:
            self._closed = True
            waiter = self._changed
        waiter.set()

    async def follow(self) -> AsyncIterator[JobEvent]:
        """Yield every event from the start, then new ones, until the log closes."""

        index = 0
        while True:
            with self._lock:
                pending = self._events[index:]
                closed = self._closed
                waiter = self._changed
            for event in pending:
                yield event
            index += len(pending)
            if closed and not pending:
                return
            if not pending:
                await waiter.wait()


@dataclass(frozen=True, slots=True)
class AuditRecord:
    job_id: str
    content_hash: str
    tenant_id: str
    state: JobState
    outcome: str | None
    duration_ms: int
    cache_hit: bool
    attempts: int
    group_id: str | None = None
    recorded_at: str = field(
        default_factory=lambda: datetime.now(tz=UTC).isoformat(timespec="milliseconds")
    )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "job_id": self.job_id,
            "content_hash": self.content_hash,
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "outcome": self.outcome,
            "duration_ms": self.duration_ms,
            "cache_hit": self.cache_hit,
            "attempts": self.attempts,
            "group_id": self.group_id,
            "recorded_at": self.recorded_at,
            "schema_version": AUDIT_RECORD_SCHEMA_VERSION,
        }


class AuditSink(Protocol):
    def record(self, entry: AuditRecord) -> None: ...


class InMemoryAuditSink:
    """Audit sink that keeps records in memory (tests and embedded use)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[AuditRecord] = []

    def record(self, entry: AuditRecord) -> None:
        with self._lock:
            self._records.append(entry)

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        with self._lock:
            return tuple(self._records)


class JsonlAuditSink:
    """Append-only JSON-lines audit log; one line per terminal job."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, entry: AuditRecord) -> None:
        line = json.dumps(entry.to_dict(), sort_keys=True, separators=(",", ":"))
        with self._lock, self._path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
            handle.flush()


def read_audit_log(path: Path | str) -> list[dict[str, JSONValue]]:
    """Load every record from a JSON-lines audit log, skipping blank lines."""

    records: list[dict[str, JSONValue]] = []
    with Path(path).open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_number}: invalid audit record: {exc}") from exc
            if not isinstance(payload, dict):
                raise ValueError(f"{path}:{line_number}: audit record must be an object")
            records.append(payload)
    return records


__all__ = [
    "AuditRecord",
    "AuditSink",
    "DispatchError",
    "InMemoryAuditSink",
    "JobEvent",
    "JobEventLog",
    "JobEventSubscriber",
    "JobEventType",
    "JsonlAuditSink",
    "read_audit_log",
]
