"""Engine metrics: labelled counters, gauges and summaries held in memory.

One ``MetricsRegistry`` lives per engine; the scheduler records into it
and callers read values back with ``get_*`` or a key-sorted ``snapshot()``.
Series are identified Prometheus-style, e.g. ``executions_total{tenant=ci}``.
"""

from __future__ import annotations

import json
import math
import threading
import time
from collections import defaultdict
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

Labels = tuple[tuple[str, str], ...]
Series = tuple[str, Labels]

MAX_NAME_LENGTH: Final[int] = 128

JOBS_SUBMITTED: Final[str] = "jobs_submitted_total"
JOBS_FINISHED: Final[str] = "jobs_finished_total"
JOBS_REJECTED: Final[str] = "jobs_rejected_total"
CACHE_HITS: Final[str] = "cache_hits_total"
CACHE_FOLLOWERS: Final[str] = "cache_followers_total"
EXECUTIONS: Final[str] = "executions_total"
PROVISIONING_RETRIES: Final[str] = "provisioning_retries_total"
QUEUE_DEPTH: Final[str] = "queue_depth"
RUNNING_JOBS: Final[str] = "running_jobs"
JOB_DURATION_MS: Final[str] = "job_duration_ms"


@dataclass(slots=True)
class Summary:
    """Running count/sum/min/max of observed samples."""

    count: int = 0
    total: float = 0.0
    low: float = math.inf
    high: float = -math.inf

    def add(self, sample: float) -> None:
        self.count += 1
        self.total += sample
        self.low = min(self.low, sample)
        self.high = max(self.high, sample)

    def as_dict(self) -> dict[str, JSONValue]:
        empty = self.count == 0
        return {
            "count": self.count,
            "sum": self.total,
            "min": None if empty else self.low,
            "max": None if empty else self.high,
            "avg": 0.0 if empty else self.total / self.count,
        }


class MetricsRegistry:
    """Thread-safe store shared by every component of one engine."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = datetime.now(tz=UTC)
        self._counters: defaultdict[Series, float] = defaultdict(float)
        self._gauges: dict[Series, float] = {}
        self._summaries: defaultdict[Series, Summary] = defaultdict(Summary)

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Add ``amount`` to a counter; counters never go down."""

        step = _finite(amount, "amount")
        if step < 0:
            raise ValueError("counter increment amount must be >= 0")
        series = _series(name, labels)
        with self._lock:
            self._counters[series] += step

    def set_gauge(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        series, reading = _series(name, labels), _finite(value, "value")
        with self._lock:
            self._gauges[series] = reading

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        series, sample = _series(name, labels), _finite(value, "value")
        with self._lock:
            self._summaries[series].add(sample)

    @contextmanager
    def timer(self, name: str, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
        """Observe how many milliseconds the ``with`` block took, even if it raised."""

        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - started) * 1000.0, labels=labels)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        series = _series(name, labels)
        with self._lock:
            return self._counters.get(series, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        series = _series(name, labels)
        with self._lock:
            return self._gauges.get(series)

    def get_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        series = _series(name, labels)
        with self._lock:
            summary = self._summaries.get(series)
            return summary.as_dict() if summary is not None else None

    def snapshot(self) -> dict[str, JSONValue]:
        with self._lock:
            counters = {_render(series): value for series, value in self._counters.items()}
            gauges = {_render(series): value for series, value in self._gauges.items()}
            summaries = {_render(series): s.as_dict() for series, s in self._summaries.items()}
        return {
            "created_at": self._started.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "counters": dict(sorted(counters.items())),
            "gauges": dict(sorted(gauges.items())),
            "distributions": dict(sorted(summaries.items())),
        }

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.snapshot(), sort_keys=True, indent=indent, ensure_ascii=False)


def _series(name: str, labels: Mapping[str, str] | None) -> Series:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("metric name must be a non-empty string")
    if len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"metric name must be <= {MAX_NAME_LENGTH} characters")
    pairs = sorted((labels or {}).items())
    for key, value in pairs:
        if not (isinstance(key, str) and key and isinstance(value, str) and value):
            raise ValueError(f"invalid metric label {key!r}={value!r}")
    return name.strip(), tuple(pairs)


def _render(series: Series) -> str:
    name, labels = series
    if not labels:
        return name
    return name + "{" + ",".join(f"{key}={value}" for key, value in labels) + "}"


def _finite(value: float, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be numeric, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError(f"{what} must be finite")
    return float(value)


__all__ = [
    "CACHE_FOLLOWERS",
    "CACHE_HITS",
    "EXECUTIONS",
    "JOBS_FINISHED",
    "JOBS_REJECTED",
    "JOBS_SUBMITTED",
    "JOB_DURATION_MS",
    "MetricsRegistry",
    "PROVISIONING_RETRIES",
    "QUEUE_DEPTH",
    "RUNNING_JOBS",
    "Summary",
]
