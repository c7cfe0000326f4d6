"""Content-addressed result cache with in-flight deduplication.

Keys are ``(tenant_id, content_hash)`` so nothing one tenant executes is ever
served to another. ``reserve`` is an atomic check-then-insert: the first caller
for a key becomes the *leader* and must later ``fulfill`` or ``abandon`` its
reservation; concurrent callers for the same key become *followers* that await
the leader's result instead of executing again.

The cache is safe to use from multiple threads; followers awaiting from an
event loop bridge the ``concurrent.futures.Future`` with ``asyncio.wrap_future``.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import StrEnum

from nexus_verifier.domain.models import ExecutionOutcome, ExecutionResult

CacheKey = tuple[str, str]
Clock = Callable[[], float]


class ReservationKind(StrEnum):
    HIT = "hit"
    LEADER = "leader"
    FOLLOWER = "follower"


@dataclass(frozen=True, slots=True)
class Reservation:
    """Outcome of ``ResultCache.reserve``.

    ``HIT`` carries ``result``; ``LEADER`` and ``FOLLOWER`` share ``future``, which
    resolves to the leader's result, or to ``None`` when the leader abandons.
    """

    kind: ReservationKind
    key: CacheKey
    result: ExecutionResult | None = None
    future: Future[ExecutionResult | None] | None = None

    async def wait(self) -> ExecutionResult | None:
        if self.kind is ReservationKind.HIT:
            return self.result
        if self.future is None:
            raise RuntimeError("reservation has no in-flight future")
        return await asyncio.wrap_future(self.future)


@dataclass(frozen=True, slots=True)
class CacheStats:
    entries: int
    in_flight: int
    hits: int
    misses: int
    followers: int
    evictions: int
    expirations: int

    def to_dict(self) -> dict[str, int]:
        return {
            "entries": self.entries,
            "in_flight": self.in_flight,
            "hits": self.hits,
            "misses": self.misses,
            "followers": self.followers,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


@dataclass(frozen=True, slots=True)
class _Entry:
    result: ExecutionResult
    expires_at: float


class ResultCache:
    """Thread-safe LRU of execution results with outcome-dependent TTLs."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 3600.0,
        timeout_ttl_seconds: float = 300.0,
        max_entries: int = 4096,
        clock: Clock = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0 or timeout_ttl_seconds <= 0:
            raise ValueError("cache TTLs must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._ttl = ttl_seconds
        self._timeout_ttl = timeout_ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: OrderedDict[CacheKey, _Entry] = OrderedDict()
        self._in_flight: dict[CacheKey, Future[ExecutionResult | None]] = {}
        self._hits = 0
        self._misses = 0
        self._followers = 0
        self._evictions = 0
        self._expirations = 0

    @staticmethod
    def key_for(tenant_id: str, content_hash: str) -> CacheKey:
        return (tenant_id, content_hash)

    def get(self, key: CacheKey) -> ExecutionResult | None:
        with self._lock:
            return self._lookup(key)

    def put(self, key: CacheKey, result: ExecutionResult) -> None:
        with self._lock:
            self._store(key, result)

    def reserve(self, key: CacheKey, *, bypass: bool = False) -> Reservation:
        """Atomically classify the caller as hit, follower, or leader for ``key``.

        ``bypass`` skips stored results but still joins an identical execution that
        is already in flight, since that run is itself fresh.
        """

        with self._lock:
            if not bypass:
                cached = self._lookup(key)
                if cached is not None:
                    return Reservation(ReservationKind.HIT, key, result=cached)
            pending = self._in_flight.get(key)
            if pending is not None:
                self._followers += 1
                return Reservation(ReservationKind.FOLLOWER, key, future=pending)
            future: Future[ExecutionResult | None] = Future()
            self._in_flight[key] = future
            return Reservation(ReservationKind.LEADER, key, future=future)

    def fulfill(
        self,
        reservation: Reservation,
        result: ExecutionResult,
        *,
        cacheable: bool = True,
    ) -> None:
        """Publish the leader's result to followers and store it when ``cacheable``."""

        self._require_leader(reservation)
        with self._lock:
            if cacheable:
                self._store(reservation.key, result)
            self._release(reservation)
        if reservation.future is not None and not reservation.future.done():
            reservation.future.set_result(result)

    def abandon(self, reservation: Reservation) -> None:
        """Release a leader reservation without a result; followers will re-reserve."""

        self._require_leader(reservation)
        with self._lock:
            self._release(reservation)
        if reservation.future is not None and not reservation.future.done():
            reservation.future.set_result(None)

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                in_flight=len(self._in_flight),
                hits=self._hits,
                misses=self._misses,
                followers=self._followers,
                evictions=self._evictions,
                expirations=self._expirations,
            )

    def _lookup(self, key: CacheKey) -> ExecutionResult | None:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            return None
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.result

    def _store(self, key: CacheKey, result: ExecutionResult) -> None:
        ttl = self._timeout_ttl if result.outcome is ExecutionOutcome.TIMED_OUT else self._ttl
        self._entries[key] = _Entry(result=result, expires_at=self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    def _release(self, reservation: Reservation) -> None:
        # Only the reservation that owns the slot may clear it; a stale leader must not
        # drop a newer leader's in-flight future.
        if self._in_flight.get(reservation.key) is reservation.future:
            del self._in_flight[reservation.key]

    @staticmethod
    def _require_leader(reservation: Reservation) -> None:
        if reservation.kind is not ReservationKind.LEADER:
            raise ValueError(f"only leader reservations can be settled, got {reservation.kind}")


__all__ = [
    "CacheKey",
    "CacheStats",
    "Reservation",
    "ReservationKind",
    "ResultCache",
]
