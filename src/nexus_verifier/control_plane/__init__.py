"""Control-plane public API."""

from nexus_verifier.control_plane.cache import (
    CacheKey,
    CacheStats,
    Reservation,
    ReservationKind,
    ResultCache,
)
from nexus_verifier.control_plane.jobs import InvalidTransitionError, JobRecord
from nexus_verifier.control_plane.scheduler import JobScheduler, SchedulerConfig

__all__ = [
    "CacheKey",
    "CacheStats",
    "InvalidTransitionError",
    "JobRecord",
    "JobScheduler",
    "Reservation",
    "ReservationKind",
    "ResultCache",
    "SchedulerConfig",
]
