"""Public observability primitives: structured logging, metrics, job events, and audit."""

from nexus_verifier.observability.events import (
    AuditRecord,
    AuditSink,
    InMemoryAuditSink,
    JobEvent,
    JobEventLog,
    JobEventType,
    JsonlAuditSink,
)
from nexus_verifier.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    correlation_scope,
    setup_structured_logging,
    shutdown_logging,
)
from nexus_verifier.observability.metrics import MetricsRegistry

__all__ = [
    "AuditRecord",
    "AuditSink",
    "InMemoryAuditSink",
    "JobEvent",
    "JobEventLog",
    "JobEventType",
    "JsonlAuditSink",
    "LoggingConfig",
    "MetricsRegistry",
    "StructuredLoggingHandle",
    "correlation_scope",
    "setup_structured_logging",
    "shutdown_logging",
]
