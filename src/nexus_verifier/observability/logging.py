"""Structured logging setup: structlog events rendered as redacted JSON lines.

Components log through ``structlog.get_logger(__name__)``. Once
``setup_structured_logging`` runs, structlog hands each event to stdlib logging
(``render_to_log_kwargs``) and a ``QueueListener`` thread writes it out. The
sink formatter runs a short chain of record processors, mirroring structlog's
own processor model: base fields, correlation (run/job/tenant/group), extra
fields, exception text, then redaction of the whole event before JSON encoding.
"""

from __future__ import annotations

import atexit
import contextvars
import copy
import functools
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]
EventDict = dict[str, JSONValue]
RecordProcessor = Callable[[logging.LogRecord, EventDict], EventDict]

REDACTED: Final[str] = "***REDACTED***"
DEFAULT_LOG_FILENAME: Final[str] = "verifier.jsonl"
DEFAULT_LOGGER_NAME: Final[str] = "nexus_verifier"

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "job_id",
    "tenant_id",
    "group_id",
    "minimization_id",
)

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName", "correlation", "exception"}

_TRACEBACK_FORMATTER: Final = logging.Formatter()

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "nexus_verifier_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = DEFAULT_LOG_FILENAME
    log_to_stdout: bool = False
    redact_secrets: bool = True

    def resolved_level(self) -> int:
        if isinstance(self.level, int):
            return self.level
        level = logging.getLevelName(str(self.level).strip().upper())
        if not isinstance(level, int):
            raise ValueError(f"unsupported logging level {self.level!r}")
        return level

    def log_path(self) -> Path:
        run_id = _non_empty(self.run_id, "run_id")
        filename = _non_empty(self.log_filename, "log_filename")
        if Path(filename).name != filename:
            raise ValueError("log_filename must not include path separators")
        return Path(self.base_log_dir) / run_id / filename


def logging_config_from_mapping(
    observability: Mapping[str, object],
    *,
    run_id: str,
) -> LoggingConfig:
    """Build ``LoggingConfig`` from the validated ``[observability]`` section."""

    level = observability.get("log_level", "INFO")
    log_dir = observability.get("log_dir", "logs")
    return LoggingConfig(
        run_id=run_id,
        base_log_dir=log_dir if isinstance(log_dir, (str, Path)) else "logs",
        level=level if isinstance(level, (int, str)) else "INFO",
        log_to_stdout=bool(observability.get("log_to_stdout", False)),
        redact_secrets=bool(observability.get("redact_secrets", True)),
    )


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class SecretRedactor:
    """Replace secret-looking values by key name and by inline pattern."""

    key_terms: tuple[str, ...] = (
        "secret",
        "token",
        "password",
        "passphrase",
        "api_key",
        "apikey",
        "authorization",
        "credential",
        "cookie",
        "private_key",
    )

    def __init__(self) -> None:
        self._substitutions: tuple[tuple[re.Pattern[str], str | Callable[[re.Match[str]], str]], ...] = (
            (
                re.compile(
                    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b"
                    r"\s*([:=])\s*([^\s,;]+)"
                ),
                lambda match: f"{match.group(1)}{match.group(2)}{REDACTED}",
            ),
            (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
            (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"), REDACTED),
        )

    def __call__(self, value: JSONValue) -> JSONValue:
        if isinstance(value, str):
            return self.scrub(value)
        if isinstance(value, list):
            return [self(item) for item in value]
        if isinstance(value, dict):
            return {
                key: REDACTED if self.is_sensitive_key(key) else self(item)
                for key, item in value.items()
            }
        return value

    def is_sensitive_key(self, key: str) -> bool:
        lowered = key.lower()
        return any(term in lowered for term in self.key_terms)

    def scrub(self, text: str) -> str:
        for pattern, replacement in self._substitutions:
            text = pattern.sub(replacement, text)
        return text


_default_redactor = SecretRedactor()


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Deep redaction of secret-looking keys and inline credentials."""
    return _default_redactor(value)


# ---------------------------------------------------------------------------
# JSON coercion
# ---------------------------------------------------------------------------


@functools.singledispatch
def to_json_value(value: object) -> JSONValue:
    return repr(value)


@to_json_value.register(type(None))
@to_json_value.register(bool)
@to_json_value.register(int)
@to_json_value.register(str)
def _(value: JSONScalar) -> JSONValue:
    return value


@to_json_value.register
def _(value: float) -> JSONValue:
    return value if math.isfinite(value) else None


@to_json_value.register
def _(value: datetime) -> JSONValue:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")


@to_json_value.register
def _(value: Path) -> JSONValue:
    return str(value)


@to_json_value.register
def _(value: bytes) -> JSONValue:
    return value.decode("utf-8", errors="replace")


@to_json_value.register(Mapping)
def _(value: Mapping[object, object]) -> JSONValue:
    return {str(key): to_json_value(item) for key, item in value.items()}


@to_json_value.register(list)
@to_json_value.register(tuple)
def _(value: list[object] | tuple[object, ...]) -> JSONValue:
    return [to_json_value(item) for item in value]


@to_json_value.register(set)
@to_json_value.register(frozenset)
def _(value: set[object] | frozenset[object]) -> JSONValue:
    return sorted((to_json_value(item) for item in value), key=repr)


# ---------------------------------------------------------------------------
# Record processors
# ---------------------------------------------------------------------------


def add_base_fields(record: logging.LogRecord, event: EventDict) -> EventDict:
    stamp = datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds")
    event["timestamp"] = stamp.replace("+00:00", "Z")
    event["level"] = record.levelname
    event["logger"] = record.name
    event["event"] = record.getMessage()
    return event


def make_correlation_processor(base: Mapping[str, str]) -> RecordProcessor:
    """Merge run-level fields, the scoped context, and explicit record attributes."""

    def add_correlation(record: logging.LogRecord, event: EventDict) -> EventDict:
        merged = dict(base)
        scoped = getattr(record, "correlation", None)
        if isinstance(scoped, Mapping):
            merged.update(scoped)
        for key in CORRELATION_KEYS:
            explicit = getattr(record, key, None)
            if isinstance(explicit, str) and explicit.strip():
                merged[key] = explicit.strip()
        event.update(sorted(merged.items()))
        return event

    return add_correlation


def add_extra_fields(record: logging.LogRecord, event: EventDict) -> EventDict:
    extras = {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRIBUTES
        and key not in CORRELATION_KEYS
        and not key.startswith("_")
    }
    if extras:
        event["fields"] = to_json_value(extras)
    return event


def add_exception(record: logging.LogRecord, event: EventDict) -> EventDict:
    # stdlib loggers leave the traceback in exc_text; structlog's format_exc_info
    # passes it through ``extra`` as ``exception``.
    rendered = record.exc_text or getattr(record, "exception", None)
    if rendered:
        event["exception"] = str(rendered)
    return event


def make_redaction_processor(redactor: LogRedactor) -> RecordProcessor:
    def redact(record: logging.LogRecord, event: EventDict) -> EventDict:
        for key in ("event", "exception", "fields"):
            if key in event:
                event[key] = redactor(event[key])
        return event

    return redact


class JsonLineFormatter(logging.Formatter):
    """Run the record processors and encode the result as one canonical JSON line."""

    def __init__(self, processors: list[RecordProcessor] | None = None) -> None:
        super().__init__()
        self.processors = processors if processors is not None else [add_base_fields]

    def format(self, record: logging.LogRecord) -> str:
        event: EventDict = {}
        for processor in self.processors:
            event = processor(record, event)
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def for_run(cls, run_id: str, *, redactor: LogRedactor | None) -> JsonLineFormatter:
        formatter = cls()
        formatter.processors = [
            add_base_fields,
            make_correlation_processor({"run_id": run_id}),
            add_extra_fields,
            add_exception,
        ]
        if redactor is not None:
            formatter.processors.append(make_redaction_processor(redactor))
        return formatter


# ---------------------------------------------------------------------------
# Queue plumbing and lifecycle
# ---------------------------------------------------------------------------


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Snapshot the correlation context on the caller's thread; never block on a full queue."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Render on the caller's thread: message args, traceback and scoped
        # correlation fields must not depend on state the listener thread sees.
        prepared = copy.copy(record)
        prepared.msg = record.getMessage()
        prepared.args = None
        if record.exc_info and not record.exc_text:
            prepared.exc_text = _TRACEBACK_FORMATTER.formatException(record.exc_info)
        prepared.exc_info = None
        scoped = get_correlation_context()
        if scoped:
            prepared.correlation = scoped
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


@dataclass(eq=False)
class StructuredLoggingHandle:
    """Runtime handle for an active structured logging setup."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    _queue: queue.Queue[object] = field(repr=False)
    _queue_handler: _DroppingQueueHandler = field(repr=False)
    _sinks: tuple[logging.Handler, ...] = field(repr=False)
    _listener: logging.handlers.QueueListener = field(repr=False)
    _closed: bool = field(default=False, init=False)
    _close_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._closed = True


class _ActiveHandle:
    """Process-wide slot for the current handle; shut down at interpreter exit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._hooked = False

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def replace(self, handle: StructuredLoggingHandle | None) -> StructuredLoggingHandle | None:
        with self._lock:
            previous, self._handle = self._handle, handle
            if handle is not None and not self._hooked:
                atexit.register(shutdown_logging)
                self._hooked = True
            return previous

    def release(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_active = _ActiveHandle()


def configure_structlog() -> None:
    """Route structlog events into stdlib logging so the JSON pipeline formats them."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Configure queue-backed structured logging for a single run.

    Any previously active handle is shut down first. The returned handle owns
    the listener thread; call ``shutdown_logging(handle)`` to flush and close.
    """

    previous = _active.replace(None)
    if previous is not None:
        previous.shutdown()

    log_path = config.log_path()
    logger_name = _non_empty(config.logger_name, "logger_name")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = config.resolved_level()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = JsonLineFormatter.for_run(
        log_path.parent.name,
        redactor=default_log_redactor if config.redact_secrets else None,
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=log_path.parent.name,
        log_path=log_path,
        _queue=log_queue,
        _queue_handler=queue_handler,
        _sinks=tuple(sinks),
        _listener=listener,
    )
    _active.replace(handle)
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Shutdown logging listener and close all sinks."""
    target = handle if handle is not None else _active.get()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _active.release(target)


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _active.get()


def get_correlation_context() -> dict[str, str]:
    """Return the current correlation context as a plain dictionary."""
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields; ``None`` unbinds a field inherited from outside."""
    scoped = get_correlation_context()
    for key, value in fields.items():
        if value is None:
            scoped.pop(key, None)
        else:
            scoped[_non_empty(key, "correlation key")] = _non_empty(value, key)
    token = _correlation.set(tuple(scoped.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "SecretRedactor",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "logging_config_from_mapping",
    "setup_structured_logging",
    "shutdown_logging",
]
