"""Immutable value types exchanged between the engine's components.

Every type here is a frozen, slotted dataclass that validates itself in
``__post_init__`` and exposes a JSON-safe ``to_dict``. Request types are tagged
variants (``ExecutionRequest``, ``VerifyRequest``, ``MinimizeRequest``) rather
than loose mappings so each entry point states exactly what it consumes.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import NoReturn

from nexus_verifier.utils.hashing import canonical_json_digest, sha256_bytes, snapshot_digest

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MIB = 1024 * 1024
_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TENANT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
_FINGERPRINT_VERSION = 1


class ExecutionOutcome(StrEnum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"


class NetworkMode(StrEnum):
    DENY = "deny"
    ALLOWLIST = "allowlist"


class JobState(StrEnum):
    """Job lifecycle. Terminal states never transition further."""

    QUEUED = "queued"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_JOB_STATES


_TERMINAL_JOB_STATES = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED}
)


class MatchProvenance(StrEnum):
    STACK_FRAME = "stack_frame"
    FUZZY_SYMBOL = "fuzzy_symbol"
    SEMANTIC = "semantic"


class ConfidenceCategory(StrEnum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Ceilings applied to one execution. ``cpu_cores`` is a CPU share, not a pin."""

    timeout_seconds: float = 60.0
    memory_bytes: int = 512 * _MIB
    cpu_cores: float = 1.0
    cpu_time_seconds: float | None = None
    max_output_bytes: int = _MIB
    max_processes: int | None = 256

    def __post_init__(self) -> None:
        if not self.timeout_seconds > 0:
            _fail("limits.timeout_seconds", "must be > 0")
        if self.memory_bytes <= 0:
            _fail("limits.memory_bytes", "must be > 0")
        if not self.cpu_cores > 0:
            _fail("limits.cpu_cores", "must be > 0")
        if self.cpu_time_seconds is not None and not self.cpu_time_seconds > 0:
            _fail("limits.cpu_time_seconds", "must be > 0 when set")
        if self.max_output_bytes <= 0:
            _fail("limits.max_output_bytes", "must be > 0")
        if self.max_processes is not None and self.max_processes <= 0:
            _fail("limits.max_processes", "must be > 0 when set")

    def with_timeout(self, timeout_seconds: float) -> ResourceLimits:
        return replace(self, timeout_seconds=timeout_seconds)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "timeout_seconds": self.timeout_seconds,
            "memory_bytes": self.memory_bytes,
            "cpu_cores": self.cpu_cores,
            "cpu_time_seconds": self.cpu_time_seconds,
            "max_output_bytes": self.max_output_bytes,
            "max_processes": self.max_processes,
        }


@dataclass(frozen=True, slots=True)
class NetworkAccess:
    """Egress policy for one execution; deny unless an allow-list is granted."""

    mode: NetworkMode = NetworkMode.DENY
    allowlist: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        mode = NetworkMode(self.mode)
        entries = tuple(sorted({entry.strip().lower() for entry in self.allowlist}))
        if any(not entry for entry in entries):
            _fail("network.allowlist", "entries must be non-empty")
        if mode is NetworkMode.DENY and entries:
            _fail("network.allowlist", "must be empty when mode is 'deny'")
        if mode is NetworkMode.ALLOWLIST and not entries:
            _fail("network.allowlist", "must list at least one endpoint in 'allowlist' mode")
        object.__setattr__(self, "mode", mode)
        object.__setattr__(self, "allowlist", entries)

    @classmethod
    def deny(cls) -> NetworkAccess:
        return cls()

    @classmethod
    def allow(cls, *endpoints: str) -> NetworkAccess:
        return cls(mode=NetworkMode.ALLOWLIST, allowlist=tuple(endpoints))

    @property
    def grants_egress(self) -> bool:
        return self.mode is NetworkMode.ALLOWLIST

    def to_dict(self) -> dict[str, JSONValue]:
        return {"mode": self.mode.value, "allowlist": list(self.allowlist)}


@dataclass(frozen=True, slots=True)
class InlineFile:
    """A file materialized into the sandbox overlay before the command runs."""

    path: str
    content: bytes

    def __post_init__(self) -> None:
        _validate_relative_path(self.path, "inputs.path")
        if isinstance(self.content, str):
            object.__setattr__(self, "content", self.content.encode("utf-8"))
        if not isinstance(self.content, bytes):
            _fail("inputs.content", "must be bytes or str")

    @property
    def digest(self) -> str:
        return sha256_bytes(self.content)


@dataclass(frozen=True, slots=True)
class SnapshotRef:
    """Read-only base tree an execution overlays; ``digest`` fingerprints its contents."""

    root: Path
    digest: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root))
        if not _SHA256_RE.fullmatch(self.digest):
            _fail("snapshot.digest", "must be a lowercase SHA-256 hex digest")

    @classmethod
    def from_directory(cls, root: Path | str) -> SnapshotRef:
        resolved = Path(root).resolve(strict=True)
        return cls(root=resolved, digest=snapshot_digest(resolved))


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """Unit of sandboxed work.

    ``content_hash`` covers everything that can change what the command observes
    (argv, environment, snapshot digest, inline inputs, limits, network policy,
    working directory). The tenant is excluded; cache scoping by tenant happens in
    the cache key instead.
    """

    tenant_id: str
    command: tuple[str, ...]
    snapshot: SnapshotRef | None = None
    inputs: tuple[InlineFile, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    network: NetworkAccess = field(default_factory=NetworkAccess)
    workdir: str = "."
    content_hash: str = field(init=False)

    def __post_init__(self) -> None:
        _validate_tenant(self.tenant_id)
        command = _coerce_command(self.command, "command")
        env = _coerce_env(self.env)
        inputs = tuple(sorted(self.inputs, key=lambda item: item.path))
        paths = [item.path for item in inputs]
        if len(paths) != len(set(paths)):
            _fail("inputs", "paths must be unique")
        if self.workdir != ".":
            _validate_relative_path(self.workdir, "workdir")
        object.__setattr__(self, "command", command)
        object.__setattr__(self, "env", env)
        object.__setattr__(self, "inputs", inputs)
        object.__setattr__(self, "content_hash", canonical_json_digest(self.fingerprint()))

    def fingerprint(self) -> dict[str, JSONValue]:
        """Canonical payload hashed into ``content_hash``."""

        return {
            "version": _FINGERPRINT_VERSION,
            "command": list(self.command),
            "env": [[key, value] for key, value in self.env],
            "snapshot": self.snapshot.digest if self.snapshot is not None else None,
            "inputs": [[item.path, item.digest] for item in self.inputs],
            "limits": self.limits.to_dict(),
            "network": self.network.to_dict(),
            "workdir": self.workdir,
        }

    def to_dict(self) -> dict[str, JSONValue]:
        payload = self.fingerprint()
        payload["tenant_id"] = self.tenant_id
        payload["content_hash"] = self.content_hash
        return payload


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    name: str
    sha256: str
    size_bytes: int
    location: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "location": self.location,
        }


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Normalized outcome of one execution. A non-zero exit is still ``COMPLETED``."""

    content_hash: str
    outcome: ExecutionOutcome
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    artifacts: tuple[ArtifactRef, ...] = ()
    termination_reason: str | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcome", ExecutionOutcome(self.outcome))
        if self.duration_ms < 0:
            _fail("result.duration_ms", "must be >= 0")

    @property
    def succeeded(self) -> bool:
        return self.outcome is ExecutionOutcome.COMPLETED and self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.outcome is ExecutionOutcome.TIMED_OUT

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "content_hash": self.content_hash,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdout_truncated": self.stdout_truncated,
            "stderr_truncated": self.stderr_truncated,
            "duration_ms": self.duration_ms,
            "termination_reason": self.termination_reason,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
        }


@dataclass(frozen=True, slots=True)
class JobHandle:
    """Opaque reference returned by ``submit``."""

    job_id: str
    tenant_id: str
    content_hash: str
    group_id: str | None = None


@dataclass(frozen=True, slots=True)
class EvidenceCitation:
    """A (file, line range) a patch rationale points at."""

    path: str
    start_line: int
    end_line: int

    def __post_init__(self) -> None:
        if not isinstance(self.path, str) or not self.path.strip():
            _fail("evidence.path", "must be a non-empty string")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> EvidenceCitation:
        start = raw.get("start_line", raw.get("line"))
        end = raw.get("end_line", start)
        if not isinstance(start, int) or not isinstance(end, int):
            _fail("evidence", f"start_line/end_line must be integers in {dict(raw)!r}")
        return cls(path=str(raw.get("path", "")), start_line=start, end_line=end)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "start_line": self.start_line, "end_line": self.end_line}


@dataclass(frozen=True, slots=True)
class CandidateLocation:
    path: str
    start_line: int
    end_line: int
    score: float
    provenance: MatchProvenance
    depth: int | None = None
    symbol: str | None = None
    components: tuple[tuple[str, float], ...] = ()

    def __post_init__(self) -> None:
        if self.start_line < 1 or self.end_line < self.start_line:
            _fail("candidate", f"invalid line range {self.start_line}-{self.end_line}")
        if not 0.0 <= self.score <= 1.0:
            _fail("candidate.score", "must be within [0, 1]")

    def overlaps(self, other: CandidateLocation) -> bool:
        return (
            self.path == other.path
            and self.start_line <= other.end_line
            and other.start_line <= self.end_line
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "path": self.path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "score": round(self.score, 6),
            "provenance": self.provenance.value,
            "depth": self.depth,
            "symbol": self.symbol,
            "components": {name: round(value, 6) for name, value in self.components},
        }


@dataclass(frozen=True, slots=True)
class SignalScore:
    """One weighted signal in a confidence breakdown."""

    name: str
    raw: float | None
    normalized: float
    weight: float
    detail: str = ""

    @property
    def contribution(self) -> float:
        return self.normalized * self.weight

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "raw": self.raw,
            "normalized": round(self.normalized, 6),
            "weight": round(self.weight, 6),
            "contribution": round(self.contribution * 100.0, 4),
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class ConfidenceReport:
    score: float
    category: ConfidenceCategory
    breakdown: tuple[SignalScore, ...]

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 100.0:
            _fail("report.score", "must be within [0, 100]")

    def signal(self, name: str) -> SignalScore:
        for item in self.breakdown:
            if item.name == name:
                return item
        raise KeyError(name)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "score": round(self.score, 4),
            "category": self.category.value,
            "breakdown": [item.to_dict() for item in self.breakdown],
        }


@dataclass(frozen=True, slots=True)
class VerifyRequest:
    """Apply ``patch_diff`` to ``repo_snapshot`` and run the test commands in isolation."""

    tenant_id: str
    repo_snapshot: Path
    patch_diff: str
    test_commands: tuple[tuple[str, ...], ...] = ()
    combined_command: tuple[str, ...] | None = None
    timeout_seconds: float = 300.0
    limits: ResourceLimits | None = None

    def __post_init__(self) -> None:
        _validate_tenant(self.tenant_id)
        object.__setattr__(self, "repo_snapshot", Path(self.repo_snapshot))
        commands = tuple(
            _coerce_command(item, f"test_commands[{index}]")
            for index, item in enumerate(self.test_commands)
        )
        combined = (
            _coerce_command(self.combined_command, "combined_command")
            if self.combined_command is not None
            else None
        )
        if not commands and combined is None:
            _fail("test_commands", "at least one test command is required")
        if not self.timeout_seconds > 0:
            _fail("timeout_seconds", "must be > 0")
        object.__setattr__(self, "test_commands", commands)
        object.__setattr__(self, "combined_command", combined)

    @property
    def distinct_commands(self) -> tuple[tuple[str, ...], ...]:
        if self.combined_command is not None:
            return (self.combined_command,)
        return tuple(dict.fromkeys(self.test_commands))


@dataclass(frozen=True, slots=True)
class MinimizeRequest:
    """Shrink ``input_text`` while ``command`` keeps failing the same way.

    ``command`` runs with the candidate written to ``input_path`` inside the
    sandbox overlay. ``expected_exit_codes`` of ``None`` treats any non-zero exit
    as the failure; ``output_pattern`` additionally requires a regex match on
    stdout or stderr. A timed-out run reproduces the failure unless
    ``timeout_is_failure`` is cleared; a crash (signal or resource-limit kill) only
    does with ``crash_is_failure``.
    """

    tenant_id: str
    input_text: str
    command: tuple[str, ...]
    input_path: str = "input.txt"
    snapshot: Path | None = None
    granularity: str = "lines"
    expected_exit_codes: tuple[int, ...] | None = None
    output_pattern: str | None = None
    timeout_is_failure: bool = True
    crash_is_failure: bool = False
    max_oracle_calls: int | None = None
    max_wall_clock_seconds: float | None = None
    limits: ResourceLimits | None = None

    def __post_init__(self) -> None:
        _validate_tenant(self.tenant_id)
        object.__setattr__(self, "command", _coerce_command(self.command, "command"))
        _validate_relative_path(self.input_path, "input_path")
        if self.granularity not in {"lines", "chars"}:
            _fail("granularity", "must be 'lines' or 'chars'")
        if self.output_pattern is not None:
            try:
                re.compile(self.output_pattern)
            except re.error as exc:
                _fail("output_pattern", f"invalid regular expression: {exc}")
        if self.snapshot is not None:
            object.__setattr__(self, "snapshot", Path(self.snapshot))


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _validate_tenant(tenant_id: object) -> None:
    if not isinstance(tenant_id, str) or not _TENANT_RE.fullmatch(tenant_id):
        _fail("tenant_id", f"invalid tenant id {tenant_id!r}")


def _validate_relative_path(value: object, path: str) -> None:
    if not isinstance(value, str) or not value:
        _fail(path, "must be a non-empty relative POSIX path")
    posix_path = PurePosixPath(value)
    if posix_path.is_absolute() or "\\" in value:
        _fail(path, f"must be a relative POSIX path, got {value!r}")
    if any(part in {"", ".", ".."} for part in posix_path.parts):
        _fail(path, f"path is not safe: {value!r}")


def _coerce_command(value: object, path: str) -> tuple[str, ...]:
    if isinstance(value, str):
        argv = tuple(shlex.split(value))
    elif isinstance(value, Sequence):
        argv = tuple(value)
    else:
        _fail(path, f"must be a string or argv sequence, got {type(value).__name__}")
    if not argv:
        _fail(path, "must not be empty")
    if any(not isinstance(item, str) or not item for item in argv):
        _fail(path, "argv items must be non-empty strings")
    return argv


def _coerce_env(value: object) -> tuple[tuple[str, str], ...]:
    items = value.items() if isinstance(value, Mapping) else value
    env: dict[str, str] = {}
    for key, item in items:  # type: ignore[union-attr]
        if not isinstance(key, str) or not _ENV_KEY_RE.fullmatch(key):
            _fail("env", f"invalid variable name {key!r}")
        if not isinstance(item, str):
            _fail("env", f"value for {key!r} must be a string")
        env[key] = item
    return tuple(sorted(env.items()))


__all__ = [
    "ArtifactRef",
    "CandidateLocation",
    "ConfidenceCategory",
    "ConfidenceReport",
    "EvidenceCitation",
    "ExecutionOutcome",
    "ExecutionRequest",
    "ExecutionResult",
    "InlineFile",
    "JSONScalar",
    "JSONValue",
    "JobHandle",
    "JobState",
    "MatchProvenance",
    "MinimizeRequest",
    "NetworkAccess",
    "NetworkMode",
    "ResourceLimits",
    "SignalScore",
    "SnapshotRef",
    "VerifyRequest",
]
