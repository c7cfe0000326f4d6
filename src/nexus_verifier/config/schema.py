"""
nexus-verifier — configuration schema and validation.

Purpose
- Own the built-in defaults, the ``strict``/``permissive`` profiles and the
  schema version that ``verifier.toml`` is checked against.
- Describe every section declaratively (``_SCHEMA``) so one walker can report all
  violations at once, each with a dotted field path.

Profile overlays reuse the same field specs in partial mode: fields are optional
and cross-field rules only run once the overlay has been merged onto a full config.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, Protocol, TypedDict

from nexus_verifier.constants import (
    ARTIFACTS_DIR,
    AUDIT_LOG_PATH,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_SANDBOX_IMAGE,
    LOGS_DIR,
    WORKSPACES_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")

_PROFILE_NAME = re.compile(r"^[a-z][a-z0-9_-]*$")
_TENANT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")
_CAMEL_HUMP = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[^a-z0-9]+")

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "credentials"}
)
_SECRET_FRAGMENTS: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Relative values resolve against the directory holding verifier.toml.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace_root"),
    ("paths", "artifact_root"),
    ("paths", "audit_log"),
    ("observability", "log_dir"),
)

SCORING_SIGNALS: Final[tuple[str, ...]] = ("test_pass", "lint", "diff_size", "evidence", "historical")
CORRELATOR_SIGNALS: Final[tuple[str, ...]] = ("proximity", "recency", "similarity")


class MetaConfig(TypedDict):
    schema_version: int


class SchedulerSection(TypedDict):
    global_max_concurrency: int
    tenant_max_concurrency: int
    tenant_overrides: dict[str, int]
    max_queue_depth: int
    cancel_grace_seconds: float
    timeout_slack_seconds: float
    job_retention_seconds: float
    privileged_tenants: list[str]
    provisioning_max_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    retry_jitter: float


class CacheSection(TypedDict):
    ttl_seconds: float
    timeout_ttl_seconds: float
    max_entries: int


class SandboxSection(TypedDict):
    backend: Literal["none", "docker", "podman"]
    image: str
    network_policy: Literal["deny", "allowlist"]
    egress_network: str
    tenant_egress: dict[str, list[str]]
    use_unshare: bool
    limit_address_space: bool
    default_timeout_seconds: float
    default_memory_mb: int
    default_cpu_cores: float
    max_output_bytes: int
    max_processes: int


class MinimizerSection(TypedDict):
    max_oracle_calls: int
    max_wall_clock_seconds: float
    parallelism: int


class CorrelatorSection(TypedDict):
    top_n: int
    context_lines: int
    log_tail_lines: int
    lookup_timeout_seconds: float
    weights: dict[str, float]


class ScoringSection(TypedDict):
    weights: dict[str, float]
    high_threshold: float
    medium_threshold: float
    small_diff_lines: int
    large_diff_lines: int
    lint_tolerance: int
    lint_tool: Literal["auto", "ruff", "syntax"]
    historical_prior: float
    non_overlap_credit: float


class PathsConfig(TypedDict):
    workspace_root: str
    artifact_root: str
    audit_log: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    scheduler: dict[str, object]
    cache: dict[str, object]
    sandbox: dict[str, object]
    minimizer: dict[str, object]
    correlator: dict[str, object]
    scoring: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class VerifierConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerSection
    cache: CacheSection
    sandbox: SandboxSection
    minimizer: MinimizerSection
    correlator: CorrelatorSection
    scoring: ScoringSection
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[VerifierConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "scheduler": {
        "global_max_concurrency": 8,
        "tenant_max_concurrency": 4,
        "tenant_overrides": {},
        "max_queue_depth": 64,
        "cancel_grace_seconds": 5.0,
        "timeout_slack_seconds": 1.0,
        "job_retention_seconds": 3600.0,
        "privileged_tenants": [],
        "provisioning_max_attempts": 3,
        "retry_base_delay_seconds": 0.5,
        "retry_max_delay_seconds": 10.0,
        "retry_jitter": 0.1,
    },
    "cache": {
        "ttl_seconds": 3600.0,
        "timeout_ttl_seconds": 300.0,
        "max_entries": 4096,
    },
    "sandbox": {
        "backend": "none",
        "image": DEFAULT_SANDBOX_IMAGE,
        "network_policy": "deny",
        "egress_network": "bridge",
        "tenant_egress": {},
        "use_unshare": False,
        "limit_address_space": False,
        "default_timeout_seconds": 60.0,
        "default_memory_mb": 512,
        "default_cpu_cores": 1.0,
        "max_output_bytes": 1024 * 1024,
        "max_processes": 256,
    },
    "minimizer": {
        "max_oracle_calls": 500,
        "max_wall_clock_seconds": 600.0,
        "parallelism": 1,
    },
    "correlator": {
        "top_n": 10,
        "context_lines": 5,
        "log_tail_lines": 20,
        "lookup_timeout_seconds": 10.0,
        "weights": {"proximity": 0.6, "recency": 0.15, "similarity": 0.25},
    },
    "scoring": {
        "weights": {
            "test_pass": 0.50,
            "lint": 0.15,
            "diff_size": 0.10,
            "evidence": 0.15,
            "historical": 0.10,
        },
        "high_threshold": 80.0,
        "medium_threshold": 50.0,
        "small_diff_lines": 10,
        "large_diff_lines": 400,
        "lint_tolerance": 5,
        "lint_tool": "auto",
        "historical_prior": 0.5,
        "non_overlap_credit": 0.5,
    },
    "paths": {
        "workspace_root": f"{WORKSPACES_DIR}/",
        "artifact_root": f"{ARTIFACTS_DIR}/",
        "audit_log": str(AUDIT_LOG_PATH),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": f"{LOGS_DIR}/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "scheduler": {"max_queue_depth": 16, "tenant_max_concurrency": 2},
            "sandbox": {"network_policy": "deny", "limit_address_space": True},
            "minimizer": {"max_oracle_calls": 200},
        },
        "permissive": {
            "scheduler": {"max_queue_depth": 256},
            "sandbox": {"network_policy": "allowlist"},
            "minimizer": {"max_oracle_calls": 0, "max_wall_clock_seconds": 0.0},
        },
    },
}




# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One violation, addressed by dotted field path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when a config, or the profile selected for it, does not validate."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        listing = "\n".join(f"- {issue.path}: {issue.message}" for issue in self.issues)
        super().__init__(f"invalid config:\n{listing or 'unknown validation failure'}")

    @classmethod
    def single(cls, path: str, message: str) -> ConfigValidationError:
        return cls((ConfigValidationIssue(path, message),))


class _Issues(list[ConfigValidationIssue]):
    def fail(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path, message))


# ---------------------------------------------------------------------------
# Field specs
# ---------------------------------------------------------------------------


class _Spec(Protocol):
    def parse(self, value: object, path: str, issues: _Issues) -> Any: ...


@dataclass(frozen=True, slots=True)
class _Int:
    minimum: int | None = None

    def parse(self, value: object, path: str, issues: _Issues) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.fail(path, f"expected integer, got {type(value).__name__}")
            return None
        if self.minimum is not None and value < self.minimum:
            issues.fail(path, f"must be >= {self.minimum}")
            return None
        return value


@dataclass(frozen=True, slots=True)
class _Number:
    minimum: float | None = None
    maximum: float | None = None

    def parse(self, value: object, path: str, issues: _Issues) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.fail(path, f"expected number, got {type(value).__name__}")
            return None
        number = float(value)
        if not math.isfinite(number):
            issues.fail(path, "must be finite")
            return None
        if self.minimum is not None and number < self.minimum:
            issues.fail(path, f"must be >= {self.minimum}")
            return None
        if self.maximum is not None and number > self.maximum:
            issues.fail(path, f"must be <= {self.maximum}")
            return None
        return number


@dataclass(frozen=True, slots=True)
class _Text:
    filesystem: bool = False

    def parse(self, value: object, path: str, issues: _Issues) -> str | None:
        if not isinstance(value, str):
            issues.fail(path, f"expected string, got {type(value).__name__}")
            return None
        text = value.strip()
        if not text:
            issues.fail(path, "must not be empty")
            return None
        if self.filesystem and "\x00" in text:
            issues.fail(path, "must not contain NUL bytes")
            return None
        return text


_TEXT: Final = _Text()
_PATH: Final = _Text(filesystem=True)


@dataclass(frozen=True, slots=True)
class _Choice:
    options: tuple[str, ...]

    def parse(self, value: object, path: str, issues: _Issues) -> str | None:
        text = _TEXT.parse(value, path, issues)
        if text is None or text in self.options:
            return text
        expected = ", ".join(sorted(self.options))
        issues.fail(path, f"invalid value {text!r}; expected one of: {expected}")
        return None


class _Flag:
    def parse(self, value: object, path: str, issues: _Issues) -> bool | None:
        if isinstance(value, bool):
            return value
        issues.fail(path, f"expected boolean, got {type(value).__name__}")
        return None


class _TenantId:
    def parse(self, value: object, path: str, issues: _Issues) -> str | None:
        text = _TEXT.parse(value, path, issues)
        if text is None or _TENANT_ID.fullmatch(text):
            return text
        issues.fail(path, "must be a tenant id ([A-Za-z0-9][A-Za-z0-9_.-]*)")
        return None


_FLAG: Final = _Flag()
_TENANT: Final = _TenantId()


@dataclass(frozen=True, slots=True)
class _ListOf:
    item: _Spec
    as_set: bool = False

    def parse(self, value: object, path: str, issues: _Issues) -> list[Any] | None:
        if not isinstance(value, list):
            issues.fail(path, f"expected array, got {type(value).__name__}")
            return None
        parsed = [self.item.parse(entry, f"{path}[{index}]", issues) for index, entry in enumerate(value)]
        kept = [entry for entry in parsed if entry is not None]
        return sorted(set(kept)) if self.as_set else kept


@dataclass(frozen=True, slots=True)
class _PerTenant:
    """Mapping keyed by tenant id; every value is checked with ``value``."""

    value: _Spec

    def parse(self, value: object, path: str, issues: _Issues) -> dict[str, Any] | None:
        mapping = _as_mapping(value, path, issues)
        if mapping is None:
            return None
        out: dict[str, Any] = {}
        for tenant in sorted(mapping):
            entry_path = _join(path, tenant)
            if _TENANT.parse(tenant, entry_path, issues) is None:
                continue
            parsed = self.value.parse(mapping[tenant], entry_path, issues)
            if parsed is not None:
                out[tenant] = parsed
        return out


@dataclass(frozen=True, slots=True)
class _Section:
    """Object with a fixed key set. Unknown keys are errors; missing keys too unless ``optional``."""

    members: Mapping[str, _Spec]
    optional: bool = False

    def parse(self, value: object, path: str, issues: _Issues) -> dict[str, Any] | None:
        mapping = _as_mapping(value, path, issues)
        if mapping is None:
            return None
        for key in sorted(mapping.keys() - self.members.keys()):
            message = "embedded secret values are forbidden" if _is_secret_key(key) else "unknown field"
            issues.fail(_join(path, key), message)
        if not self.optional:
            for key in sorted(self.members.keys() - mapping.keys()):
                issues.fail(_join(path, key), "missing required field")

        out: dict[str, Any] = {}
        for key in sorted(self.members.keys() & mapping.keys()):
            parsed = self.members[key].parse(mapping[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
        return out

    def relaxed(self) -> _Section:
        """Same checks with every key optional, at every depth."""

        return _Section(
            {
                key: spec.relaxed() if isinstance(spec, _Section) else spec
                for key, spec in self.members.items()
            },
            optional=True,
        )


def _weights(signals: tuple[str, ...]) -> _Section:
    return _Section({name: _Number(minimum=0.0) for name in signals}, optional=True)


_SCHEMA: Final = _Section(
    {
        "meta": _Section({"schema_version": _Int(minimum=1)}),
        "scheduler": _Section(
            {
                "global_max_concurrency": _Int(minimum=1),
                "tenant_max_concurrency": _Int(minimum=1),
                "tenant_overrides": _PerTenant(_Int(minimum=1)),
                "max_queue_depth": _Int(minimum=0),
                "cancel_grace_seconds": _Number(minimum=0.0),
                "timeout_slack_seconds": _Number(minimum=0.0),
                "job_retention_seconds": _Number(minimum=0.001),
                "privileged_tenants": _ListOf(_TENANT, as_set=True),
                "provisioning_max_attempts": _Int(minimum=1),
                "retry_base_delay_seconds": _Number(minimum=0.0),
                "retry_max_delay_seconds": _Number(minimum=0.0),
                "retry_jitter": _Number(minimum=0.0, maximum=0.99),
            }
        ),
        "cache": _Section(
            {
                "ttl_seconds": _Number(minimum=0.001),
                "timeout_ttl_seconds": _Number(minimum=0.001),
                "max_entries": _Int(minimum=1),
            }
        ),
        "sandbox": _Section(
            {
                "backend": _Choice(("none", "docker", "podman")),
                "image": _TEXT,
                "network_policy": _Choice(("deny", "allowlist")),
                "egress_network": _TEXT,
                "tenant_egress": _PerTenant(_ListOf(_TEXT)),
                "use_unshare": _FLAG,
                "limit_address_space": _FLAG,
                "default_timeout_seconds": _Number(minimum=0.001),
                "default_memory_mb": _Int(minimum=16),
                "default_cpu_cores": _Number(minimum=0.01),
                "max_output_bytes": _Int(minimum=1024),
                "max_processes": _Int(minimum=0),
            }
        ),
        "minimizer": _Section(
            {
                "max_oracle_calls": _Int(minimum=0),
                "max_wall_clock_seconds": _Number(minimum=0.0),
                "parallelism": _Int(minimum=1),
            }
        ),
        "correlator": _Section(
            {
                "top_n": _Int(minimum=1),
                "context_lines": _Int(minimum=0),
                "log_tail_lines": _Int(minimum=0),
                "lookup_timeout_seconds": _Number(minimum=0.001),
                "weights": _weights(CORRELATOR_SIGNALS),
            }
        ),
        "scoring": _Section(
            {
                "weights": _weights(SCORING_SIGNALS),
                "high_threshold": _Number(minimum=0.0, maximum=100.0),
                "medium_threshold": _Number(minimum=0.0, maximum=100.0),
                "small_diff_lines": _Int(minimum=0),
                "large_diff_lines": _Int(minimum=1),
                "lint_tolerance": _Int(minimum=1),
                "lint_tool": _Choice(("auto", "ruff", "syntax")),
                "historical_prior": _Number(minimum=0.0, maximum=1.0),
                "non_overlap_credit": _Number(minimum=0.0, maximum=1.0),
            }
        ),
        "paths": _Section(
            {"workspace_root": _PATH, "artifact_root": _PATH, "audit_log": _PATH}
        ),
        "observability": _Section(
            {
                "log_level": _Choice(("DEBUG", "INFO", "WARNING", "ERROR")),
                "log_dir": _PATH,
                "log_to_stdout": _FLAG,
                "redact_secrets": _FLAG,
            }
        ),
    }
)
_OVERLAY_SCHEMA: Final = _SCHEMA.relaxed()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def default_config() -> VerifierConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Say which side needs upgrading when ``meta.schema_version`` does not match."""

    if found_version == ConfigSchemaVersion:
        return "schema version is current"
    if found_version < ConfigSchemaVersion:
        relation, remedy = "older", "upgrade verifier.toml to the current schema"
    else:
        relation, remedy = "newer", "upgrade the nexus-verifier runtime"
    return f"schema version {found_version} is {relation} than supported {ConfigSchemaVersion}; {remedy}"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; non-mapping values replace."""

    merged: dict[str, Any] = _plain(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile onto ``config`` and validate the result."""

    base = merge_config({}, config)
    selected = (profile or "").strip()
    if not selected:
        return base
    profiles = base.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError.single("profiles", "profiles section is required")
    if selected not in profiles:
        raise ConfigValidationError.single("profiles", f"profile {selected!r} is not defined")
    overlay = profiles[selected]
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError.single(f"profiles.{selected}", "profile overlay must be an object")
    return assert_valid_config(merge_config(base, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check ``config`` against the schema, collecting every issue rather than stopping at the first."""

    issues = _Issues()
    root = _as_mapping(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    sections = {key: value for key, value in root.items() if key != "profiles"}
    normalized: dict[str, Any] = _SCHEMA.parse(sections, "", issues) or {}
    version = normalized.get("meta", {}).get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.fail("meta.schema_version", migration_guidance(version))
    for path, message in _cross_field_issues(normalized):
        issues.fail(path, message)

    if "profiles" in root:
        profiles = _parse_profiles(root["profiles"], issues)
        if profiles is not None:
            normalized["profiles"] = profiles
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected and selected not in normalized.get("profiles", {}):
        issues.fail("profiles", f"profile {selected!r} is not defined")

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys replaced by ``<redacted>``, for logs and CLI output."""

    if not isinstance(config, Mapping):
        return {}
    redacted: dict[str, Any] = _redacted(config)
    return redacted


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _cross_field_issues(config: Mapping[str, Any]) -> Iterator[tuple[str, str]]:
    scheduler = config.get("scheduler", {})
    base_delay = scheduler.get("retry_base_delay_seconds", 0.0)
    if scheduler.get("retry_max_delay_seconds", math.inf) < base_delay:
        yield "scheduler.retry_max_delay_seconds", "must be >= retry_base_delay_seconds"

    scoring = config.get("scoring", {})
    high, medium = scoring.get("high_threshold"), scoring.get("medium_threshold")
    if high is not None and medium is not None and medium > high:
        yield "scoring.medium_threshold", "must be <= high_threshold"
    small, large = scoring.get("small_diff_lines"), scoring.get("large_diff_lines")
    if small is not None and large is not None and large <= small:
        yield "scoring.large_diff_lines", "must be > small_diff_lines"

    for section in ("scoring", "correlator"):
        weights = config.get(section, {}).get("weights")
        if weights and sum(weights.values()) <= 0:
            yield f"{section}.weights", "at least one weight must be positive"

    sandbox = config.get("sandbox", {})
    if sandbox.get("backend") in {"docker", "podman"} and not sandbox.get("image"):
        yield "sandbox.image", "container backends require an image"


def _parse_profiles(value: object, issues: _Issues) -> dict[str, Any] | None:
    profiles = _as_mapping(value, "profiles", issues)
    if profiles is None:
        return None
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        path = _join("profiles", name)
        if not _PROFILE_NAME.fullmatch(name):
            issues.fail(path, "profile names must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_mapping(profiles[name], path, issues)
        if overlay is None:
            continue
        if "meta" in overlay or "profiles" in overlay:
            issues.fail(path, "profiles may not override meta or nest profiles")
            continue
        out[name] = _OVERLAY_SCHEMA.parse(overlay, path, issues)
    return out


def _as_mapping(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.fail(path, f"expected object, got {type(value).__name__}")
        return None
    for key in value:
        if not isinstance(key, str):
            issues.fail(path, f"object key must be string, got {type(key).__name__}")
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _is_secret_key(key: str) -> bool:
    snake = _SEPARATORS.sub("_", _CAMEL_HUMP.sub(r"\1_\2", key.strip()).lower()).strip("_")
    if any(fragment in snake for fragment in _SECRET_FRAGMENTS):
        return True
    return not _SECRET_WORDS.isdisjoint(snake.split("_"))


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key, value in overlay.items():
        current = target.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            _merge_into(current, value)
        else:
            target[key] = _plain(value)


def _plain(value: object) -> Any:
    # Nested mappings become plain dicts with sorted string keys.
    if isinstance(value, Mapping):
        return {key: _plain(value[key]) for key in sorted(k for k in value if isinstance(k, str))}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_plain(item) for item in value)
    return copy.deepcopy(value)


def _redacted(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _is_secret_key(key) else _redacted(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redacted(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "CORRELATOR_SIGNALS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ProfileOverlay",
    "SCORING_SIGNALS",
    "VerifierConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
