"""Build runtime component settings from a validated config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from nexus_verifier.control_plane.cache import ResultCache
from nexus_verifier.control_plane.scheduler import SchedulerConfig
from nexus_verifier.domain.models import ResourceLimits
from nexus_verifier.knowledge_plane.correlator import CorrelatorConfig, CorrelatorWeights
from nexus_verifier.observability.logging import LoggingConfig, logging_config_from_mapping
from nexus_verifier.reduction_plane.minimizer import Budget
from nexus_verifier.sandbox.executor import ExecutorSettings
from nexus_verifier.sandbox.network_policy import NetworkPolicy
from nexus_verifier.utils.retry import RetryPolicy
from nexus_verifier.verification_plane.scoring import ScoringConfig
from nexus_verifier.verification_plane.static_signals import (
    LintRunner,
    RuffLintRunner,
    SyntaxLintRunner,
    default_lint_runner,
)

_MIB = 1024 * 1024


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name, {})
    if not isinstance(section, Mapping):
        raise ValueError(f"config section {name!r} must be an object")
    return section


def scheduler_config_from(config: Mapping[str, Any]) -> SchedulerConfig:
    scheduler = _section(config, "scheduler")
    return SchedulerConfig(
        global_max_concurrency=int(scheduler["global_max_concurrency"]),
        tenant_max_concurrency=int(scheduler["tenant_max_concurrency"]),
        tenant_overrides=dict(scheduler.get("tenant_overrides", {})),
        max_queue_depth=int(scheduler["max_queue_depth"]),
        cancel_grace_seconds=float(scheduler["cancel_grace_seconds"]),
        timeout_slack_seconds=float(scheduler["timeout_slack_seconds"]),
        job_retention_seconds=float(scheduler["job_retention_seconds"]),
        privileged_tenants=frozenset(scheduler.get("privileged_tenants", ())),
    )


def retry_policy_from(config: Mapping[str, Any]) -> RetryPolicy:
    scheduler = _section(config, "scheduler")
    return RetryPolicy(
        max_attempts=int(scheduler["provisioning_max_attempts"]),
        base_delay_seconds=float(scheduler["retry_base_delay_seconds"]),
        max_delay_seconds=float(scheduler["retry_max_delay_seconds"]),
        jitter=float(scheduler["retry_jitter"]),
    )


def result_cache_from(config: Mapping[str, Any]) -> ResultCache:
    cache = _section(config, "cache")
    return ResultCache(
        ttl_seconds=float(cache["ttl_seconds"]),
        timeout_ttl_seconds=float(cache["timeout_ttl_seconds"]),
        max_entries=int(cache["max_entries"]),
    )


def network_policy_from(config: Mapping[str, Any]) -> NetworkPolicy:
    """``deny`` grants egress to nobody; ``allowlist`` to privileged tenants within their ceilings."""

    sandbox = _section(config, "sandbox")
    if sandbox.get("network_policy", "deny") == "deny":
        return NetworkPolicy()
    scheduler = _section(config, "scheduler")
    return NetworkPolicy(
        privileged_tenants=scheduler.get("privileged_tenants", ()),
        tenant_ceilings=sandbox.get("tenant_egress", {}),
    )


def executor_settings_from(config: Mapping[str, Any]) -> ExecutorSettings:
    sandbox = _section(config, "sandbox")
    paths = _section(config, "paths")
    return ExecutorSettings(
        workspace_root=Path(paths["workspace_root"]),
        artifact_root=Path(paths["artifact_root"]),
        use_unshare=bool(sandbox.get("use_unshare", False)),
        limit_address_space=bool(sandbox.get("limit_address_space", False)),
    )


def default_limits_from(config: Mapping[str, Any]) -> ResourceLimits:
    sandbox = _section(config, "sandbox")
    max_processes = int(sandbox.get("max_processes", 0))
    return ResourceLimits(
        timeout_seconds=float(sandbox["default_timeout_seconds"]),
        memory_bytes=int(sandbox["default_memory_mb"]) * _MIB,
        cpu_cores=float(sandbox["default_cpu_cores"]),
        max_output_bytes=int(sandbox["max_output_bytes"]),
        max_processes=max_processes or None,
    )


def budget_from(config: Mapping[str, Any]) -> Budget:
    """Zero means unbounded for both the call and the wall-clock budget."""

    minimizer = _section(config, "minimizer")
    max_calls = int(minimizer.get("max_oracle_calls", 0))
    max_seconds = float(minimizer.get("max_wall_clock_seconds", 0.0))
    return Budget(
        max_oracle_calls=max_calls or None,
        max_wall_clock_seconds=max_seconds or None,
        parallelism=int(minimizer.get("parallelism", 1)),
    )


def correlator_config_from(config: Mapping[str, Any]) -> CorrelatorConfig:
    correlator = _section(config, "correlator")
    weights = correlator.get("weights", {})
    return CorrelatorConfig(
        top_n=int(correlator["top_n"]),
        context_lines=int(correlator["context_lines"]),
        log_tail_lines=int(correlator["log_tail_lines"]),
        lookup_timeout_seconds=float(correlator["lookup_timeout_seconds"]),
        weights=CorrelatorWeights(
            proximity=float(weights.get("proximity", 0.6)),
            recency=float(weights.get("recency", 0.15)),
            similarity=float(weights.get("similarity", 0.25)),
        ),
    )


def scoring_config_from(config: Mapping[str, Any]) -> ScoringConfig:
    scoring = _section(config, "scoring")
    return ScoringConfig(
        weights={name: float(value) for name, value in scoring["weights"].items()},
        high_threshold=float(scoring["high_threshold"]),
        medium_threshold=float(scoring["medium_threshold"]),
        small_diff_lines=int(scoring["small_diff_lines"]),
        large_diff_lines=int(scoring["large_diff_lines"]),
        lint_tolerance=int(scoring["lint_tolerance"]),
        historical_prior=float(scoring["historical_prior"]),
        non_overlap_credit=float(scoring["non_overlap_credit"]),
    )


def lint_runner_from(config: Mapping[str, Any]) -> LintRunner:
    tool = _section(config, "scoring").get("lint_tool", "auto")
    if tool == "ruff":
        return RuffLintRunner()
    if tool == "syntax":
        return SyntaxLintRunner()
    return default_lint_runner()


def logging_config_from(config: Mapping[str, Any], *, run_id: str) -> LoggingConfig:
    return logging_config_from_mapping(_section(config, "observability"), run_id=run_id)


__all__ = [
    "budget_from",
    "correlator_config_from",
    "default_limits_from",
    "executor_settings_from",
    "lint_runner_from",
    "logging_config_from",
    "network_policy_from",
    "result_cache_from",
    "retry_policy_from",
    "scheduler_config_from",
    "scoring_config_from",
]
