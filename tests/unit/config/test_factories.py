"""Unit tests for building runtime settings from a validated config mapping."""

from __future__ import annotations

from pathlib import Path

import pytest

from nexus_verifier.config.factories import (
    budget_from,
    correlator_config_from,
    default_limits_from,
    executor_settings_from,
    lint_runner_from,
    network_policy_from,
    result_cache_from,
    retry_policy_from,
    scheduler_config_from,
    scoring_config_from,
)
from nexus_verifier.config.schema import apply_profile_overlay, default_config, merge_config
from nexus_verifier.domain.models import NetworkAccess
from nexus_verifier.verification_plane.scoring import ScoringConfig
from nexus_verifier.verification_plane.static_signals import RuffLintRunner, SyntaxLintRunner


def test_scheduler_and_retry_settings_follow_config() -> None:
    config = merge_config(
        default_config(),
        {
            "scheduler": {
                "tenant_overrides": {"ci": 6},
                "privileged_tenants": ["ops"],
                "provisioning_max_attempts": 5,
            }
        },
    )

    scheduler = scheduler_config_from(config)
    retry = retry_policy_from(config)

    assert scheduler.global_max_concurrency == 8
    assert scheduler.tenant_limit("ci") == 6
    assert scheduler.tenant_limit("other") == 4
    assert scheduler.privileged_tenants == frozenset({"ops"})
    assert retry.max_attempts == 5
    assert retry.base_delay_seconds == 0.5


def test_budget_zero_means_unbounded() -> None:
    defaults = budget_from(default_config())
    permissive = budget_from(apply_profile_overlay(default_config(), "permissive"))

    assert (defaults.max_oracle_calls, defaults.max_wall_clock_seconds) == (500, 600.0)
    assert permissive.max_oracle_calls is None
    assert permissive.max_wall_clock_seconds is None


def test_default_limits_convert_units() -> None:
    limits = default_limits_from(default_config())
    no_process_cap = merge_config(default_config(), {"sandbox": {"max_processes": 0}})
    unlimited = default_limits_from(no_process_cap)

    assert limits.memory_bytes == 512 * 1024 * 1024
    assert limits.timeout_seconds == 60.0
    assert limits.max_processes == 256
    assert unlimited.max_processes is None


def test_deny_policy_grants_egress_to_nobody() -> None:
    config = merge_config(
        default_config(),
        {
            "scheduler": {"privileged_tenants": ["ops"]},
            "sandbox": {"tenant_egress": {"ops": ["pypi.org"]}},
        },
    )

    denied = network_policy_from(config)
    allowlisted = network_policy_from(
        merge_config(config, {"sandbox": {"network_policy": "allowlist"}})
    )

    assert not denied.evaluate("ops", NetworkAccess.allow("pypi.org")).allowed
    assert allowlisted.evaluate("ops", NetworkAccess.allow("pypi.org")).allowed
    assert not allowlisted.evaluate("ops", NetworkAccess.allow("github.com")).allowed


def test_executor_settings_and_cache(tmp_path: Path) -> None:
    config = merge_config(
        default_config(),
        {
            "paths": {
                "workspace_root": str(tmp_path / "ws"),
                "artifact_root": str(tmp_path / "artifacts"),
            },
            "sandbox": {"use_unshare": True},
            "cache": {"max_entries": 2},
        },
    )

    settings = executor_settings_from(config)
    cache = result_cache_from(config)

    assert settings.workspace_root == tmp_path / "ws"
    assert settings.use_unshare
    assert not settings.limit_address_space
    assert cache.stats().entries == 0


def test_correlator_and_scoring_defaults_match_component_defaults() -> None:
    correlator = correlator_config_from(default_config())
    scoring = scoring_config_from(default_config())

    assert correlator.top_n == 10
    assert correlator.weights.proximity == 0.6
    assert scoring.weights == ScoringConfig().weights
    assert scoring.high_threshold == 80.0


@pytest.mark.parametrize(
    ("tool", "expected"),
    [("ruff", RuffLintRunner), ("syntax", SyntaxLintRunner)],
)
def test_lint_runner_selection(tool: str, expected: type) -> None:
    config = merge_config(default_config(), {"scoring": {"lint_tool": tool}})
    assert isinstance(lint_runner_from(config), expected)
