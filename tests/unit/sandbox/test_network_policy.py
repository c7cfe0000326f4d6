"""Unit tests for egress admission and in-sandbox proxy steering."""

from __future__ import annotations

import pytest

from nexus_verifier.domain.errors import NetworkPolicyViolationError
from nexus_verifier.domain.models import NetworkAccess
from nexus_verifier.sandbox.network_policy import (
    BLACKHOLE_PROXY,
    NetworkPolicy,
    host_permitted,
    sandbox_network_environment,
)


def _policy() -> NetworkPolicy:
    return NetworkPolicy(
        privileged_tenants=("tenant-priv", "tenant-open"),
        tenant_ceilings={"tenant-priv": ("*.pypi.org", "pypi.org", "10.0.0.0/8")},
    )


def test_deny_is_always_admitted() -> None:
    decision = _policy().evaluate("tenant-a", NetworkAccess.deny())
    assert decision.allowed
    assert decision.reason == "deny-by-default"


def test_unprivileged_tenant_cannot_request_egress() -> None:
    policy = _policy()
    decision = policy.evaluate("tenant-a", NetworkAccess.allow("pypi.org"))

    assert not decision.allowed
    assert "privileged" in decision.reason
    with pytest.raises(NetworkPolicyViolationError, match="tenant-a"):
        policy.enforce("tenant-a", NetworkAccess.allow("pypi.org"))


@pytest.mark.parametrize(
    ("endpoints", "allowed"),
    [
        (("pypi.org",), True),
        (("files.pypi.org",), True),
        (("*.mirror.pypi.org",), True),
        (("10.1.2.0/24",), True),
        (("10.1.2.3",), True),
        (("github.com",), False),
        (("*.org",), False),
        (("192.168.0.0/16",), False),
    ],
)
def test_privileged_tenant_is_held_to_its_ceiling(
    endpoints: tuple[str, ...], allowed: bool
) -> None:
    decision = _policy().evaluate("tenant-priv", NetworkAccess.allow(*endpoints))
    assert decision.allowed is allowed
    assert decision.endpoints == tuple(sorted(endpoints))


def test_privileged_tenant_without_ceiling_is_admitted() -> None:
    decision = _policy().enforce("tenant-open", NetworkAccess.allow("github.com"))
    assert decision.allowed
    assert decision.reason == "privileged allow-list"


@pytest.mark.parametrize("endpoint", ["https://pypi.org", "pypi.org/simple", "*."])
def test_malformed_allow_list_entries_are_rejected(endpoint: str) -> None:
    with pytest.raises(NetworkPolicyViolationError):
        _policy().evaluate("tenant-open", NetworkAccess.allow(endpoint))


def test_host_permitted_matches_hosts_suffixes_and_cidrs() -> None:
    access = NetworkAccess.allow("pypi.org", "*.pythonhosted.org", "10.0.0.0/8")

    assert host_permitted(access, "pypi.org")
    assert host_permitted(access, "files.pythonhosted.org")
    assert host_permitted(access, "10.20.30.40")
    assert not host_permitted(access, "evil.pypi.org.example")
    assert not host_permitted(access, "11.0.0.1")
    assert not host_permitted(NetworkAccess.deny(), "pypi.org")


def test_sandbox_environment_black_holes_proxies() -> None:
    denied = sandbox_network_environment(NetworkAccess.deny())
    assert denied["HTTPS_PROXY"] == BLACKHOLE_PROXY
    assert denied["http_proxy"] == BLACKHOLE_PROXY
    assert denied["NO_PROXY"] == ""

    allowed = sandbox_network_environment(NetworkAccess.allow("pypi.org", "*.pythonhosted.org"))
    assert allowed["ALL_PROXY"] == BLACKHOLE_PROXY
    assert allowed["no_proxy"] == ".pythonhosted.org,pypi.org"
