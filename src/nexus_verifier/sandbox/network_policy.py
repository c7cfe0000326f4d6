"""Egress admission for sandboxed executions.

Executions are denied network access unless their request carries an
allow-list, and only privileged tenants may submit such requests. A privileged
tenant can additionally be held to a ceiling of endpoints it may ever ask for.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

from nexus_verifier.domain.errors import NetworkPolicyViolationError
from nexus_verifier.domain.models import NetworkAccess, NetworkMode

# Unroutable proxy endpoint; well-behaved tools fail fast instead of reaching out.
BLACKHOLE_PROXY: Final[str] = "http://127.0.0.1:9"
_PROXY_VARIABLES: Final[tuple[str, ...]] = (
    "http_proxy",
    "https_proxy",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "all_proxy",
    "ALL_PROXY",
)


@dataclass(frozen=True, slots=True)
class NetworkDecision:
    """Admission verdict for one request's network policy."""

    tenant_id: str
    mode: NetworkMode
    allowed: bool
    reason: str
    endpoints: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class _AllowRule:
    raw: str
    exact_host: str | None = None
    suffix: str | None = None
    ip_network: ipaddress.IPv4Network | ipaddress.IPv6Network | None = None


class NetworkPolicy:
    """Decides whether a tenant may run with the egress its request asks for."""

    def __init__(
        self,
        *,
        privileged_tenants: Iterable[str] = (),
        tenant_ceilings: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._privileged = frozenset(privileged_tenants)
        self._ceilings = {
            tenant: tuple(_parse_allow_rule(item) for item in rules)
            for tenant, rules in (tenant_ceilings or {}).items()
        }

    def is_privileged(self, tenant_id: str) -> bool:
        return tenant_id in self._privileged

    def evaluate(self, tenant_id: str, access: NetworkAccess) -> NetworkDecision:
        if access.mode is NetworkMode.DENY:
            return NetworkDecision(tenant_id, access.mode, True, "deny-by-default")

        for endpoint in access.allowlist:
            _parse_allow_rule(endpoint)

        if tenant_id not in self._privileged:
            return NetworkDecision(
                tenant_id,
                access.mode,
                False,
                "egress allow-lists are restricted to privileged tenants",
                access.allowlist,
            )

        ceiling = self._ceilings.get(tenant_id)
        if ceiling is not None:
            outside = [item for item in access.allowlist if not _covered(item, ceiling)]
            if outside:
                return NetworkDecision(
                    tenant_id,
                    access.mode,
                    False,
                    f"endpoints outside tenant ceiling: {', '.join(outside)}",
                    access.allowlist,
                )
        return NetworkDecision(
            tenant_id, access.mode, True, "privileged allow-list", access.allowlist
        )

    def enforce(self, tenant_id: str, access: NetworkAccess) -> NetworkDecision:
        decision = self.evaluate(tenant_id, access)
        if not decision.allowed:
            raise NetworkPolicyViolationError(
                f"network policy rejected for tenant {tenant_id!r}: {decision.reason}"
            )
        return decision


def host_permitted(access: NetworkAccess, host: str) -> bool:
    """Return whether ``host`` falls under the request's allow-list."""

    if access.mode is NetworkMode.DENY:
        return False
    return _match_rule(host.strip().lower(), [_parse_allow_rule(item) for item in access.allowlist])


def sandbox_network_environment(access: NetworkAccess) -> dict[str, str]:
    """Environment variables that steer in-sandbox tooling for ``access``."""

    if access.mode is NetworkMode.DENY:
        env = dict.fromkeys(_PROXY_VARIABLES, BLACKHOLE_PROXY)
        env["no_proxy"] = env["NO_PROXY"] = ""
        return env
    # Allow-listed hosts bypass the black hole; everything else still hits it.
    hosts = ",".join(item.removeprefix("*") for item in access.allowlist)
    env = dict.fromkeys(_PROXY_VARIABLES, BLACKHOLE_PROXY)
    env["no_proxy"] = env["NO_PROXY"] = hosts
    return env


def _covered(endpoint: str, ceiling: tuple[_AllowRule, ...]) -> bool:
    if endpoint.startswith("*."):
        return any(
            rule.suffix is not None
            and (endpoint[2:] == rule.suffix or endpoint[2:].endswith(f".{rule.suffix}"))
            for rule in ceiling
        )
    try:
        network = ipaddress.ip_network(endpoint, strict=False)
    except ValueError:
        return _match_rule(endpoint, ceiling)
    return any(
        rule.ip_network is not None
        and network.version == rule.ip_network.version
        and network.subnet_of(rule.ip_network)  # type: ignore[arg-type]
        for rule in ceiling
    )


def _match_rule(host: str, rules: Iterable[_AllowRule]) -> bool:
    try:
        host_ip = ipaddress.ip_address(host)
    except ValueError:
        host_ip = None

    for rule in rules:
        if rule.exact_host is not None and host == rule.exact_host:
            return True
        if rule.suffix is not None and (host == rule.suffix or host.endswith(f".{rule.suffix}")):
            return True
        if rule.ip_network is not None and host_ip is not None and host_ip in rule.ip_network:
            return True
    return False


def _parse_allow_rule(raw_rule: str) -> _AllowRule:
    normalized = raw_rule.strip().lower()
    if not normalized or " " in normalized or "\x00" in normalized:
        raise NetworkPolicyViolationError(f"invalid allow-list entry {raw_rule!r}")

    if normalized.startswith("*."):
        suffix = normalized[2:]
        if not suffix:
            raise NetworkPolicyViolationError("wildcard allow-list entry must include a suffix")
        return _AllowRule(raw=normalized, suffix=suffix)

    try:
        network = ipaddress.ip_network(normalized, strict=False)
    except ValueError:
        network = None
    if network is not None:
        return _AllowRule(raw=normalized, ip_network=network)

    if "/" in normalized or "://" in normalized:
        raise NetworkPolicyViolationError(
            f"allow-list entries are hosts, '*.suffix' or CIDR ranges, got {raw_rule!r}"
        )
    return _AllowRule(raw=normalized, exact_host=normalized)


__all__ = [
    "BLACKHOLE_PROXY",
    "NetworkDecision",
    "NetworkPolicy",
    "host_permitted",
    "sandbox_network_environment",
]
