"""
nexus-verifier — deterministic audit-log summary.

Purpose
- Summarize the JSON-lines job audit log per tenant.
- Report terminal-state counts, cache-hit ratio, retries, and execution time with stable ordering.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"

JSONScalar = str | int | float | bool | None
JSONOutput = JSONScalar | list["JSONOutput"] | dict[str, "JSONOutput"]


def _ensure_src_path() -> None:
    if str(SRC_PATH) not in sys.path:
        sys.path.insert(0, str(SRC_PATH))


@dataclass(slots=True)
class _TenantSummary:
    tenant_id: str
    jobs: int = 0
    cache_hits: int = 0
    retried_jobs: int = 0
    executed_ms_total: int = 0
    states: dict[str, int] = field(default_factory=dict)
    outcomes: dict[str, int] = field(default_factory=dict)

    def add(self, record: Mapping[str, object]) -> None:
        self.jobs += 1
        state = str(record.get("state", "unknown"))
        self.states[state] = self.states.get(state, 0) + 1
        outcome = record.get("outcome")
        if outcome is not None:
            key = str(outcome)
            self.outcomes[key] = self.outcomes.get(key, 0) + 1
        if record.get("cache_hit") is True:
            self.cache_hits += 1
            return
        attempts = record.get("attempts")
        if isinstance(attempts, int) and attempts > 1:
            self.retried_jobs += 1
        duration = record.get("duration_ms")
        if isinstance(duration, int) and duration > 0:
            self.executed_ms_total += duration

    @property
    def cache_hit_ratio(self) -> float:
        return self.cache_hits / self.jobs if self.jobs else 0.0

    def to_dict(self) -> dict[str, JSONOutput]:
        return {
            "tenant_id": self.tenant_id,
            "jobs": self.jobs,
            "cache_hits": self.cache_hits,
            "cache_hit_ratio": round(self.cache_hit_ratio, 4),
            "retried_jobs": self.retried_jobs,
            "executed_ms_total": self.executed_ms_total,
            "states": {key: self.states[key] for key in sorted(self.states)},
            "outcomes": {key: self.outcomes[key] for key in sorted(self.outcomes)},
        }


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarize the nexus-verifier job audit log per tenant.",
    )
    parser.add_argument(
        "--audit-log",
        type=Path,
        default=Path("audit") / "audit.jsonl",
        help="JSON-lines audit log path.",
    )
    parser.add_argument(
        "--tenant",
        action="append",
        default=[],
        help="Repeatable tenant filter (exact match).",
    )
    parser.add_argument(
        "--group-id",
        type=str,
        default=None,
        help="Only count jobs from one verification or minimization group.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON output.",
    )
    return parser.parse_args(argv)


def summarize(
    records: Sequence[Mapping[str, object]],
    *,
    tenants: Sequence[str] = (),
    group_id: str | None = None,
) -> list[_TenantSummary]:
    tenant_filter = {item.strip() for item in tenants if item.strip()}
    summaries: dict[str, _TenantSummary] = {}
    for record in records:
        tenant_id = str(record.get("tenant_id", ""))
        if tenant_filter and tenant_id not in tenant_filter:
            continue
        if group_id is not None and record.get("group_id") != group_id:
            continue
        summary = summaries.get(tenant_id)
        if summary is None:
            summary = summaries[tenant_id] = _TenantSummary(tenant_id=tenant_id)
        summary.add(record)
    return [summaries[key] for key in sorted(summaries)]


def _emit_text(payload: Mapping[str, JSONOutput], summaries: Sequence[_TenantSummary]) -> None:
    print(f"audit_log: {payload['audit_log']}")
    print(f"records: {payload['record_count']}")
    if not summaries:
        print("tenants: none")
        return
    print("tenants:")
    for summary in summaries:
        states = ", ".join(f"{key}={value}" for key, value in sorted(summary.states.items()))
        print(
            f"- {summary.tenant_id}: jobs={summary.jobs} "
            f"cache_hit_ratio={summary.cache_hit_ratio:.2%} "
            f"retried={summary.retried_jobs} executed_ms={summary.executed_ms_total}"
        )
        print(f"  states: {states}")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    audit_log = args.audit_log.expanduser().resolve()

    _ensure_src_path()
    from nexus_verifier.observability.events import read_audit_log

    try:
        records = read_audit_log(audit_log)
    except FileNotFoundError:
        print(f"audit log not found: {audit_log}", file=sys.stderr)
        return 2
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    summaries = summarize(records, tenants=args.tenant, group_id=args.group_id)
    payload: dict[str, JSONOutput] = {
        "audit_log": audit_log.as_posix(),
        "record_count": sum(item.jobs for item in summaries),
        "tenants": [item.to_dict() for item in summaries],
    }
    if args.json:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    else:
        _emit_text(payload, summaries)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
