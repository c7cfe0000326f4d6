"""Command-line interface router for nexus-verifier."""

from __future__ import annotations

import argparse
import asyncio
import json
import shlex
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import yaml

from nexus_verifier.config import (
    ConfigLoadError,
    ConfigValidationError,
    LoadedConfig,
    effective_config,
    resolve_config,
)
from nexus_verifier.config.factories import logging_config_from
from nexus_verifier.constants import DEFAULT_TENANT
from nexus_verifier.domain.errors import VerifierError
from nexus_verifier.domain.ids import generate_run_id
from nexus_verifier.domain.models import (
    EvidenceCitation,
    MinimizeRequest,
    ResourceLimits,
    VerifyRequest,
)
from nexus_verifier.engine import VerificationEngine
from nexus_verifier.observability.logging import (
    correlation_scope,
    setup_structured_logging,
    shutdown_logging,
)
from nexus_verifier.reduction_plane.minimizer import MinimizationStatus
from nexus_verifier.ui.render import CLIRenderer, create_renderer
from nexus_verifier.verification_plane.patch_verifier import VerificationStatus

EXIT_SUCCESS: Final[int] = 0
EXIT_REJECTED: Final[int] = 1
EXIT_USAGE: Final[int] = 2
EXIT_INFRASTRUCTURE: Final[int] = 3

_STDIN: Final[str] = "-"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_REJECTED

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="nexus-verifier",
        description=(
            "nexus-verifier: sandboxed verification and reduction engine.\n\n"
            "Common workflows:\n"
            "  nexus-verifier correlate --trace crash.txt --repo .\n"
            "  nexus-verifier minimize --input big.txt -- python parse.py input.txt\n"
            "  nexus-verifier verify --repo . --patch fix.diff --test 'pytest -q'\n"
            "  nexus-verifier score --repo . --patch fix.diff --test 'pytest -q' --evidence ev.yaml\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to verifier TOML config (default: ./verifier.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Config profile overlay name.")
    common.add_argument(
        "--tenant",
        default=DEFAULT_TENANT,
        help=f"Tenant id used for quotas and cache scoping (default: {DEFAULT_TENANT}).",
    )
    common.add_argument("--json", action="store_true", default=False, help="Emit JSON output.")
    common.add_argument("--verbose", "-v", action="store_true", default=False)
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    correlate = subparsers.add_parser(
        "correlate",
        parents=[common],
        help="Rank source locations likely responsible for a stack trace",
    )
    correlate.add_argument("--trace", required=True, help="Stack trace file ('-' for stdin).")
    correlate.add_argument("--logs", default=None, help="Optional log file.")
    correlate.add_argument("--repo", default=".", help="Repository root to index.")
    correlate.set_defaults(handler=_cmd_correlate)

    minimize = subparsers.add_parser(
        "minimize",
        parents=[common],
        help="Reduce a failing input while it still reproduces the failure",
        description=(
            "The command after '--' runs in the sandbox with the candidate written to\n"
            "--input-path inside its working directory."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    minimize.add_argument("--input", required=True, help="Failing input file ('-' for stdin).")
    minimize.add_argument("--input-path", default="input.txt", help="Sandbox path for the candidate.")
    minimize.add_argument("--snapshot", default=None, help="Directory copied into the sandbox.")
    minimize.add_argument("--granularity", choices=("lines", "chars"), default="lines")
    minimize.add_argument(
        "--expect-exit",
        type=int,
        action="append",
        default=None,
        help="Exit code that counts as the failure (repeatable; default any non-zero).",
    )
    minimize.add_argument("--output-pattern", default=None, help="Regex the failing output must match.")
    minimize.add_argument(
        "--timeout-is-failure",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Count a timed-out run as the failure (default: yes).",
    )
    minimize.add_argument(
        "--crash-is-failure",
        action="store_true",
        default=False,
        help="Count a crash (signal or resource-limit kill) as the failure.",
    )
    minimize.add_argument("--max-calls", type=int, default=None, help="Oracle call budget.")
    minimize.add_argument("--max-seconds", type=float, default=None, help="Wall-clock budget.")
    minimize.add_argument("--timeout", type=float, default=None, help="Per-run timeout in seconds.")
    minimize.add_argument("--output", default=None, help="Write the minimized input here.")
    minimize.add_argument("run_command", nargs=argparse.REMAINDER, help="Command after '--'.")
    minimize.set_defaults(handler=_cmd_minimize)

    for name, handler, summary in (
        ("verify", _cmd_verify, "Apply a patch to a snapshot and run its tests in isolation"),
        ("score", _cmd_score, "Verify a patch and compute its confidence score"),
    ):
        sub = subparsers.add_parser(name, parents=[common], help=summary)
        sub.add_argument("--repo", required=True, help="Repository snapshot directory.")
        sub.add_argument("--patch", required=True, help="Unified diff file ('-' for stdin).")
        sub.add_argument(
            "--test",
            dest="tests",
            action="append",
            default=[],
            help="Test command, shell-quoted (repeatable).",
        )
        sub.add_argument("--combined", default=None, help="Single command running every test.")
        sub.add_argument("--timeout", type=float, default=300.0, help="Per-command timeout.")
        if name == "score":
            sub.add_argument("--evidence", default=None, help="Evidence citations (YAML or JSON).")
            sub.add_argument(
                "--history", type=float, default=None, help="Historical success rate in [0, 1]."
            )
        sub.set_defaults(handler=handler)

    config = subparsers.add_parser("config", parents=[common], help="Show the effective config")
    config.add_argument(
        "--explain",
        action="store_true",
        default=False,
        help="List settings that differ from the built-in defaults and where each came from.",
    )
    config.set_defaults(handler=_cmd_config)
    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_correlate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    trace = _read_text(args.trace, "trace")
    logs = _read_text(args.logs, "logs") if args.logs else ""
    repo = _existing_dir(args.repo, "repo")

    candidates = _run_with_engine(
        config, args, lambda engine: engine.correlate(trace, logs, repo)
    )
    if args.json:
        _emit_json({"command": "correlate", "candidates": [item.to_dict() for item in candidates]})
        return EXIT_SUCCESS
    _get_renderer(args).candidates(candidates)
    return EXIT_SUCCESS


def _cmd_minimize(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    command = list(args.run_command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        raise CLIError("minimize requires a command after '--'", exit_code=EXIT_USAGE)

    try:
        request = MinimizeRequest(
            tenant_id=args.tenant,
            input_text=_read_text(args.input, "input"),
            command=tuple(command),
            input_path=args.input_path,
            snapshot=_existing_dir(args.snapshot, "snapshot") if args.snapshot else None,
            granularity=args.granularity,
            expected_exit_codes=tuple(args.expect_exit) if args.expect_exit else None,
            output_pattern=args.output_pattern,
            timeout_is_failure=args.timeout_is_failure,
            crash_is_failure=args.crash_is_failure,
            max_oracle_calls=args.max_calls,
            max_wall_clock_seconds=args.max_seconds,
            limits=ResourceLimits(timeout_seconds=args.timeout) if args.timeout else None,
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc

    result = _run_with_engine(config, args, lambda engine: engine.minimize(request))
    if args.output:
        Path(args.output).write_text(result.minimized_input, encoding="utf-8")

    if args.json:
        _emit_json({"command": "minimize", "result": result.to_dict()})
    else:
        _get_renderer(args).minimization(result)

    if result.status is MinimizationStatus.NOT_REPRODUCED:
        return EXIT_REJECTED
    if result.status is MinimizationStatus.CANCELLED:
        return EXIT_INFRASTRUCTURE
    return EXIT_SUCCESS


def _cmd_verify(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    request = _verify_request(args)
    outcome = _run_with_engine(config, args, lambda engine: engine.verify(request))
    if args.json:
        _emit_json({"command": "verify", "outcome": outcome.to_dict()})
    else:
        _get_renderer(args).verification(outcome)
    return _exit_for_status(outcome.status)


def _cmd_score(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    request = _verify_request(args)
    evidence = _load_evidence(args.evidence) if args.evidence else ()
    if args.history is not None and not 0.0 <= args.history <= 1.0:
        raise CLIError("--history must be within [0, 1]", exit_code=EXIT_USAGE)

    outcome, report = _run_with_engine(
        config,
        args,
        lambda engine: engine.verify_and_score(request, evidence, args.history),
    )
    if args.json:
        _emit_json({"command": "score", "outcome": outcome.to_dict(), "report": report.to_dict()})
    else:
        renderer = _get_renderer(args)
        renderer.verification(outcome)
        renderer.text()
        renderer.confidence(report)
    return _exit_for_status(outcome.status)


def _cmd_config(args: argparse.Namespace) -> int:
    loaded = _resolve(args)
    redacted = effective_config(loaded.config)
    overrides = {key: layer.value for key, layer in loaded.overridden().items()}
    payload: dict[str, object] = {
        "command": "config",
        "active_profile": loaded.profile,
        "config_file": loaded.config_file.as_posix() if loaded.config_file else None,
        "config": redacted,
    }
    if args.explain:
        payload["origins"] = overrides
    if args.json:
        _emit_json(payload)
        return EXIT_SUCCESS

    renderer = _get_renderer(args)
    renderer.kv("Active profile", loaded.profile or "(default)")
    renderer.kv("Config file", loaded.config_file or "(none)")
    if not args.explain:
        renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    elif overrides:
        renderer.table(
            ["setting", "source"],
            [[key, source] for key, source in overrides.items()],
            title="Overrides:",
        )
    else:
        renderer.text("Every setting is at its built-in default.")
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_with_engine(config: Mapping[str, Any], args: argparse.Namespace, operation: Any) -> Any:
    """Run ``operation(engine)`` on a fresh event loop with run-scoped logging."""

    run_id = generate_run_id()
    handle = setup_structured_logging(logging_config_from(config, run_id=run_id))

    async def _main() -> Any:
        async with VerificationEngine.from_config(config) as engine:
            return await operation(engine)

    try:
        with correlation_scope(run_id=run_id, tenant_id=args.tenant):
            return asyncio.run(_main())
    except VerifierError as exc:
        raise CLIError(str(exc), exit_code=EXIT_INFRASTRUCTURE) from exc
    finally:
        shutdown_logging(handle)


def _verify_request(args: argparse.Namespace) -> VerifyRequest:
    if not args.tests and not args.combined:
        raise CLIError("at least one --test or --combined command is required", exit_code=EXIT_USAGE)
    try:
        return VerifyRequest(
            tenant_id=args.tenant,
            repo_snapshot=_existing_dir(args.repo, "repo"),
            patch_diff=_read_text(args.patch, "patch"),
            test_commands=tuple(tuple(shlex.split(item)) for item in args.tests),
            combined_command=tuple(shlex.split(args.combined)) if args.combined else None,
            timeout_seconds=args.timeout,
        )
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc


def _load_evidence(path_arg: str) -> tuple[EvidenceCitation, ...]:
    raw = _read_text(path_arg, "evidence")
    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise CLIError(f"evidence file is not valid YAML/JSON: {exc}", exit_code=EXIT_USAGE) from exc
    if isinstance(payload, Mapping):
        payload = payload.get("evidence", payload.get("citations"))
    if payload is None:
        return ()
    if not isinstance(payload, list):
        raise CLIError("evidence must be a list of {path, start_line, end_line}", exit_code=EXIT_USAGE)
    citations: list[EvidenceCitation] = []
    for index, item in enumerate(payload):
        if not isinstance(item, Mapping):
            raise CLIError(f"evidence[{index}] must be an object", exit_code=EXIT_USAGE)
        try:
            citations.append(EvidenceCitation.from_mapping(item))
        except (KeyError, TypeError, ValueError) as exc:
            raise CLIError(f"evidence[{index}]: {exc}", exit_code=EXIT_USAGE) from exc
    return tuple(citations)


def _exit_for_status(status: VerificationStatus) -> int:
    if status is VerificationStatus.PASSED:
        return EXIT_SUCCESS
    if status is VerificationStatus.INDETERMINATE:
        return EXIT_INFRASTRUCTURE
    return EXIT_REJECTED


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    return _resolve(args).config


def _resolve(args: argparse.Namespace) -> LoadedConfig:
    try:
        return resolve_config(args.config_path, profile=args.profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_USAGE) from exc


def _read_text(path_arg: str, name: str) -> str:
    if path_arg == _STDIN:
        return sys.stdin.read()
    path = Path(path_arg).expanduser()
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise CLIError(f"{name} file not found: {path}", exit_code=EXIT_USAGE) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise CLIError(f"unable to read {name} file {path}: {exc}", exit_code=EXIT_USAGE) from exc


def _existing_dir(path_arg: str, name: str) -> Path:
    candidate = Path(path_arg).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"{name} is not a directory: {candidate}", exit_code=EXIT_USAGE)
    return candidate


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=args.no_color, verbose=args.verbose)


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
