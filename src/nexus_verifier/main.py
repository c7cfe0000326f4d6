"""Process entrypoint: run the CLI and turn whatever escapes it into an exit code.

``ui.cli.run_cli`` already reports expected failures itself. Anything that
still escapes is classified by walking its cause/context chain against
``_EXIT_ROUTES``; unclassified errors are internal and print a traceback.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    VERIFICATION_REJECTED = 1
    CONFIG_ERROR = 2
    INFRASTRUCTURE_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m nexus_verifier`` and the console script."""

    try:
        from nexus_verifier.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        # argparse exits directly on --help and usage errors.
        return _as_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        code = classify_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _stderr(str(exc).strip() or type(exc).__name__)
        return int(code)


def classify_exception(exc: BaseException) -> ExitCode:
    """Map ``exc`` (or the first classifiable error it was raised from) to an exit code."""

    routes = _exit_routes()
    for link in _causal_chain(exc):
        for error_types, code in routes:
            if isinstance(link, error_types):
                return code
    return ExitCode.INTERNAL_ERROR


def _exit_routes() -> tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...]:
    from nexus_verifier.config.loader import ConfigLoadError
    from nexus_verifier.config.schema import ConfigValidationError
    from nexus_verifier.domain.errors import VerifierError

    return (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((VerifierError,), ExitCode.INFRASTRUCTURE_ERROR),
        ((FileNotFoundError, NotADirectoryError, PermissionError), ExitCode.CONFIG_ERROR),
    )


def _causal_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in {code.value for code in ExitCode}:
        return raw
    if isinstance(raw, str) and raw.strip():
        _stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
