"""Apply unified diffs to scratch copies of a repository snapshot."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import structlog

from nexus_verifier.domain.errors import PatchDidNotApplyError, ProvisioningError
from nexus_verifier.utils.fs import copy_tree, resolve_relative, safe_delete

if TYPE_CHECKING:
    from collections.abc import Sequence

    from nexus_verifier.verification_plane.diff_analysis import ParsedDiff

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


class PatchApplier(Protocol):
    def apply(self, snapshot: Path, diff: ParsedDiff, workspace_root: Path) -> Path: ...


def missing_pre_images(snapshot: Path, diff: ParsedDiff) -> tuple[str, ...]:
    """Pre-image paths the diff modifies, deletes, or renames that are absent from ``snapshot``."""

    missing: list[str] = []
    for relative in diff.pre_image_paths:
        if not resolve_relative(snapshot, relative).is_file():
            missing.append(relative)
    return tuple(missing)


class GitPatchApplier:
    """Copies the snapshot into a scratch directory and runs ``git apply`` there.

    ``git apply`` works outside a repository; ``GIT_CEILING_DIRECTORIES`` keeps it
    from discovering an enclosing repository of the scratch directory.
    """

    def __init__(self, *, git_binary: str = "git", timeout_seconds: float = 60.0) -> None:
        self._git_binary = git_binary
        self._timeout_seconds = timeout_seconds

    def apply(self, snapshot: Path, diff: ParsedDiff, workspace_root: Path) -> Path:
        """Return a new directory holding ``snapshot`` with ``diff`` applied.

        Raises ``PatchDidNotApplyError`` when the diff does not apply cleanly and
        ``ProvisioningError`` when git itself is unavailable.
        """

        missing = missing_pre_images(snapshot, diff)
        if missing:
            raise PatchDidNotApplyError(
                f"patch references files missing from the snapshot: {', '.join(missing)}",
                paths=missing,
            )
        git = shutil.which(self._git_binary)
        if git is None:
            raise ProvisioningError(f"{self._git_binary!r} not found on PATH", transient=False)

        workspace_root.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix="patched-", dir=workspace_root))
        try:
            copy_tree(snapshot, scratch, ignore=(".git",))
            result = self._run(
                [git, "apply", "--whitespace=nowarn", "--verbose", "-"],
                cwd=scratch,
                input_text=diff.text,
            )
        except BaseException:
            safe_delete(scratch, workspace_root)
            raise
        if result.returncode != 0:
            safe_delete(scratch, workspace_root)
            raise PatchDidNotApplyError(
                f"git apply failed: {result.stderr.strip()[:2000]}",
                paths=diff.post_image_paths,
            )
        logger.info(
            "patch_applied",
            files=len(diff.files),
            scratch=str(scratch),
        )
        return scratch

    def _run(self, command: Sequence[str], *, cwd: Path, input_text: str) -> CommandResult:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env["GIT_CEILING_DIRECTORIES"] = str(cwd.parent)
        try:
            completed = subprocess.run(
                list(command),
                cwd=cwd,
                env=env,
                text=True,
                capture_output=True,
                input=input_text,
                check=False,
                timeout=self._timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProvisioningError(f"git apply timed out after {self._timeout_seconds}s") from exc
        return CommandResult(
            command=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


__all__ = ["CommandResult", "GitPatchApplier", "PatchApplier", "missing_pre_images"]
