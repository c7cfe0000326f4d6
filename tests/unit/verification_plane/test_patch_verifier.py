"""Unit tests for PatchVerifier against the in-process executor."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from nexus_verifier.control_plane.scheduler import JobScheduler
from nexus_verifier.domain.errors import PatchDidNotApplyError, ProvisioningError
from nexus_verifier.domain.models import (
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
    ResourceLimits,
    SnapshotRef,
    VerifyRequest,
)
from nexus_verifier.utils.fs import copy_tree
from nexus_verifier.verification_plane.patch_verifier import (
    CommandStatus,
    PatchVerifier,
    VerificationStatus,
)
from nexus_verifier.verification_plane.static_signals import SyntaxLintRunner

if TYPE_CHECKING:
    from collections.abc import Mapping

    from conftest import FakeExecutor
    from nexus_verifier.verification_plane.diff_analysis import ParsedDiff

ORIGINAL = "def divide(a, b):\n    return a / b\n\n\ndef add(a, b):\n    return a + b\n"
PATCHED = (
    "def divide(a, b):\n"
    "    if b == 0:\n"
    "        return 0\n"
    "    return a / b\n"
    "\n\n"
    "def add(a, b):\n"
    "    return a + b\n"
)
DIFF = """\
diff --git a/src/calc.py b/src/calc.py
--- a/src/calc.py
+++ b/src/calc.py
@@ -1,2 +1,4 @@
 def divide(a, b):
-    return a / b
+    if b == 0:
+        return 0
+    return a / b
"""
PYTEST = ("pytest", "-q")


class _CopyApplier:
    """Copies the snapshot and overwrites files with fixed post-image contents."""

    def __init__(
        self,
        post_image: Mapping[str, str] | None = None,
        *,
        error: Exception | None = None,
    ) -> None:
        self.post_image = dict(post_image if post_image is not None else {"src/calc.py": PATCHED})
        self.error = error
        self.calls = 0

    def apply(self, snapshot: Path, diff: ParsedDiff, workspace_root: Path) -> Path:
        self.calls += 1
        if self.error is not None:
            raise self.error
        scratch = Path(tempfile.mkdtemp(prefix="patched-", dir=workspace_root))
        copy_tree(snapshot, scratch)
        for relative, text in self.post_image.items():
            (scratch / relative).write_text(text, encoding="utf-8")
        return scratch


def _snapshot(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "calc.py").write_text(ORIGINAL, encoding="utf-8")
    return repo


def _verifier(
    scheduler: JobScheduler, tmp_path: Path, applier: _CopyApplier | None = None
) -> PatchVerifier:
    return PatchVerifier(
        scheduler,
        workspace_root=tmp_path / "work",
        applier=applier or _CopyApplier(),
        lint_runner=SyntaxLintRunner(),
    )


def _request(tmp_path: Path, *commands: tuple[str, ...], **overrides: object) -> VerifyRequest:
    payload: dict[str, object] = {
        "tenant_id": "tenant-a",
        "repo_snapshot": _snapshot(tmp_path),
        "patch_diff": DIFF,
        "test_commands": commands or (PYTEST,),
    }
    payload.update(overrides)
    return VerifyRequest(**payload)  # type: ignore[arg-type]


async def test_passing_patch_runs_every_command_in_one_group(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    request = _request(tmp_path, PYTEST, ("python", "-m", "unittest"))
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path).verify(request)

    assert outcome.status is VerificationStatus.PASSED
    assert not outcome.retryable
    assert (outcome.tests_passed, outcome.tests_total) == (2, 2)
    assert outcome.group_id is not None
    assert len({command.job_id for command in outcome.commands}) == 2
    assert outcome.reason is None
    assert outcome.patched_regions == {"src/calc.py": ((1, 2),)}

    signals = outcome.static_signals
    assert signals is not None
    assert (signals.lint_tool, signals.lint_delta) == ("syntax", 0)
    assert signals.diff_stats.changed_lines == 4

    original_digest = SnapshotRef.from_directory(request.repo_snapshot).digest
    post_image = fake_executor.calls[0].snapshot
    assert post_image is not None and post_image.digest != original_digest
    assert all(not call.network.grants_egress for call in fake_executor.calls)
    # The scratch post-image is removed once the commands finish.
    assert list((tmp_path / "work").iterdir()) == []
    assert outcome.to_dict()["status"] == "passed"


async def test_duplicate_commands_run_once(fake_executor: FakeExecutor, tmp_path: Path) -> None:
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path).verify(_request(tmp_path, PYTEST, PYTEST))

    assert outcome.tests_total == 1
    assert fake_executor.runs == 1


async def test_reverifying_the_same_patch_is_served_from_cache(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    request = _request(tmp_path)
    async with JobScheduler(fake_executor) as scheduler:
        verifier = _verifier(scheduler, tmp_path)
        first = await verifier.verify(request)
        second = await verifier.verify(request)

    assert first.status is second.status is VerificationStatus.PASSED
    assert fake_executor.runs == 1


def _fail_pytest(request: ExecutionRequest) -> ExecutionResult:
    failing = request.command[0] == "pytest"
    return ExecutionResult(
        content_hash=request.content_hash,
        outcome=ExecutionOutcome.COMPLETED,
        exit_code=1 if failing else 0,
    )


async def test_non_zero_exit_is_a_definite_failure(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    fake_executor.responder = _fail_pytest
    request = _request(tmp_path, PYTEST, ("ruff", "check", "."))
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path).verify(request)

    assert outcome.status is VerificationStatus.FAILED
    assert not outcome.retryable
    assert [command.status for command in outcome.commands] == [
        CommandStatus.FAILED,
        CommandStatus.PASSED,
    ]
    assert outcome.reason == "failing commands: pytest -q"


async def test_timed_out_command_fails_the_patch(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    def timed_out(request: ExecutionRequest) -> ExecutionResult:
        return ExecutionResult(
            content_hash=request.content_hash,
            outcome=ExecutionOutcome.TIMED_OUT,
            exit_code=None,
            termination_reason="wall_clock_timeout",
        )

    fake_executor.responder = timed_out
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path).verify(_request(tmp_path))

    assert outcome.status is VerificationStatus.FAILED
    assert outcome.commands[0].status is CommandStatus.TIMED_OUT


async def test_provisioning_failure_is_indeterminate(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    fake_executor.permanent_failure = True
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path).verify(_request(tmp_path))

    assert outcome.status is VerificationStatus.INDETERMINATE
    assert outcome.retryable
    (command,) = outcome.commands
    assert command.status is CommandStatus.ERROR
    assert command.error is not None and command.error.startswith("ProvisioningFailedError")
    assert outcome.reason is not None and outcome.reason.startswith("infrastructure failure")
    assert list((tmp_path / "work").iterdir()) == []


async def test_unparseable_diff_did_not_apply(fake_executor: FakeExecutor, tmp_path: Path) -> None:
    applier = _CopyApplier()
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path, applier).verify(
            _request(tmp_path, patch_diff="not a diff at all\n")
        )

    assert outcome.status is VerificationStatus.PATCH_DID_NOT_APPLY
    assert outcome.static_signals is None
    assert applier.calls == 0
    assert fake_executor.runs == 0


async def test_missing_pre_image_did_not_apply(fake_executor: FakeExecutor, tmp_path: Path) -> None:
    applier = _CopyApplier(
        error=PatchDidNotApplyError("missing src/gone.py", paths=("src/gone.py",))
    )
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path, applier).verify(_request(tmp_path))

    assert outcome.status is VerificationStatus.PATCH_DID_NOT_APPLY
    assert not outcome.retryable
    assert outcome.missing_paths == ("src/gone.py",)
    assert outcome.diff_stats is not None and outcome.diff_stats.files_changed == 1
    assert outcome.commands == ()
    assert fake_executor.runs == 0


async def test_unavailable_applier_is_indeterminate(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    applier = _CopyApplier(error=ProvisioningError("'git' not found on PATH", transient=False))
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path, applier).verify(_request(tmp_path))

    assert outcome.status is VerificationStatus.INDETERMINATE
    assert outcome.reason == "'git' not found on PATH"
    assert fake_executor.runs == 0


async def test_lint_delta_counts_new_syntax_errors(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    applier = _CopyApplier({"src/calc.py": "def divide(a, b:\n    return a / b\n"})
    async with JobScheduler(fake_executor) as scheduler:
        outcome = await _verifier(scheduler, tmp_path, applier).verify(_request(tmp_path))

    signals = outcome.static_signals
    assert signals is not None
    assert (signals.lint_before, signals.lint_after, signals.lint_delta) == (0, 1, 1)


async def test_request_timeout_caps_command_limits(
    fake_executor: FakeExecutor, tmp_path: Path
) -> None:
    request = _request(
        tmp_path,
        timeout_seconds=5.0,
        limits=ResourceLimits(timeout_seconds=60.0, memory_bytes=64 * 1024 * 1024),
    )
    async with JobScheduler(fake_executor) as scheduler:
        await _verifier(scheduler, tmp_path).verify(request)

    limits = fake_executor.calls[0].limits
    assert limits.timeout_seconds == 5.0
    assert limits.memory_bytes == 64 * 1024 * 1024
