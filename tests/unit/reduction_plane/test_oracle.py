"""Unit tests for failure signatures and the scheduler-backed oracle."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from nexus_verifier.control_plane.scheduler import JobScheduler
from nexus_verifier.domain.models import (
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
    MinimizeRequest,
)
from nexus_verifier.reduction_plane.minimizer import MinimizationStatus, minimize_text
from nexus_verifier.reduction_plane.oracle import (
    FailureSignature,
    OracleVerdict,
    SchedulerOracle,
)

if TYPE_CHECKING:
    from conftest import FakeExecutor


def _result(
    outcome: ExecutionOutcome = ExecutionOutcome.COMPLETED,
    exit_code: int | None = 1,
    *,
    stdout: str = "",
    stderr: str = "",
) -> ExecutionResult:
    return ExecutionResult(
        content_hash="h", outcome=outcome, exit_code=exit_code, stdout=stdout, stderr=stderr
    )


@pytest.mark.parametrize(
    ("signature", "result", "verdict"),
    [
        (FailureSignature(), _result(exit_code=1), OracleVerdict.FAILS),
        (FailureSignature(), _result(exit_code=0), OracleVerdict.PASSES),
        (
            FailureSignature(),
            _result(ExecutionOutcome.TIMED_OUT, None),
            OracleVerdict.FAILS,
        ),
        (
            FailureSignature(timeout_is_failure=False),
            _result(ExecutionOutcome.TIMED_OUT, None),
            OracleVerdict.AMBIGUOUS,
        ),
        (FailureSignature(), _result(ExecutionOutcome.CRASHED, None), OracleVerdict.AMBIGUOUS),
        (
            FailureSignature(crash_is_failure=True),
            _result(ExecutionOutcome.CRASHED, None),
            OracleVerdict.FAILS,
        ),
        (FailureSignature(exit_codes=frozenset({2})), _result(exit_code=2), OracleVerdict.FAILS),
        (
            FailureSignature(exit_codes=frozenset({2})),
            _result(exit_code=1),
            OracleVerdict.AMBIGUOUS,
        ),
        (
            FailureSignature(output_pattern=r"^AssertionError"),
            _result(stderr="Traceback\nAssertionError: boom\n"),
            OracleVerdict.FAILS,
        ),
        (
            FailureSignature(output_pattern=r"^AssertionError"),
            _result(stderr="ImportError: missing\n"),
            OracleVerdict.AMBIGUOUS,
        ),
    ],
)
def test_failure_signature_classification(
    signature: FailureSignature, result: ExecutionResult, verdict: OracleVerdict
) -> None:
    assert signature.classify(result) is verdict


def test_signature_from_minimize_request() -> None:
    request = MinimizeRequest(
        tenant_id="tenant-a",
        input_text="a\n",
        command="python check.py",
        expected_exit_codes=(3,),
        output_pattern="boom",
        timeout_is_failure=False,
        crash_is_failure=True,
    )
    signature = FailureSignature.from_request(request)

    assert signature.exit_codes == frozenset({3})
    assert signature.output_pattern == "boom"
    assert not signature.timeout_is_failure
    assert signature.crash_is_failure


def test_minimize_request_treats_hangs_as_the_failure_by_default() -> None:
    signature = FailureSignature.from_request(
        MinimizeRequest(tenant_id="tenant-a", input_text="a\n", command="python check.py")
    )

    assert signature.classify(_result(ExecutionOutcome.TIMED_OUT, None)) is OracleVerdict.FAILS
    assert signature.classify(_result(ExecutionOutcome.CRASHED, None)) is OracleVerdict.AMBIGUOUS


def _boom_responder(request: ExecutionRequest) -> ExecutionResult:
    content = request.inputs[0].content
    failing = b"boom" in content
    return ExecutionResult(
        content_hash=request.content_hash,
        outcome=ExecutionOutcome.COMPLETED,
        exit_code=1 if failing else 0,
        stderr="boom detected" if failing else "",
    )


async def test_scheduler_oracle_minimizes_through_the_cache(fake_executor: FakeExecutor) -> None:
    fake_executor.responder = _boom_responder
    scheduler = JobScheduler(fake_executor)
    oracle = SchedulerOracle(
        scheduler,
        tenant_id="tenant-a",
        command=("python", "check.py"),
        signature=FailureSignature(output_pattern="boom detected"),
        input_path="case/input.txt",
    )
    text = "".join(f"row {index}\n" for index in range(12)).replace("row 7", "row boom")

    first = await minimize_text(text, oracle)
    executed = fake_executor.runs
    second = await minimize_text(text, oracle)

    assert first.status is MinimizationStatus.MINIMAL
    assert first.minimized_input == "row boom\n"
    assert second.minimized_input == first.minimized_input
    assert fake_executor.runs == executed
    assert oracle.executions == first.oracle_calls + second.oracle_calls
    request = fake_executor.calls[0]
    assert request.inputs[0].path == "case/input.txt"
    assert request.command == ("python", "check.py")
    assert not request.network.grants_egress
    await scheduler.shutdown()


async def test_request_for_depends_on_candidate(fake_executor: FakeExecutor) -> None:
    oracle = SchedulerOracle(
        JobScheduler(fake_executor),
        tenant_id="tenant-a",
        command=("cat", "input.txt"),
        signature=FailureSignature(),
    )
    assert oracle.request_for("a").content_hash != oracle.request_for("b").content_hash
    assert oracle.request_for("a").content_hash == oracle.request_for("a").content_hash
