"""Shared fixtures: an in-process isolation executor."""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import TYPE_CHECKING

import pytest

from nexus_verifier.domain.errors import ProvisioningError
from nexus_verifier.domain.models import (
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
    JobState,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from nexus_verifier.utils.concurrency import CancellationToken


class FakeExecutor:
    """Records every run and answers from ``responder`` without spawning processes.

    ``gate`` (when set) holds each run until the event fires or the run is
    cancelled; ``delay_seconds`` does the same with a timer. Provisioning failures
    are raised before the run is counted as active.
    """

    def __init__(self) -> None:
        self.calls: list[ExecutionRequest] = []
        self.responder: Callable[[ExecutionRequest], ExecutionResult] | None = None
        self.exit_code = 0
        self.delay_seconds = 0.0
        self.gate: asyncio.Event | None = None
        self.transient_failures = 0
        self.permanent_failure = False
        self.ignore_cancel = False
        self.active = 0
        self.peak_active = 0
        self.active_by_tenant: Counter[str] = Counter()
        self.peak_by_tenant: Counter[str] = Counter()

    @property
    def runs(self) -> int:
        return len(self.calls)

    async def run(
        self,
        request: ExecutionRequest,
        *,
        cancel_token: CancellationToken,
        on_phase: Callable[[JobState], None] | None = None,
    ) -> ExecutionResult:
        self.calls.append(request)
        if self.permanent_failure:
            raise ProvisioningError("sandbox image not found", transient=False)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise ProvisioningError("container engine busy")

        if on_phase is not None:
            on_phase(JobState.RUNNING)
        tenant = request.tenant_id
        self.active += 1
        self.active_by_tenant[tenant] += 1
        self.peak_active = max(self.peak_active, self.active)
        self.peak_by_tenant[tenant] = max(
            self.peak_by_tenant[tenant], self.active_by_tenant[tenant]
        )
        try:
            await self._hold(cancel_token)
        finally:
            self.active -= 1
            self.active_by_tenant[tenant] -= 1

        if cancel_token.is_cancelled and not self.ignore_cancel:
            return ExecutionResult(
                content_hash=request.content_hash,
                outcome=ExecutionOutcome.CRASHED,
                exit_code=None,
                termination_reason="cancelled",
            )
        if on_phase is not None:
            on_phase(JobState.COLLECTING)
        if self.responder is not None:
            return self.responder(request)
        return ExecutionResult(
            content_hash=request.content_hash,
            outcome=ExecutionOutcome.COMPLETED,
            exit_code=self.exit_code,
            stdout=" ".join(request.command),
        )

    async def _hold(self, cancel_token: CancellationToken) -> None:
        waiters: set[asyncio.Task[object]] = set()
        if self.gate is not None:
            waiters.add(asyncio.create_task(self.gate.wait()))
        elif self.delay_seconds > 0:
            waiters.add(asyncio.create_task(asyncio.sleep(self.delay_seconds)))
        else:
            return
        if not self.ignore_cancel:
            waiters.add(asyncio.create_task(cancel_token.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()


@pytest.fixture
def executor_factory() -> type[FakeExecutor]:
    return FakeExecutor


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()
