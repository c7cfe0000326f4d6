"""
Delta debugging (ddmin) over failing inputs.

The input is split into units (lines or characters). Starting with two
partitions, each complement (the input minus one partition) is tested; a
complement that still fails becomes the new input and the partition size is
kept. When no complement fails, the partition count doubles, down to single
units. The search stops when no single-unit removal still fails, or when the
budget runs out, in which case the smallest input confirmed to fail is
returned flagged ``partial``.

Complements at one granularity are evaluated in windows of
``Budget.parallelism`` concurrent oracle calls. Whatever the completion order,
the window's winner is the smallest failing complement, ties going to the
lowest partition index, so the output is deterministic. Every verdict is
remembered by candidate digest for the length of the run; ``ambiguous``
verdicts are logged and count as "did not reproduce".
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from nexus_verifier.domain.errors import VerifierError
from nexus_verifier.reduction_plane.oracle import OracleVerdict
from nexus_verifier.utils.concurrency import WorkerPool
from nexus_verifier.utils.hashing import sha256_text

if TYPE_CHECKING:
    from nexus_verifier.domain.models import JSONValue
    from nexus_verifier.reduction_plane.oracle import Oracle
    from nexus_verifier.utils.concurrency import CancellationToken

Clock = Callable[[], float]

_UNITS: Final[frozenset[str]] = frozenset({"lines", "chars"})


class MinimizationStatus(StrEnum):
    MINIMAL = "minimal"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    NOT_REPRODUCED = "not_reproduced"


@dataclass(frozen=True, slots=True)
class Budget:
    max_oracle_calls: int | None = None
    max_wall_clock_seconds: float | None = None
    parallelism: int = 1

    def __post_init__(self) -> None:
        if self.max_oracle_calls is not None and self.max_oracle_calls <= 0:
            raise ValueError("max_oracle_calls must be > 0")
        if self.max_wall_clock_seconds is not None and self.max_wall_clock_seconds <= 0:
            raise ValueError("max_wall_clock_seconds must be > 0")
        if self.parallelism <= 0:
            raise ValueError("parallelism must be > 0")


@dataclass(frozen=True, slots=True)
class Attempt:
    """One tested candidate. ``partition`` is ``None`` for the initial reproduction."""

    sequence: int
    partitions: int
    partition: int | None
    size: int
    verdict: OracleVerdict
    from_history: bool
    accepted: bool

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "sequence": self.sequence,
            "partitions": self.partitions,
            "partition": self.partition,
            "size": self.size,
            "verdict": self.verdict.value,
            "from_history": self.from_history,
            "accepted": self.accepted,
        }


@dataclass(frozen=True, slots=True)
class MinimizationResult:
    minimized_input: str
    status: MinimizationStatus
    attempt_log: tuple[Attempt, ...]
    oracle_calls: int
    initial_size: int
    final_size: int
    stop_reason: str | None = None

    @property
    def is_partial(self) -> bool:
        return self.status is not MinimizationStatus.MINIMAL

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "is_partial": self.is_partial,
            "oracle_calls": self.oracle_calls,
            "initial_size": self.initial_size,
            "final_size": self.final_size,
            "stop_reason": self.stop_reason,
            "minimized_input": self.minimized_input,
            "attempt_log": [attempt.to_dict() for attempt in self.attempt_log],
        }


@dataclass(slots=True)
class ReductionState:
    """Mutable state of one minimization run."""

    current: list[str]
    partitions: int = 2
    history: dict[str, OracleVerdict] = field(default_factory=dict)
    attempts: list[Attempt] = field(default_factory=list)
    oracle_calls: int = 0
    # Set when the call budget cut the last evaluated batch short.
    truncated: bool = False

    @property
    def best_failing(self) -> str:
        return "".join(self.current)


class _Stop(Exception):
    def __init__(self, status: MinimizationStatus, reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


class DeltaMinimizer:
    """Binary ddmin driver; one instance can serve many independent runs."""

    def __init__(self, *, clock: Clock = time.monotonic, logger: Any | None = None) -> None:
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def minimize(
        self,
        initial_input: str,
        oracle: Oracle,
        budget: Budget | None = None,
        *,
        unit: str = "lines",
        cancel_token: CancellationToken | None = None,
    ) -> MinimizationResult:
        if unit not in _UNITS:
            raise ValueError(f"unit must be one of {sorted(_UNITS)}")
        budget = budget or Budget()
        units = split_units(initial_input, unit)
        state = ReductionState(current=units)
        deadline = (
            self._clock() + budget.max_wall_clock_seconds
            if budget.max_wall_clock_seconds is not None
            else None
        )

        try:
            verdicts = await self._evaluate(
                state, [(None, units)], oracle, budget, deadline, cancel_token
            )
        except _Stop as stop:
            status = (
                MinimizationStatus.CANCELLED
                if stop.status is MinimizationStatus.CANCELLED
                else MinimizationStatus.NOT_REPRODUCED
            )
            return self._result(state, len(units), status, stop.reason)
        if verdicts[0] is not OracleVerdict.FAILS:
            self._logger.warning(
                "minimizer_not_reproduced",
                verdict=verdicts[0].value,
                size=len(units),
            )
            return self._result(
                state, len(units), MinimizationStatus.NOT_REPRODUCED, "initial input did not fail"
            )

        try:
            await self._reduce(state, oracle, budget, deadline, cancel_token)
        except _Stop as stop:
            return self._result(state, len(units), stop.status, stop.reason)
        return self._result(state, len(units), MinimizationStatus.MINIMAL, None)

    async def _reduce(
        self,
        state: ReductionState,
        oracle: Oracle,
        budget: Budget,
        deadline: float | None,
        cancel_token: CancellationToken | None,
    ) -> None:
        while len(state.current) >= 2:
            partitions = min(state.partitions, len(state.current))
            state.partitions = partitions
            bounds = partition_bounds(len(state.current), partitions)
            complements = [
                (index, state.current[:start] + state.current[end:])
                for index, (start, end) in enumerate(bounds)
            ]

            winner: list[str] | None = None
            for offset in range(0, len(complements), budget.parallelism):
                window = complements[offset : offset + budget.parallelism]
                verdicts = await self._evaluate(
                    state, window, oracle, budget, deadline, cancel_token
                )
                failing = [
                    (len(candidate), index, candidate)
                    for (index, candidate), verdict in zip(window, verdicts, strict=False)
                    if verdict is OracleVerdict.FAILS
                ]
                if failing:
                    _, chosen_index, winner = min(failing, key=lambda item: (item[0], item[1]))
                    self._mark_accepted(state, chosen_index, len(winner))
                    break
                if state.truncated:
                    # Complements past the cutoff were never tested.
                    raise _Stop(MinimizationStatus.PARTIAL, "oracle call budget exhausted")

            if winner is not None:
                self._logger.debug(
                    "minimizer_reduced",
                    size=len(winner),
                    previous_size=len(state.current),
                    partitions=partitions,
                )
                state.current = winner
                # Same partition size on the smaller input.
                state.partitions = max(partitions - 1, 2)
                continue
            if partitions >= len(state.current):
                return
            state.partitions = min(partitions * 2, len(state.current))

    async def _evaluate(
        self,
        state: ReductionState,
        candidates: list[tuple[int | None, list[str]]],
        oracle: Oracle,
        budget: Budget,
        deadline: float | None,
        cancel_token: CancellationToken | None,
    ) -> list[OracleVerdict]:
        if cancel_token is not None and cancel_token.is_cancelled:
            raise _Stop(MinimizationStatus.CANCELLED, "cancelled")
        if deadline is not None and self._clock() >= deadline:
            raise _Stop(MinimizationStatus.PARTIAL, "wall clock budget exhausted")

        state.truncated = False
        texts = ["".join(units) for _, units in candidates]
        digests = [sha256_text(text) for text in texts]
        pending: dict[str, str] = {}
        for digest, text in zip(digests, texts, strict=True):
            if digest not in state.history and digest not in pending:
                pending[digest] = text

        if budget.max_oracle_calls is not None and pending:
            remaining = budget.max_oracle_calls - state.oracle_calls
            if remaining <= 0:
                raise _Stop(MinimizationStatus.PARTIAL, "oracle call budget exhausted")
            if len(pending) > remaining:
                # Only the leading candidates fit; later ones are never reached.
                allowed = list(pending)[:remaining]
                cutoff = next(
                    position
                    for position, digest in enumerate(digests)
                    if digest in pending and digest not in allowed
                )
                candidates, digests = candidates[:cutoff], digests[:cutoff]
                pending = {digest: pending[digest] for digest in allowed}
                state.truncated = True

        if pending:
            fresh = await self._run_oracle(list(pending.items()), oracle, budget, deadline, cancel_token)
            state.oracle_calls += len(fresh)
            state.history.update(fresh)

        verdicts: list[OracleVerdict] = []
        for (index, units), digest in zip(candidates, digests, strict=True):
            verdict = state.history[digest]
            if verdict is OracleVerdict.AMBIGUOUS:
                self._logger.info(
                    "minimizer_ambiguous_verdict",
                    partition=index,
                    partitions=state.partitions,
                    size=len(units),
                )
            state.attempts.append(
                Attempt(
                    sequence=len(state.attempts),
                    partitions=state.partitions,
                    partition=index,
                    size=len(units),
                    verdict=verdict,
                    from_history=digest not in pending,
                    accepted=False,
                )
            )
            verdicts.append(verdict)

        return verdicts

    async def _run_oracle(
        self,
        items: list[tuple[str, str]],
        oracle: Oracle,
        budget: Budget,
        deadline: float | None,
        cancel_token: CancellationToken | None,
    ) -> dict[str, OracleVerdict]:
        async def judge(digest: str, text: str) -> tuple[str, OracleVerdict]:
            return digest, await oracle(text)

        pool: WorkerPool[tuple[str, OracleVerdict]] = WorkerPool(budget.parallelism)
        batch = asyncio.create_task(pool.collect(judge(digest, text) for digest, text in items))
        waiters: set[asyncio.Task[Any]] = {batch}
        cancel_wait: asyncio.Task[None] | None = None
        if cancel_token is not None:
            cancel_wait = asyncio.create_task(cancel_token.wait())
            waiters.add(cancel_wait)
        timeout = max(0.0, deadline - self._clock()) if deadline is not None else None
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            batch.cancel()
            await asyncio.gather(batch, return_exceptions=True)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if batch not in done:
            batch.cancel()
            await asyncio.gather(batch, return_exceptions=True)
            if cancel_token is not None and cancel_token.is_cancelled:
                raise _Stop(MinimizationStatus.CANCELLED, "cancelled")
            raise _Stop(MinimizationStatus.PARTIAL, "wall clock budget exhausted")
        try:
            return dict(batch.result())
        except VerifierError as exc:
            self._logger.warning(
                "minimizer_oracle_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise _Stop(MinimizationStatus.PARTIAL, f"oracle failed: {exc}") from exc

    @staticmethod
    def _mark_accepted(state: ReductionState, partition: int, size: int) -> None:
        for position in range(len(state.attempts) - 1, -1, -1):
            attempt = state.attempts[position]
            if attempt.partition == partition and attempt.size == size:
                state.attempts[position] = Attempt(
                    sequence=attempt.sequence,
                    partitions=attempt.partitions,
                    partition=attempt.partition,
                    size=attempt.size,
                    verdict=attempt.verdict,
                    from_history=attempt.from_history,
                    accepted=True,
                )
                return

    def _result(
        self,
        state: ReductionState,
        initial_size: int,
        status: MinimizationStatus,
        reason: str | None,
    ) -> MinimizationResult:
        self._logger.info(
            "minimizer_finished",
            status=status.value,
            initial_size=initial_size,
            final_size=len(state.current),
            oracle_calls=state.oracle_calls,
            stop_reason=reason,
        )
        return MinimizationResult(
            minimized_input=state.best_failing,
            status=status,
            attempt_log=tuple(state.attempts),
            oracle_calls=state.oracle_calls,
            initial_size=initial_size,
            final_size=len(state.current),
            stop_reason=reason,
        )


async def minimize_text(
    text: str,
    oracle: Oracle,
    budget: Budget | None = None,
    *,
    cancel_token: CancellationToken | None = None,
) -> MinimizationResult:
    """Line-granular minimization of ``text``."""

    return await DeltaMinimizer().minimize(text, oracle, budget, cancel_token=cancel_token)


def split_units(text: str, unit: str) -> list[str]:
    if unit == "chars":
        return list(text)
    return text.splitlines(keepends=True)


def partition_bounds(length: int, partitions: int) -> list[tuple[int, int]]:
    """Split ``range(length)`` into ``partitions`` contiguous, near-equal slices."""

    if partitions <= 0 or partitions > max(1, length):
        raise ValueError(f"cannot split {length} units into {partitions} partitions")
    bounds: list[tuple[int, int]] = []
    start = 0
    for index in range(partitions):
        end = start + (length - start) // (partitions - index)
        bounds.append((start, end))
        start = end
    return bounds


__all__ = [
    "Attempt",
    "Budget",
    "DeltaMinimizer",
    "MinimizationResult",
    "MinimizationStatus",
    "ReductionState",
    "minimize_text",
    "partition_bounds",
    "split_units",
]
