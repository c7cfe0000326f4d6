"""Async concurrency primitives shared by the scheduler, executors, and minimizer."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag that can be awaited.

    The first ``cancel`` call wins: its reason is kept so whoever observes the
    cancellation (an executor killing a sandbox, a minimizer stopping early)
    can record why it happened.
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def __repr__(self) -> str:
        state = f"cancelled reason={self._reason!r}" if self.is_cancelled else "active"
        return f"<CancellationToken {state}>"

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise asyncio.CancelledError(self._reason or "operation cancelled")


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """Run awaitables with at most ``max_concurrency`` in flight.

    Results are yielded in completion order. The first failure cancels every
    task still running and is re-raised to the consumer unchanged.
    """

    max_concurrency: int
    cancel_token: CancellationToken | None = None
    in_flight: int = field(default=0, init=False)
    peak: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        queued = list(coroutines)
        if self.cancel_token is not None and self.cancel_token.is_cancelled:
            for awaitable in queued:
                _discard(awaitable)
            self.cancel_token.raise_if_cancelled()

        gate = asyncio.Semaphore(self.max_concurrency)
        finished: asyncio.Queue[asyncio.Task[T]] = asyncio.Queue()
        tasks = [asyncio.create_task(self._guarded(gate, awaitable)) for awaitable in queued]
        for task in tasks:
            task.add_done_callback(finished.put_nowait)

        try:
            for _ in tasks:
                completed = await finished.get()
                yield completed.result()
        finally:
            stragglers = [task for task in tasks if not task.done()]
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

    async def collect(self, coroutines: Iterable[Awaitable[T]]) -> list[T]:
        """Run ``coroutines`` and return every result once all have finished."""

        return [item async for item in self.run(coroutines)]

    async def _guarded(self, gate: asyncio.Semaphore, awaitable: Awaitable[T]) -> T:
        try:
            async with gate:
                if self.cancel_token is not None:
                    self.cancel_token.raise_if_cancelled()
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                try:
                    return await awaitable
                finally:
                    self.in_flight -= 1
        finally:
            _discard(awaitable)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` for at most ``timeout_seconds``.

    Raises ``TimeoutError`` when the deadline passes and ``asyncio.CancelledError``
    when ``cancel_token`` fires first. Either way the work is cancelled and
    awaited before returning.
    """
    if timeout_seconds <= 0:
        _discard(coroutine)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _discard(coroutine)
        raise asyncio.CancelledError("operation cancelled")

    work: asyncio.Future[T] = asyncio.ensure_future(coroutine)
    watcher = asyncio.create_task(cancel_token.wait()) if cancel_token is not None else None
    try:
        done, _ = await asyncio.wait(
            {work} if watcher is None else {work, watcher},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work in done:
            return work.result()
        if cancel_token is not None and cancel_token.is_cancelled:
            raise asyncio.CancelledError("operation cancelled")
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        leftovers = [task for task in (work, watcher) if task is not None and not task.done()]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)


def _discard(awaitable: Awaitable[object]) -> None:
    # Closing a never-started coroutine silences "coroutine was never awaited".
    if inspect.iscoroutine(awaitable) and inspect.getcoroutinestate(awaitable) == inspect.CORO_CREATED:
        awaitable.close()


__all__ = [
    "CancellationToken",
    "WorkerPool",
    "run_with_timeout",
]
