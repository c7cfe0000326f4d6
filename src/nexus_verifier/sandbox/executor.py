"""Isolation executors: run one ``ExecutionRequest`` in an ephemeral environment.

The ``none`` backend runs the command as a local child process inside a private
overlay directory. It starts the child in its own session with a scrubbed
environment, applies POSIX rlimits where they are safe, and samples the process
tree's resident memory and CPU time with ``psutil``, killing the tree when it
crosses the memory ceiling or uses more than ``cpu_cores`` worth of CPU.
Container backends live in :mod:`nexus_verifier.sandbox.container` and
share the same process supervision.

Outcome classification:

- wall clock exceeded -> ``TIMED_OUT``
- memory ceiling or CPU share exceeded, or death by signal -> ``CRASHED``
- any exit status, zero or not -> ``COMPLETED``
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import signal
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from enum import StrEnum
from pathlib import Path
from typing import Final, Protocol

import psutil
import structlog

from nexus_verifier.domain.models import (
    ArtifactRef,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionResult,
    JobState,
    NetworkMode,
    ResourceLimits,
)
from nexus_verifier.sandbox.network_policy import sandbox_network_environment
from nexus_verifier.sandbox.overlay import ArtifactStore, SandboxOverlay
from nexus_verifier.utils.concurrency import CancellationToken

PhaseCallback = Callable[[JobState], None]
KillHook = Callable[[], Awaitable[None]]

KILL_REASON_TIMEOUT: Final[str] = "wall_clock_timeout"
KILL_REASON_MEMORY: Final[str] = "memory_limit_exceeded"
KILL_REASON_CPU: Final[str] = "cpu_limit_exceeded"
KILL_REASON_CANCELLED: Final[str] = "cancelled"

_READ_CHUNK_BYTES: Final[int] = 64 * 1024
_DRAIN_GRACE_SECONDS: Final[float] = 2.0
_COMMAND_NOT_FOUND_EXIT: Final[int] = 127
# Start-up slack before the CPU share applies.
_CPU_BURST_SECONDS: Final[float] = 0.5

logger = structlog.get_logger(__name__)


class SandboxBackend(StrEnum):
    """Backend names accepted by :func:`build_executor`."""

    NONE = "none"
    DOCKER = "docker"
    PODMAN = "podman"


class IsolationExecutor(Protocol):
    async def run(
        self,
        request: ExecutionRequest,
        *,
        cancel_token: CancellationToken,
        on_phase: PhaseCallback | None = None,
    ) -> ExecutionResult: ...


@dataclass(frozen=True, slots=True)
class ExecutorSettings:
    """Host-side settings shared by every executor backend."""

    workspace_root: Path
    artifact_root: Path
    use_unshare: bool = False
    limit_address_space: bool = False
    memory_poll_interval_seconds: float = 0.05
    max_artifact_bytes: int = 64 * 1024 * 1024

    def __post_init__(self) -> None:
        object.__setattr__(self, "workspace_root", Path(self.workspace_root))
        object.__setattr__(self, "artifact_root", Path(self.artifact_root))
        if self.memory_poll_interval_seconds <= 0:
            raise ValueError("memory_poll_interval_seconds must be > 0")


@dataclass(slots=True)
class _CaptureBuffer:
    limit: int
    data: bytearray
    truncated: bool = False

    def feed(self, chunk: bytes) -> None:
        room = self.limit - len(self.data)
        if room > 0:
            self.data.extend(chunk[:room])
        if len(chunk) > room:
            self.truncated = True

    def text(self) -> str:
        return bytes(self.data).decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    """Raw result of a supervised child process, before outcome classification."""

    returncode: int | None
    stdout: str
    stderr: str
    stdout_truncated: bool
    stderr_truncated: bool
    kill_reason: str | None
    duration_ms: int


async def supervise_process(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    limits: ResourceLimits,
    cancel_token: CancellationToken,
    preexec_fn: Callable[[], None] | None = None,
    watch_resources: bool = True,
    poll_interval_seconds: float = 0.05,
    on_spawn: Callable[[], None] | None = None,
    on_kill: KillHook | None = None,
) -> ProcessOutcome:
    """Run ``argv`` to completion, enforcing wall clock, memory, CPU share and cancellation.

    Output streams are drained concurrently and capped at ``limits.max_output_bytes``
    each; the remainder is read and discarded so the child never blocks on a full pipe.
    """

    started = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        env=dict(env),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
        preexec_fn=preexec_fn,
    )
    if on_spawn is not None:
        on_spawn()

    stdout = _CaptureBuffer(limits.max_output_bytes, bytearray())
    stderr = _CaptureBuffer(limits.max_output_bytes, bytearray())
    readers = [
        asyncio.create_task(_drain(process.stdout, stdout)),
        asyncio.create_task(_drain(process.stderr, stderr)),
    ]
    wait_task = asyncio.create_task(process.wait())
    cancel_task = asyncio.create_task(cancel_token.wait())
    watchers: set[asyncio.Task[object]] = {cancel_task}
    monitor_task: asyncio.Task[str | None] | None = None
    if watch_resources:
        monitor_task = asyncio.create_task(
            _watch_resources(process.pid, limits, poll_interval_seconds)
        )
        watchers.add(monitor_task)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + limits.timeout_seconds
    kill_reason: str | None = None
    try:
        while not wait_task.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                kill_reason = KILL_REASON_TIMEOUT
                break
            done, _ = await asyncio.wait(
                {wait_task, *watchers},
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if wait_task in done:
                break
            if cancel_task in done:
                kill_reason = KILL_REASON_CANCELLED
                break
            if monitor_task is not None and monitor_task in done:
                watchers.discard(monitor_task)
                kill_reason = monitor_task.result()
                if kill_reason is not None:
                    break

        if kill_reason is not None:
            await _terminate(process.pid, on_kill)
        await wait_task
    except asyncio.CancelledError:
        await _terminate(process.pid, on_kill)
        with contextlib.suppress(asyncio.CancelledError, ProcessLookupError):
            await asyncio.shield(wait_task)
        raise
    finally:
        for watcher in watchers:
            watcher.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
        _, stragglers = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
        for reader in stragglers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)

    return ProcessOutcome(
        returncode=process.returncode,
        stdout=stdout.text(),
        stderr=stderr.text(),
        stdout_truncated=stdout.truncated,
        stderr_truncated=stderr.truncated,
        kill_reason=kill_reason,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


def classify_outcome(
    content_hash: str,
    process: ProcessOutcome,
    *,
    memory_exit_codes: frozenset[int] = frozenset(),
) -> ExecutionResult:
    """Map a supervised process outcome to an ``ExecutionResult``."""

    outcome = ExecutionOutcome.COMPLETED
    exit_code = process.returncode
    reason: str | None = None

    if process.kill_reason == KILL_REASON_TIMEOUT:
        outcome, exit_code, reason = ExecutionOutcome.TIMED_OUT, None, KILL_REASON_TIMEOUT
    elif process.kill_reason is not None:
        outcome, exit_code, reason = ExecutionOutcome.CRASHED, None, process.kill_reason
    elif process.returncode is not None and process.returncode < 0:
        signum = -process.returncode
        outcome, exit_code = ExecutionOutcome.CRASHED, None
        reason = "cpu_time_limit_exceeded" if signum == signal.SIGXCPU else f"signal:{signum}"
    elif process.returncode in memory_exit_codes:
        outcome, reason = ExecutionOutcome.CRASHED, KILL_REASON_MEMORY

    return ExecutionResult(
        content_hash=content_hash,
        outcome=outcome,
        exit_code=exit_code,
        stdout=process.stdout,
        stderr=process.stderr,
        duration_ms=process.duration_ms,
        termination_reason=reason,
        stdout_truncated=process.stdout_truncated,
        stderr_truncated=process.stderr_truncated,
    )


class LocalSandboxExecutor:
    """Executes requests as local child processes inside private overlays."""

    def __init__(self, settings: ExecutorSettings) -> None:
        self._settings = settings
        self._store = ArtifactStore(
            settings.artifact_root, max_artifact_bytes=settings.max_artifact_bytes
        )
        self._unshare = shutil.which("unshare") if settings.use_unshare else None

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._store

    async def run(
        self,
        request: ExecutionRequest,
        *,
        cancel_token: CancellationToken,
        on_phase: PhaseCallback | None = None,
    ) -> ExecutionResult:
        _notify(on_phase, JobState.PROVISIONING)
        overlay = await asyncio.to_thread(
            SandboxOverlay.provision, request, self._settings.workspace_root
        )
        try:
            argv = self._argv(request)
            env = self._environment(request, overlay)
            try:
                process = await supervise_process(
                    argv,
                    cwd=overlay.workdir(request.workdir),
                    env=env,
                    limits=request.limits,
                    cancel_token=cancel_token,
                    preexec_fn=_rlimit_preexec(
                        request.limits, limit_address_space=self._settings.limit_address_space
                    ),
                    poll_interval_seconds=self._settings.memory_poll_interval_seconds,
                    on_spawn=lambda: _notify(on_phase, JobState.RUNNING),
                )
            except (FileNotFoundError, PermissionError) as exc:
                return ExecutionResult(
                    content_hash=request.content_hash,
                    outcome=ExecutionOutcome.COMPLETED,
                    exit_code=_COMMAND_NOT_FOUND_EXIT,
                    stderr=f"{argv[0]}: {exc.strerror or exc}",
                    termination_reason="command_not_executable",
                )

            _notify(on_phase, JobState.COLLECTING)
            result = classify_outcome(request.content_hash, process)
            artifacts = await asyncio.to_thread(overlay.collect_artifacts, self._store)
            logger.debug(
                "sandbox_execution_finished",
                content_hash=request.content_hash,
                outcome=result.outcome.value,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                termination_reason=result.termination_reason,
                artifact_count=len(artifacts),
            )
            return _with_artifacts(result, artifacts)
        finally:
            await asyncio.to_thread(overlay.destroy)

    def _argv(self, request: ExecutionRequest) -> list[str]:
        argv = list(request.command)
        if self._unshare is not None and request.network.mode is NetworkMode.DENY:
            return [self._unshare, "--user", "--map-root-user", "--net", "--", *argv]
        return argv

    def _environment(self, request: ExecutionRequest, overlay: SandboxOverlay) -> dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": str(overlay.root),
            "TMPDIR": str(overlay.tmp_dir),
            "LANG": "C.UTF-8",
            "NEXUS_ARTIFACT_DIR": str(overlay.artifacts_dir),
        }
        env.update(sandbox_network_environment(request.network))
        env.update(dict(request.env))
        return env


def build_executor(
    backend: SandboxBackend | str,
    settings: ExecutorSettings,
    *,
    image: str | None = None,
    egress_network: str = "bridge",
) -> IsolationExecutor:
    resolved = SandboxBackend(str(backend).strip().lower())
    if resolved is SandboxBackend.NONE:
        return LocalSandboxExecutor(settings)

    from nexus_verifier.sandbox.container import ContainerSandboxExecutor

    if not image:
        raise ValueError(f"sandbox backend {resolved.value!r} requires an image")
    return ContainerSandboxExecutor(
        settings, engine=resolved.value, image=image, egress_network=egress_network
    )


def _with_artifacts(
    result: ExecutionResult, artifacts: tuple[ArtifactRef, ...]
) -> ExecutionResult:
    if not artifacts:
        return result
    return replace(result, artifacts=artifacts)


def _notify(on_phase: PhaseCallback | None, state: JobState) -> None:
    if on_phase is not None:
        on_phase(state)


async def _drain(stream: asyncio.StreamReader | None, buffer: _CaptureBuffer) -> None:
    if stream is None:
        return
    while chunk := await stream.read(_READ_CHUNK_BYTES):
        buffer.feed(chunk)


def cpu_share_allowance(cpu_cores: float, elapsed_seconds: float) -> float:
    """CPU seconds a tree may have used after ``elapsed_seconds`` at ``cpu_cores``."""

    return cpu_cores * max(0.0, elapsed_seconds) + _CPU_BURST_SECONDS


async def _watch_resources(
    pid: int, limits: ResourceLimits, interval_seconds: float
) -> str | None:
    """Return a kill reason once the process tree exceeds its memory or CPU share."""

    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return None
    started = time.monotonic()
    while True:
        try:
            members = [parent, *parent.children(recursive=True)]
        except psutil.NoSuchProcess:
            return None
        rss = 0
        cpu_seconds = 0.0
        for member in members:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                rss += member.memory_info().rss
                # children_* only covers reaped descendants, so nothing is counted twice.
                used = member.cpu_times()
                cpu_seconds += used.user + used.system + used.children_user + used.children_system
        if rss > limits.memory_bytes:
            return KILL_REASON_MEMORY
        if cpu_seconds > cpu_share_allowance(limits.cpu_cores, time.monotonic() - started):
            return KILL_REASON_CPU
        try:
            if parent.status() == psutil.STATUS_ZOMBIE:
                return None
        except psutil.NoSuchProcess:
            return None
        await asyncio.sleep(interval_seconds)


async def _terminate(pid: int, on_kill: KillHook | None) -> None:
    if on_kill is not None:
        with contextlib.suppress(OSError, asyncio.TimeoutError):
            await asyncio.wait_for(on_kill(), timeout=_DRAIN_GRACE_SECONDS)
    kill_process_tree(pid)


def kill_process_tree(pid: int) -> None:
    """SIGKILL ``pid``'s session and every descendant that is still alive."""

    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, signal.SIGKILL)
    try:
        parent = psutil.Process(pid)
        members = [*parent.children(recursive=True), parent]
    except psutil.NoSuchProcess:
        return
    for member in members:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            member.kill()


def _rlimit_preexec(
    limits: ResourceLimits, *, limit_address_space: bool
) -> Callable[[], None] | None:
    if os.name != "posix":
        return None
    import resource

    cpu_seconds = limits.cpu_time_seconds
    memory_bytes = limits.memory_bytes

    def apply_limits() -> None:
        if cpu_seconds is not None:
            soft = max(1, int(cpu_seconds))
            resource.setrlimit(resource.RLIMIT_CPU, (soft, soft + 1))
        if limit_address_space:
            resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))

    return apply_limits


__all__ = [
    "ExecutorSettings",
    "IsolationExecutor",
    "KILL_REASON_CANCELLED",
    "KILL_REASON_CPU",
    "KILL_REASON_MEMORY",
    "KILL_REASON_TIMEOUT",
    "LocalSandboxExecutor",
    "PhaseCallback",
    "ProcessOutcome",
    "SandboxBackend",
    "build_executor",
    "classify_outcome",
    "cpu_share_allowance",
    "kill_process_tree",
    "supervise_process",
]
