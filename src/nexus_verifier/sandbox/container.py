"""Docker/Podman executor backend.

The overlay is bind-mounted at ``/workspace`` and the container gets hard
ceilings from the request's limits. Engine exit status 125 means the container
never started (image pull failure, daemon trouble) and is reported as a
transient ``ProvisioningError`` so the scheduler can retry it.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import os
import shutil
from dataclasses import replace
from typing import TYPE_CHECKING, Final

import structlog

from nexus_verifier.domain.errors import ProvisioningError
from nexus_verifier.domain.ids import generate_ulid
from nexus_verifier.domain.models import ExecutionOutcome, JobState, NetworkMode
from nexus_verifier.sandbox.executor import (
    ExecutorSettings,
    PhaseCallback,
    classify_outcome,
    supervise_process,
)
from nexus_verifier.sandbox.network_policy import sandbox_network_environment
from nexus_verifier.sandbox.overlay import ArtifactStore, SandboxOverlay

if TYPE_CHECKING:
    from nexus_verifier.domain.models import ExecutionRequest, ExecutionResult
    from nexus_verifier.utils.concurrency import CancellationToken

CONTAINER_WORKSPACE: Final[str] = "/workspace"
_ENGINE_FAILURE_EXIT: Final[int] = 125
_OOM_KILLED_EXIT: Final[int] = 137
_CLIENT_ENV_KEYS: Final[tuple[str, ...]] = (
    "PATH",
    "HOME",
    "DOCKER_HOST",
    "DOCKER_CONFIG",
    "DOCKER_CONTEXT",
    "CONTAINER_HOST",
    "XDG_RUNTIME_DIR",
)

logger = structlog.get_logger(__name__)


class ContainerSandboxExecutor:
    """Runs each request in a throwaway container over its own overlay."""

    def __init__(
        self,
        settings: ExecutorSettings,
        *,
        engine: str = "docker",
        image: str,
        egress_network: str = "bridge",
    ) -> None:
        resolved = shutil.which(engine)
        if resolved is None:
            raise ProvisioningError(f"container engine {engine!r} not found on PATH", transient=False)
        self._engine = resolved
        self._image = image
        self._egress_network = egress_network
        self._settings = settings
        self._store = ArtifactStore(
            settings.artifact_root, max_artifact_bytes=settings.max_artifact_bytes
        )

    async def run(
        self,
        request: ExecutionRequest,
        *,
        cancel_token: CancellationToken,
        on_phase: PhaseCallback | None = None,
    ) -> ExecutionResult:
        if on_phase is not None:
            on_phase(JobState.PROVISIONING)
        overlay = await asyncio.to_thread(
            SandboxOverlay.provision, request, self._settings.workspace_root
        )
        container_name = f"nexus-verifier-{generate_ulid().lower()}"
        try:
            argv = self.build_argv(request, overlay, container_name)
            process = await supervise_process(
                argv,
                cwd=overlay.root,
                env=_engine_client_environment(),
                limits=request.limits,
                cancel_token=cancel_token,
                watch_resources=False,
                on_spawn=(lambda: on_phase(JobState.RUNNING)) if on_phase is not None else None,
                on_kill=lambda: self._kill_container(container_name),
            )
            if process.kill_reason is None and process.returncode == _ENGINE_FAILURE_EXIT:
                raise ProvisioningError(
                    f"{self._engine} could not start container: {process.stderr.strip()[:500]}",
                    transient=True,
                )
            if on_phase is not None:
                on_phase(JobState.COLLECTING)
            result = classify_outcome(
                request.content_hash,
                process,
                memory_exit_codes=frozenset({_OOM_KILLED_EXIT}),
            )
            if result.outcome is ExecutionOutcome.CRASHED and result.termination_reason is None:
                result = replace(result, termination_reason="container_killed")
            artifacts = await asyncio.to_thread(overlay.collect_artifacts, self._store)
            return replace(result, artifacts=artifacts) if artifacts else result
        finally:
            await asyncio.to_thread(overlay.destroy)

    def build_argv(
        self,
        request: ExecutionRequest,
        overlay: SandboxOverlay,
        container_name: str,
    ) -> list[str]:
        limits = request.limits
        network = "none" if request.network.mode is NetworkMode.DENY else self._egress_network
        workdir = CONTAINER_WORKSPACE
        if request.workdir != ".":
            workdir = f"{CONTAINER_WORKSPACE}/{request.workdir}"
        argv = [
            self._engine,
            "run",
            "--rm",
            "--name",
            container_name,
            "--network",
            network,
            "--memory",
            f"{limits.memory_bytes}b",
            "--memory-swap",
            f"{limits.memory_bytes}b",
            "--cpus",
            f"{limits.cpu_cores:g}",
            "--security-opt",
            "no-new-privileges",
            "--volume",
            f"{overlay.root}:{CONTAINER_WORKSPACE}:rw",
            "--workdir",
            workdir,
        ]
        if limits.max_processes is not None:
            argv += ["--pids-limit", str(limits.max_processes)]
        if limits.cpu_time_seconds is not None:
            cpu = max(1, math.ceil(limits.cpu_time_seconds))
            argv += ["--ulimit", f"cpu={cpu}:{cpu + 1}"]
        env = {"HOME": CONTAINER_WORKSPACE, "NEXUS_ARTIFACT_DIR": f"{CONTAINER_WORKSPACE}/artifacts"}
        env.update(sandbox_network_environment(request.network))
        env.update(dict(request.env))
        for key, value in sorted(env.items()):
            argv += ["--env", f"{key}={value}"]
        argv.append(self._image)
        argv.extend(request.command)
        return argv

    async def _kill_container(self, container_name: str) -> None:
        process = await asyncio.create_subprocess_exec(
            self._engine,
            "kill",
            container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        with contextlib.suppress(ProcessLookupError):
            await process.wait()
        logger.info("sandbox_container_killed", container=container_name)


def _engine_client_environment() -> dict[str, str]:
    """Host variables the engine CLI needs to reach its daemon; nothing else leaks in."""

    return {key: os.environ[key] for key in _CLIENT_ENV_KEYS if key in os.environ}


__all__ = ["CONTAINER_WORKSPACE", "ContainerSandboxExecutor"]
