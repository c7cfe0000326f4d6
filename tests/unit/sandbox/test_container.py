"""Unit tests for container command construction and backend selection."""

from __future__ import annotations

import shutil
from typing import TYPE_CHECKING

import pytest

from nexus_verifier.domain.errors import ProvisioningError
from nexus_verifier.domain.models import ExecutionRequest, NetworkAccess, ResourceLimits
from nexus_verifier.sandbox.container import CONTAINER_WORKSPACE, ContainerSandboxExecutor
from nexus_verifier.sandbox.executor import (
    ExecutorSettings,
    LocalSandboxExecutor,
    build_executor,
)
from nexus_verifier.sandbox.overlay import SandboxOverlay

if TYPE_CHECKING:
    from pathlib import Path


def _settings(tmp_path: Path) -> ExecutorSettings:
    return ExecutorSettings(
        workspace_root=tmp_path / "workspaces", artifact_root=tmp_path / "artifacts"
    )


def _fake_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")


def _flag(argv: list[str], name: str) -> str:
    return argv[argv.index(name) + 1]


def test_denied_request_runs_without_network(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _fake_engine(monkeypatch)
    executor = ContainerSandboxExecutor(_settings(tmp_path), engine="podman", image="python:3.12")
    overlay = SandboxOverlay(tmp_path / "overlay", tmp_path)
    request = ExecutionRequest(
        tenant_id="tenant-a",
        command="pytest -q",
        limits=ResourceLimits(
            memory_bytes=256 * 1024 * 1024, cpu_cores=0.5, cpu_time_seconds=2.5, max_processes=64
        ),
        env={"CI": "1"},
        workdir="pkg",
    )

    argv = executor.build_argv(request, overlay, "nexus-verifier-test")

    assert argv[:3] == ["/usr/bin/podman", "run", "--rm"]
    assert _flag(argv, "--network") == "none"
    assert _flag(argv, "--memory") == f"{256 * 1024 * 1024}b"
    assert _flag(argv, "--cpus") == "0.5"
    assert _flag(argv, "--pids-limit") == "64"
    assert _flag(argv, "--ulimit") == "cpu=3:4"
    assert _flag(argv, "--workdir") == f"{CONTAINER_WORKSPACE}/pkg"
    assert _flag(argv, "--volume") == f"{overlay.root}:{CONTAINER_WORKSPACE}:rw"
    assert "CI=1" in argv
    assert argv[-3:] == ["python:3.12", "pytest", "-q"]


def test_allow_listed_request_uses_egress_network(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _fake_engine(monkeypatch)
    executor = ContainerSandboxExecutor(
        _settings(tmp_path), image="python:3.12", egress_network="egress-proxy"
    )
    request = ExecutionRequest(
        tenant_id="tenant-a",
        command="pip download requests",
        network=NetworkAccess.allow("pypi.org"),
        limits=ResourceLimits(max_processes=None),
    )

    argv = executor.build_argv(request, SandboxOverlay(tmp_path, tmp_path), "c")

    assert _flag(argv, "--network") == "egress-proxy"
    assert "--pids-limit" not in argv
    assert "--ulimit" not in argv
    assert "NO_PROXY=pypi.org" in argv


def test_missing_engine_is_a_permanent_provisioning_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(shutil, "which", lambda name: None)

    with pytest.raises(ProvisioningError) as excinfo:
        ContainerSandboxExecutor(_settings(tmp_path), engine="docker", image="python:3.12")

    assert not excinfo.value.transient


def test_build_executor_selects_backend(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    assert isinstance(build_executor("none", _settings(tmp_path)), LocalSandboxExecutor)

    _fake_engine(monkeypatch)
    container = build_executor(" Docker ", _settings(tmp_path), image="python:3.12")
    assert isinstance(container, ContainerSandboxExecutor)

    with pytest.raises(ValueError, match="requires an image"):
        build_executor("podman", _settings(tmp_path))
    with pytest.raises(ValueError):
        build_executor("firecracker", _settings(tmp_path))
