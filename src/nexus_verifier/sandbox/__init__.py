"""Isolation executors, execution overlays, and egress admission."""

from nexus_verifier.sandbox.executor import (
    ExecutorSettings,
    IsolationExecutor,
    LocalSandboxExecutor,
    SandboxBackend,
    build_executor,
)
from nexus_verifier.sandbox.network_policy import NetworkDecision, NetworkPolicy
from nexus_verifier.sandbox.overlay import ArtifactStore, SandboxOverlay

__all__ = [
    "ArtifactStore",
    "ExecutorSettings",
    "IsolationExecutor",
    "LocalSandboxExecutor",
    "NetworkDecision",
    "NetworkPolicy",
    "SandboxBackend",
    "SandboxOverlay",
    "build_executor",
]
