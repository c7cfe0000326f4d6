"""Stable constants shared across verifier planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
AUDIT_RECORD_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
WORKSPACES_DIR: Final[PurePosixPath] = PurePosixPath("workspaces")
ARTIFACTS_DIR: Final[PurePosixPath] = PurePosixPath("artifacts")
LOGS_DIR: Final[PurePosixPath] = PurePosixPath("logs")
AUDIT_LOG_PATH: Final[PurePosixPath] = PurePosixPath("audit/audit.jsonl")

# Default tenant for CLI invocations that do not name one.
DEFAULT_TENANT: Final[str] = "local"

# Container image used by docker/podman backends when none is configured.
DEFAULT_SANDBOX_IMAGE: Final[str] = "python:3.12-slim"

__all__ = [
    "ARTIFACTS_DIR",
    "AUDIT_LOG_PATH",
    "AUDIT_RECORD_SCHEMA_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_SANDBOX_IMAGE",
    "DEFAULT_TENANT",
    "LOGS_DIR",
    "WORKSPACES_DIR",
]
