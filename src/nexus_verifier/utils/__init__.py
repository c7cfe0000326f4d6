"""Utility exports for filesystem, hashing, retry, and concurrency helpers."""

from nexus_verifier.utils.concurrency import (
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)
from nexus_verifier.utils.fs import (
    atomic_write,
    copy_tree,
    resolve_relative,
    safe_delete,
)
from nexus_verifier.utils.hashing import (
    canonical_json_digest,
    sha256_bytes,
    sha256_file,
    sha256_text,
    snapshot_digest,
    tree_manifest,
)
from nexus_verifier.utils.retry import RetryPolicy

__all__ = [
    "CancellationToken",
    "RetryPolicy",
    "WorkerPool",
    "atomic_write",
    "canonical_json_digest",
    "copy_tree",
    "resolve_relative",
    "run_with_timeout",
    "safe_delete",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
    "snapshot_digest",
    "tree_manifest",
]
