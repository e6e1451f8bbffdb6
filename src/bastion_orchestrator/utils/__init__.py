"""Utility exports for filesystem, hashing, and concurrency helpers."""

from bastion_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)
from bastion_orchestrator.utils.fs import atomic_write, create_private_directory, safe_delete
from bastion_orchestrator.utils.hashing import sha256_bytes, sha256_text

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
    "create_private_directory",
    "run_with_timeout",
    "safe_delete",
    "sha256_bytes",
    "sha256_text",
]
