"""Utility exports for filesystem, hashing, and concurrency helpers."""

from prefab.utils.concurrency import (
    CancellationToken,
    ClosableQueue,
    QueueClosedError,
    WorkerGroup,
    run_with_timeout,
)
from prefab.utils.fs import STATE_DIR_MODE, atomic_destination, atomic_write, ensure_directory
from prefab.utils.hashing import normalize_sha256

__all__ = [
    "STATE_DIR_MODE",
    "CancellationToken",
    "ClosableQueue",
    "QueueClosedError",
    "WorkerGroup",
    "atomic_destination",
    "atomic_write",
    "ensure_directory",
    "normalize_sha256",
    "run_with_timeout",
]
