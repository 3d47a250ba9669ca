"""Utility exports for cancellation, bounded concurrency and timeouts."""

from joule_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    KeyedLock,
    WorkerPool,
    run_with_timeout,
)

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "KeyedLock",
    "WorkerPool",
    "run_with_timeout",
]
