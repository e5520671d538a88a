"""Utility exports for concurrency helpers."""

from phasegate.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    OperationCancelled,
    WorkerPool,
    run_with_timeout,
)

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "OperationCancelled",
    "WorkerPool",
    "run_with_timeout",
]
