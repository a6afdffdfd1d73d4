"""Small helpers shared by the engine and the CLI."""

from release_orchestrator.utils.concurrency import (
    CancellationToken,
    KeyedTryLock,
    WorkerPool,
    run_with_timeout,
)

__all__ = [
    "CancellationToken",
    "KeyedTryLock",
    "WorkerPool",
    "run_with_timeout",
]
