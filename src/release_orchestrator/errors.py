"""
release-orchestrator: error taxonomy

File: src/release_orchestrator/errors.py

Purpose
- Name the failure classes the engine distinguishes so ingress callers and the
  scheduling loop can route them without string matching.

Taxonomy
- ValidationError: malformed ingress input; rejected before any state is mutated.
- NotFoundError: an ingress call references an unknown release, task or cycle.
- InvalidTransitionError: a requested state change is not allowed from the current
  state (e.g. triggering the next stage before the current one completed).
- ReleaseBusyError: the per-release execution lock could not be taken in time.
  Transient; the caller retries later.
- ExecutionLockLostError: another worker took over the durable execution flag while an
  evaluation was running. The evaluation stops before its next adapter call or write.
- AdapterError: an integration adapter could not complete its call. The task engine
  converts it into a FAILED task with the message as the recorded reason.
"""

from __future__ import annotations


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures."""


class ValidationError(OrchestrationError, ValueError):
    """Ingress input was malformed; nothing was changed."""


class NotFoundError(OrchestrationError, LookupError):
    """A referenced release, task or cycle does not exist."""


class InvalidTransitionError(OrchestrationError):
    """Requested state change is not permitted from the current state."""


class ReleaseBusyError(OrchestrationError):
    """Per-release execution lock is held by another evaluation."""

    def __init__(self, release_id: str, *, waited_seconds: float = 0.0) -> None:
        self.release_id = release_id
        self.waited_seconds = waited_seconds
        super().__init__(
            f"release {release_id} is being evaluated elsewhere "
            f"(waited {waited_seconds:.1f}s for its execution lock)"
        )


class ExecutionLockLostError(OrchestrationError):
    """The durable execution flag no longer names this worker."""

    def __init__(self, release_id: str, owner: str) -> None:
        self.release_id = release_id
        self.owner = owner
        super().__init__(f"release {release_id}: execution flag is no longer held by {owner}")


class AdapterError(OrchestrationError):
    """Integration adapter failed to perform its external call."""


__all__ = [
    "AdapterError",
    "ExecutionLockLostError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrchestrationError",
    "ReleaseBusyError",
    "ValidationError",
]
