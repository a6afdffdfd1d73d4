"""
release-orchestrator: orchestration coordinator

File: src/release_orchestrator/engine/coordinator.py

Purpose
- The scheduling loop: every tick, evaluate each release that is neither RELEASED nor
  abandoned,
  at most one evaluation per release at a time and up to
  ``max_concurrent_releases`` releases concurrently.
- The ingress point for webhook callbacks, build uploads and operator actions, all of
  which serialize with the loop on the same per-release lock.

Locking
- The per-release lock is an in-process try-lock plus the durable ``is_executing``
  flag on the release's stage-status record. The loop skips a busy release; ingress
  waits up to ``ingress_lock_timeout_seconds`` and then raises ``ReleaseBusyError``.
- A durable flag older than ``lock_stale_after_seconds`` belongs to a crashed worker
  and is taken over.
- The holder restamps the flag around every adapter call, so a slow adapter never
  makes a live flag look stale. Finding the flag under another owner aborts the
  evaluation with ``ExecutionLockLostError``.

Failure isolation
- Any exception raised while evaluating one release is logged, counted and reported
  in the tick result; the lock is released and other releases are unaffected.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

import structlog

from release_orchestrator.domain import ids
from release_orchestrator.domain.base import JSONValue, as_enum, datetime_to_iso8601z
from release_orchestrator.domain.enums import (
    BuildSource,
    CallbackOutcome,
    Platform,
    ReleasePhase,
    Stage,
)
from release_orchestrator.domain.models import (
    BuildArtifact,
    RegressionCycle,
    Release,
    StageStatusRecord,
    Task,
)
from release_orchestrator.engine.artifacts import BuildArtifactTracker
from release_orchestrator.engine.context import OrchestrationContext
from release_orchestrator.engine.definitions import ReleaseDefinition
from release_orchestrator.engine.regression import RegressionCycleScheduler
from release_orchestrator.engine.stages import (
    PauseOutcome,
    StageStateMachine,
    require_open_release,
)
from release_orchestrator.engine.tasks import CallbackResult, RetryOutcome, TaskExecutionEngine
from release_orchestrator.errors import (
    ExecutionLockLostError,
    InvalidTransitionError,
    ReleaseBusyError,
    ValidationError,
)
from release_orchestrator.observability.logging import correlation_scope
from release_orchestrator.utils.concurrency import CancellationToken, WorkerPool

TEnum = TypeVar("TEnum", bound=Enum)

TICK_EVALUATED = "evaluated"
TICK_SKIPPED_BUSY = "skipped_busy"
TICK_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ReleaseTickResult:
    release_id: str
    outcome: str
    phase: ReleasePhase | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "release_id": self.release_id,
            "outcome": self.outcome,
            "phase": self.phase.value if self.phase is not None else None,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class TickReport:
    tick_id: str
    started_at: datetime
    results: tuple[ReleaseTickResult, ...]

    def _count(self, outcome: str) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)

    @property
    def evaluated(self) -> int:
        return self._count(TICK_EVALUATED)

    @property
    def skipped_busy(self) -> int:
        return self._count(TICK_SKIPPED_BUSY)

    @property
    def failed(self) -> int:
        return self._count(TICK_FAILED)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "tick_id": self.tick_id,
            "started_at": datetime_to_iso8601z(self.started_at),
            "evaluated": self.evaluated,
            "skipped_busy": self.skipped_busy,
            "failed": self.failed,
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True, slots=True)
class ReleaseSnapshot:
    """Read-only view of everything the engine tracks for one release."""

    release: Release
    stage_status: StageStatusRecord
    tasks: tuple[Task, ...]
    cycles: tuple[RegressionCycle, ...]
    staged_builds: tuple[BuildArtifact, ...]
    consumed_builds: tuple[BuildArtifact, ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "release": self.release.to_dict(),
            "stage_status": self.stage_status.to_dict(),
            "tasks": [task.to_dict() for task in self.tasks],
            "cycles": [cycle.to_dict() for cycle in self.cycles],
            "staged_builds": [build.to_dict() for build in self.staged_builds],
            "consumed_builds": [build.to_dict() for build in self.consumed_builds],
        }


class Coordinator:
    def __init__(self, ctx: OrchestrationContext, *, logger: Any | None = None) -> None:
        self._ctx = ctx
        self._logger = logger or structlog.get_logger(__name__)
        self.tracker = BuildArtifactTracker(ctx)
        self.tasks = TaskExecutionEngine(ctx, self.tracker, renew_lock=self._renew_execution_flag)
        self.scheduler = RegressionCycleScheduler(ctx, self.tracker, self.tasks)
        self.stages = StageStateMachine(ctx, self.tasks, self.scheduler)

    @property
    def context(self) -> OrchestrationContext:
        return self._ctx

    # ------------------------------------------------------------------
    # release creation
    # ------------------------------------------------------------------

    def create_release(self, definition: ReleaseDefinition) -> Release:
        """Persist a NOT_STARTED release with its stage record and regression slots."""
        now = self._ctx.now()
        try:
            release = Release(
                id=ids.generate_release_id(),
                tenant_id=definition.tenant_id,
                version=definition.version,
                platforms=definition.platforms,
                phase=ReleasePhase.NOT_STARTED,
                branch_name=definition.resolved_branch_name,
                base_branch=definition.base_branch,
                created_at=now,
                updated_at=now,
                kickoff_at=definition.kickoff_at,
                target_release_at=definition.target_release_at,
                build_modes=dict(definition.build_modes),
                integrations=definition.integrations,
                pre_regression_builds=definition.pre_regression_builds,
                automation_runs=definition.automation_runs,
            )
            record = StageStatusRecord(
                release_id=release.id,
                updated_at=now,
                armed_transitions=definition.auto_transitions,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        try:
            with self._ctx.db.transaction() as tx:
                self._ctx.releases.add(release, conn=tx)
                self._ctx.stage_statuses.add(record, conn=tx)
                for slot in sorted(definition.regression_slots):
                    self.scheduler.add_slot(release, slot, conn=tx)
        except sqlite3.IntegrityError as exc:
            raise ValidationError(
                f"release {definition.version} already exists for tenant {definition.tenant_id}"
            ) from exc
        self._ctx.metrics.inc("releases_created_total")
        self._logger.info(
            "release_created",
            release_id=release.id,
            tenant_id=release.tenant_id,
            version=release.version,
            platforms=[platform.value for platform in release.platforms],
            regression_slots=len(definition.regression_slots),
        )
        return release

    # ------------------------------------------------------------------
    # scheduling loop
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        """Evaluate every active release once."""
        tick_id = ids.generate_tick_id()
        started_at = self._ctx.now()
        release_ids = self._ctx.releases.list_active_ids()
        pool: WorkerPool[str, ReleaseTickResult] = WorkerPool(
            max_concurrency=self._ctx.settings.max_concurrent_releases
        )
        with correlation_scope(tick_id=tick_id), self._ctx.metrics.timed("tick_duration_seconds"):
            results = await pool.map(self._evaluate_one, release_ids)
        report = TickReport(tick_id=tick_id, started_at=started_at, results=tuple(results))
        self._ctx.metrics.inc("ticks_total")
        self._ctx.metrics.set_gauge("active_releases", float(len(release_ids)))
        self._logger.info(
            "tick_completed",
            tick_id=tick_id,
            releases=len(release_ids),
            evaluated=report.evaluated,
            skipped_busy=report.skipped_busy,
            failed=report.failed,
        )
        return report

    async def run_forever(
        self, cancel_token: CancellationToken | None = None, *, max_ticks: int | None = None
    ) -> int:
        """Tick every ``tick_interval_seconds`` until cancelled; returns the tick count."""
        if max_ticks is not None and max_ticks <= 0:
            raise ValueError("max_ticks must be > 0")
        token = cancel_token or CancellationToken()
        ticks = 0
        self._logger.info(
            "scheduler_started",
            owner_id=self._ctx.owner_id,
            tick_interval_seconds=self._ctx.settings.tick_interval_seconds,
        )
        while not token.is_cancelled:
            await self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if await token.sleep(self._ctx.settings.tick_interval_seconds):
                break
        self._logger.info("scheduler_stopped", ticks=ticks)
        return ticks

    async def _evaluate_one(self, release_id: str) -> ReleaseTickResult:
        with correlation_scope(release_id=release_id):
            try:
                acquired = self._try_lock(release_id)
            except Exception as exc:
                return self._evaluation_failed(release_id, exc)
            if not acquired:
                self._ctx.metrics.inc("releases_skipped_busy_total")
                self._logger.info("release_skipped_busy", release_id=release_id)
                return ReleaseTickResult(release_id, TICK_SKIPPED_BUSY)
            try:
                release = await self.stages.evaluate(self._ctx.releases.require(release_id))
            except Exception as exc:
                return self._evaluation_failed(release_id, exc)
            finally:
                self._unlock(release_id)
            self._ctx.metrics.inc("releases_evaluated_total")
            return ReleaseTickResult(release_id, TICK_EVALUATED, phase=release.phase)

    def _evaluation_failed(self, release_id: str, exc: Exception) -> ReleaseTickResult:
        self._ctx.metrics.inc(
            "release_evaluation_failures_total", labels={"error": type(exc).__name__}
        )
        self._logger.error(
            "release_evaluation_failed",
            release_id=release_id,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        return ReleaseTickResult(release_id, TICK_FAILED, error=f"{type(exc).__name__}: {exc}")

    def _try_lock(self, release_id: str) -> bool:
        if not self._ctx.locks.try_acquire(release_id):
            return False
        try:
            acquired = self._acquire_execution_flag(release_id)
        except Exception:
            self._ctx.locks.release(release_id)
            raise
        if not acquired:
            self._ctx.locks.release(release_id)
        return acquired

    def _acquire_execution_flag(self, release_id: str) -> bool:
        now = self._ctx.now()
        stale_before = now - timedelta(seconds=self._ctx.settings.lock_stale_after_seconds)
        return self._ctx.stage_statuses.try_acquire_execution(
            release_id, self._ctx.owner_id, now=now, stale_before=stale_before
        )

    def _renew_execution_flag(self, release_id: str) -> None:
        if not self._ctx.stage_statuses.renew_execution(
            release_id, self._ctx.owner_id, now=self._ctx.now()
        ):
            raise ExecutionLockLostError(release_id, self._ctx.owner_id)

    def _unlock(self, release_id: str) -> None:
        try:
            self._ctx.stage_statuses.release_execution(release_id, self._ctx.owner_id)
        except Exception as exc:
            # The flag goes stale and is taken over after lock_stale_after_seconds.
            self._logger.warning(
                "execution_flag_release_failed", release_id=release_id, error=str(exc)
            )
        finally:
            self._ctx.locks.release(release_id)

    @asynccontextmanager
    async def _locked(self, release_id: str) -> AsyncIterator[None]:
        """Hold the release lock for an ingress mutation, waiting a bounded time."""
        # Unknown ids would otherwise wait out the timeout: no row carries their flag.
        self._ctx.releases.require(release_id)
        timeout = self._ctx.settings.ingress_lock_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        if not await self._ctx.locks.acquire(release_id, timeout_seconds=timeout):
            raise ReleaseBusyError(release_id, waited_seconds=timeout)
        try:
            while not self._acquire_execution_flag(release_id):
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ReleaseBusyError(release_id, waited_seconds=timeout)
                await asyncio.sleep(min(0.05, remaining))
        except BaseException:
            self._ctx.locks.release(release_id)
            raise
        try:
            with correlation_scope(release_id=release_id):
                yield
        finally:
            self._unlock(release_id)

    # ------------------------------------------------------------------
    # ingress
    # ------------------------------------------------------------------

    async def on_callback(
        self,
        task_id: str,
        platform: Platform | str,
        outcome: CallbackOutcome | str,
        *,
        locator: str | None = None,
        reason: str | None = None,
    ) -> CallbackResult:
        """Webhook ingress: one platform's result for a task awaiting callbacks."""
        _check_id(ids.validate_task_id, task_id, "task_id")
        parsed_platform = _parse_enum(Platform, platform, "platform")
        parsed_outcome = _parse_enum(CallbackOutcome, outcome, "outcome")
        task = self._ctx.tasks.require(task_id)
        async with self._locked(task.release_id):
            with correlation_scope(task_id=task_id, cycle_id=task.cycle_id):
                return self.tasks.handle_callback(
                    task_id, parsed_platform, parsed_outcome, locator=locator, reason=reason
                )

    async def on_build_uploaded(
        self,
        release_id: str,
        platform: Platform | str,
        stage: Stage | str,
        *,
        locator: str | None = None,
        source: BuildSource | str = BuildSource.MANUAL,
    ) -> BuildArtifact:
        """Build-upload ingress: stage a build, replacing an unconsumed one for the key."""
        _check_id(ids.validate_release_id, release_id, "release_id")
        parsed_platform = _parse_enum(Platform, platform, "platform")
        parsed_stage = _parse_enum(Stage, stage, "stage")
        parsed_source = _parse_enum(BuildSource, source, "source")
        async with self._locked(release_id):
            release = self._ctx.releases.require(release_id)
            require_open_release(release)
            return self.tracker.stage_artifact(
                release, parsed_platform, parsed_stage, locator=locator, source=parsed_source
            )

    async def trigger_next_stage(self, release_id: str) -> Release:
        _check_id(ids.validate_release_id, release_id, "release_id")
        async with self._locked(release_id):
            return self.stages.trigger_next_stage(release_id)

    async def retry_task(self, task_id: str) -> RetryOutcome:
        _check_id(ids.validate_task_id, task_id, "task_id")
        task = self._ctx.tasks.require(task_id)
        async with self._locked(task.release_id):
            require_open_release(self._ctx.releases.require(task.release_id))
            return self.tasks.retry(task_id)

    async def abandon_cycle(self, cycle_id: str) -> RegressionCycle:
        _check_id(ids.validate_cycle_id, cycle_id, "cycle_id")
        cycle = self._ctx.cycles.require(cycle_id)
        async with self._locked(cycle.release_id):
            return self.scheduler.abandon_cycle(cycle_id)

    async def add_regression_slot(
        self, release_id: str, scheduled_at: datetime
    ) -> RegressionCycle:
        _check_id(ids.validate_release_id, release_id, "release_id")
        if scheduled_at.tzinfo is None:
            raise ValidationError("scheduled_at must be timezone-aware")
        async with self._locked(release_id):
            return self.stages.add_regression_slot(release_id, scheduled_at)

    async def arm_transition(
        self, release_id: str, phase: ReleasePhase | str, *, armed: bool = True
    ) -> StageStatusRecord:
        _check_id(ids.validate_release_id, release_id, "release_id")
        parsed_phase = _parse_enum(ReleasePhase, phase, "phase")
        async with self._locked(release_id):
            return self.stages.arm_transition(release_id, parsed_phase, armed=armed)

    async def abandon_release(self, release_id: str) -> Release:
        """Archive a release so the loop never evaluates it again; repeats are no-ops."""
        _check_id(ids.validate_release_id, release_id, "release_id")
        async with self._locked(release_id):
            return self.stages.abandon_release(release_id)

    async def pause_release(self, release_id: str) -> PauseOutcome:
        _check_id(ids.validate_release_id, release_id, "release_id")
        async with self._locked(release_id):
            return self.stages.pause_release(release_id)

    async def resume_release(self, release_id: str) -> StageStatusRecord:
        _check_id(ids.validate_release_id, release_id, "release_id")
        async with self._locked(release_id):
            return self.stages.resume_release(release_id)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def snapshot(self, release_id: str) -> ReleaseSnapshot:
        _check_id(ids.validate_release_id, release_id, "release_id")
        with self._ctx.db.transaction(immediate=False) as tx:
            return ReleaseSnapshot(
                release=self._ctx.releases.require(release_id, conn=tx),
                stage_status=self._ctx.stage_statuses.require(release_id, conn=tx),
                tasks=tuple(self._ctx.tasks.list_for_release(release_id, conn=tx)),
                cycles=tuple(self._ctx.cycles.list_for_release(release_id, conn=tx)),
                staged_builds=tuple(self.tracker.list_staged(release_id, conn=tx)),
                consumed_builds=tuple(self.tracker.list_consumed(release_id, conn=tx)),
            )

    def list_releases(
        self, *, phase: ReleasePhase | str | None = None, limit: int = 100, offset: int = 0
    ) -> list[Release]:
        parsed = None if phase is None else _parse_enum(ReleasePhase, phase, "phase")
        try:
            return self._ctx.releases.list(phase=parsed, limit=limit, offset=offset)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def list_staged(
        self, release_id: str, *, stage: Stage | str | None = None
    ) -> list[BuildArtifact]:
        _check_id(ids.validate_release_id, release_id, "release_id")
        parsed = None if stage is None else _parse_enum(Stage, stage, "stage")
        self._ctx.releases.require(release_id)
        return self.tracker.list_staged(release_id, stage=parsed)


def _check_id(validator: Callable[[str], None], value: object, name: str) -> None:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    try:
        validator(value)
    except ValueError as exc:
        raise ValidationError(f"{name}: {exc}") from exc


def _parse_enum(enum_type: type[TEnum], value: object, name: str) -> TEnum:
    try:
        return as_enum(enum_type, value, name)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


__all__ = [
    "TICK_EVALUATED",
    "TICK_FAILED",
    "TICK_SKIPPED_BUSY",
    "Coordinator",
    "ReleaseSnapshot",
    "ReleaseTickResult",
    "TickReport",
]
