"""
release-orchestrator: stage state machine

File: src/release_orchestrator/engine/stages.py

Purpose
- Own the per-release phase ``NOT_STARTED -> KICKOFF -> REGRESSION -> POST_REGRESSION
  -> RELEASED`` and the orthogonal status of each orchestrated stage.

Gates
- KICKOFF is entered on the first evaluation at or after ``kickoff_at`` (at once when
  unset) or by an explicit trigger.
- A stage is COMPLETED when all its tasks are COMPLETED or SKIPPED; Regression when
  every cycle is DONE or ABANDONED. A FAILED task holds its stage IN_PROGRESS.
- The next phase is entered only after the current stage COMPLETED, and then either
  because its transition is armed or because an operator triggered it.

Operator holds
- A paused release is skipped by evaluation until an operator resumes it; manual
  triggers still apply while it is paused.
- Abandoning a release archives it: it leaves the scheduling loop for good and its
  phase never moves again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from release_orchestrator.domain.enums import PauseType, ReleasePhase, Stage, StageStatus
from release_orchestrator.domain.models import RegressionCycle, Release, StageStatusRecord
from release_orchestrator.engine.context import OrchestrationContext
from release_orchestrator.engine.regression import RegressionCycleScheduler, cycles_complete
from release_orchestrator.engine.tasks import TaskExecutionEngine, tasks_satisfied
from release_orchestrator.errors import InvalidTransitionError, ValidationError

ARMABLE_PHASES = (ReleasePhase.REGRESSION, ReleasePhase.POST_REGRESSION, ReleasePhase.RELEASED)


@dataclass(frozen=True, slots=True)
class PauseOutcome:
    accepted: bool
    record: StageStatusRecord
    reason: str | None = None


class StageStateMachine:
    def __init__(
        self,
        ctx: OrchestrationContext,
        task_engine: TaskExecutionEngine,
        scheduler: RegressionCycleScheduler,
        *,
        logger: Any | None = None,
    ) -> None:
        self._ctx = ctx
        self._tasks = task_engine
        self._scheduler = scheduler
        self._logger = logger or structlog.get_logger(__name__)

    async def evaluate(self, release: Release) -> Release:
        """Advance ``release`` as far as its gates allow in one tick."""
        if release.is_archived or self._ctx.stage_statuses.require(release.id).is_paused:
            return release
        if release.phase is ReleasePhase.NOT_STARTED:
            if release.kickoff_at is not None and self._ctx.now() < release.kickoff_at:
                return release
            release = self._enter(release, ReleasePhase.KICKOFF, trigger="kickoff_time")

        while True:
            stage = release.phase.stage
            if stage is None:
                return release
            record = self._ctx.stage_statuses.require(release.id)
            if record.status_of(stage) is not StageStatus.COMPLETED:
                if not await self._progress(release, stage):
                    return release
                record = self._ctx.stage_statuses.set_status(
                    release.id, stage, StageStatus.COMPLETED, now=self._ctx.now()
                )
                self._logger.info("stage_completed", release_id=release.id, stage=stage.value)

            next_phase = release.phase.next_phase()
            if next_phase is None or not record.is_armed(next_phase):
                return release
            release = self._enter(release, next_phase, trigger="armed")

    def trigger_next_stage(self, release_id: str) -> Release:
        """Operator override of the auto-transition flag; the completion gate still applies."""
        release = require_open_release(self._ctx.releases.require(release_id))
        stage = release.phase.stage
        if stage is not None:
            status = self._ctx.stage_statuses.require(release_id).status_of(stage)
            if status is not StageStatus.COMPLETED:
                raise InvalidTransitionError(
                    f"release {release_id}: stage {stage.value} is {status.value}; "
                    "it must be completed before the next stage starts"
                )
        next_phase = release.phase.next_phase()
        assert next_phase is not None
        return self._enter(release, next_phase, trigger="manual")

    def arm_transition(
        self, release_id: str, phase: ReleasePhase, *, armed: bool = True
    ) -> StageStatusRecord:
        if phase not in ARMABLE_PHASES:
            raise ValidationError(
                f"only {', '.join(p.value for p in ARMABLE_PHASES)} transitions can be armed"
            )
        self._ctx.releases.require(release_id)
        record = self._ctx.stage_statuses.set_armed(
            release_id, phase, armed=armed, now=self._ctx.now()
        )
        self._logger.info(
            "transition_armed" if armed else "transition_disarmed",
            release_id=release_id,
            phase=phase.value,
        )
        return record

    def add_regression_slot(self, release_id: str, scheduled_at: datetime) -> RegressionCycle:
        """Append a slot; a completed Regression stage reopens while the release is in it."""
        with self._ctx.db.transaction() as tx:
            release = require_open_release(self._ctx.releases.require(release_id, conn=tx))
            if release.phase.rank > ReleasePhase.REGRESSION.rank:
                raise InvalidTransitionError(
                    f"release {release_id} has left regression ({release.phase.value})"
                )
            cycle = self._scheduler.add_slot(release, scheduled_at, conn=tx)
            record = self._ctx.stage_statuses.require(release_id, conn=tx)
            if (
                release.phase is ReleasePhase.REGRESSION
                and record.regression is StageStatus.COMPLETED
            ):
                self._ctx.stage_statuses.set_status(
                    release_id,
                    Stage.REGRESSION,
                    StageStatus.IN_PROGRESS,
                    now=self._ctx.now(),
                    conn=tx,
                )
                self._logger.info("stage_reopened", release_id=release_id, stage="regression")
        return cycle

    def abandon_release(self, release_id: str) -> Release:
        """Archive ``release_id`` for good; abandoning it again changes nothing."""
        with self._ctx.db.transaction() as tx:
            release = self._ctx.releases.require(release_id, conn=tx)
            if release.is_archived:
                return release
            if release.phase is ReleasePhase.RELEASED:
                raise InvalidTransitionError(f"release {release_id} is already released")
            archived = self._ctx.releases.archive(release_id, now=self._ctx.now(), conn=tx)
        self._ctx.metrics.inc("releases_abandoned_total")
        self._logger.info("release_abandoned", release_id=release_id, phase=archived.phase.value)
        return archived

    def pause_release(self, release_id: str) -> PauseOutcome:
        release = require_open_release(self._ctx.releases.require(release_id))
        record = self._ctx.stage_statuses.require(release.id)
        if record.is_paused:
            return PauseOutcome(False, record, "already_paused")
        changed = self._ctx.stage_statuses.set_pause(
            release_id, PauseType.USER_REQUESTED, expected=PauseType.NONE, now=self._ctx.now()
        )
        record = self._ctx.stage_statuses.require(release_id)
        if not changed:
            return PauseOutcome(False, record, "already_paused")
        self._logger.info("release_paused", release_id=release_id, phase=release.phase.value)
        return PauseOutcome(True, record)

    def resume_release(self, release_id: str) -> StageStatusRecord:
        """Lift an operator pause; only a pause an operator requested can be resumed."""
        self._ctx.releases.require(release_id)
        record = self._ctx.stage_statuses.require(release_id)
        if record.pause_type is not PauseType.USER_REQUESTED or not (
            self._ctx.stage_statuses.set_pause(
                release_id,
                PauseType.NONE,
                expected=PauseType.USER_REQUESTED,
                now=self._ctx.now(),
            )
        ):
            raise InvalidTransitionError(f"release {release_id} is not paused by an operator")
        self._logger.info("release_resumed", release_id=release_id)
        return self._ctx.stage_statuses.require(release_id)

    async def _progress(self, release: Release, stage: Stage) -> bool:
        if stage is Stage.REGRESSION:
            return cycles_complete(await self._scheduler.evaluate(release))
        tasks = await self._tasks.run_pass(
            release, self._ctx.tasks.list_for_stage(release.id, stage)
        )
        return tasks_satisfied(tasks)

    def _enter(self, release: Release, phase: ReleasePhase, *, trigger: str) -> Release:
        now = self._ctx.now()
        with self._ctx.db.transaction() as tx:
            updated = self._ctx.releases.set_phase(release.id, phase, now=now, conn=tx)
            stage = phase.stage
            if stage is not None:
                self._ctx.stage_statuses.set_status(
                    release.id, stage, StageStatus.IN_PROGRESS, now=now, conn=tx
                )
                if stage is not Stage.REGRESSION:
                    self._tasks.ensure_stage_tasks(updated, stage, conn=tx)
        self._ctx.metrics.inc("phase_transitions_total", labels={"phase": phase.value})
        self._logger.info(
            "phase_entered",
            release_id=release.id,
            phase=phase.value,
            previous_phase=release.phase.value,
            trigger=trigger,
        )
        return updated


def require_open_release(release: Release) -> Release:
    """``release`` itself, unless it is archived or already released."""
    if release.is_archived:
        raise InvalidTransitionError(f"release {release.id} is archived")
    if release.phase is ReleasePhase.RELEASED:
        raise InvalidTransitionError(f"release {release.id} is already released")
    return release


__all__ = ["ARMABLE_PHASES", "PauseOutcome", "StageStateMachine", "require_open_release"]
