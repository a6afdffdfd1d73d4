"""
release-orchestrator: regression cycle scheduler

File: src/release_orchestrator/engine/regression.py

Purpose
- Drive the repeating regression sub-state-machine while the Regression stage is
  active: progress the running cycle, start the next due slot once builds for every
  target platform are staged, retire cycles to DONE or ABANDONED.

Invariants
- At most one cycle per release is IN_PROGRESS (also enforced by a partial unique
  index in the state DB).
- A cycle never starts on its slot time alone; it starts on the first evaluation that
  finds a staged REGRESSION build for every platform, however late that is.
- Starting a cycle is one transaction: cycle IN_PROGRESS, build-trigger task created
  COMPLETED, staged builds consumed by that task and cycle, remaining tasks PENDING.
- Nothing abandons a cycle except ``abandon_cycle``.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

import structlog

from release_orchestrator.domain import ids
from release_orchestrator.domain.enums import (
    TERMINAL_CYCLE_STATUSES,
    CallbackOutcome,
    CycleStatus,
    Stage,
    TaskStatus,
    TaskType,
)
from release_orchestrator.domain.models import RegressionCycle, Release, Task
from release_orchestrator.domain.outputs import BuildOutput, BuildRef, TagOutput
from release_orchestrator.engine.artifacts import BuildArtifactTracker
from release_orchestrator.engine.catalog import cycle_task_specs
from release_orchestrator.engine.context import OrchestrationContext
from release_orchestrator.engine.tasks import TaskExecutionEngine, tasks_satisfied
from release_orchestrator.errors import InvalidTransitionError


class _CycleStartConflict(Exception):
    """Another evaluation started the cycle or took its builds first."""


def cycles_complete(cycles: Sequence[RegressionCycle]) -> bool:
    """True when at least one slot exists and every slot is DONE or ABANDONED."""
    return bool(cycles) and all(cycle.status in TERMINAL_CYCLE_STATUSES for cycle in cycles)


def active_cycle(cycles: Sequence[RegressionCycle]) -> RegressionCycle | None:
    return next((cycle for cycle in cycles if cycle.status is CycleStatus.IN_PROGRESS), None)


def next_due_cycle(cycles: Sequence[RegressionCycle]) -> RegressionCycle | None:
    pending = [cycle for cycle in cycles if cycle.status is CycleStatus.NOT_STARTED]
    return min(pending, key=lambda cycle: cycle.slot_index) if pending else None


class RegressionCycleScheduler:
    def __init__(
        self,
        ctx: OrchestrationContext,
        tracker: BuildArtifactTracker,
        task_engine: TaskExecutionEngine,
        *,
        logger: Any | None = None,
    ) -> None:
        self._ctx = ctx
        self._tracker = tracker
        self._tasks = task_engine
        self._logger = logger or structlog.get_logger(__name__)

    def add_slot(
        self,
        release: Release,
        scheduled_at: datetime,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> RegressionCycle:
        now = self._ctx.now()
        with self._ctx.db.transaction(conn=conn) as tx:
            cycle = RegressionCycle(
                id=ids.generate_cycle_id(),
                release_id=release.id,
                slot_index=self._ctx.cycles.next_slot_index(release.id, conn=tx),
                scheduled_at=scheduled_at,
                status=CycleStatus.NOT_STARTED,
                created_at=now,
                updated_at=now,
            )
            self._ctx.cycles.add(cycle, conn=tx)
        self._logger.info(
            "regression_slot_added",
            release_id=release.id,
            cycle_id=cycle.id,
            slot_index=cycle.slot_index,
            scheduled_at=cycle.scheduled_at.isoformat(),
        )
        return cycle

    async def evaluate(self, release: Release) -> list[RegressionCycle]:
        """One regression tick; returns the release's cycles after it."""
        cycles = self._ctx.cycles.list_for_release(release.id)
        cycle = active_cycle(cycles)
        if cycle is None:
            due = next_due_cycle(cycles)
            if due is None:
                return cycles
            cycle = self.start_cycle(release, due)
            if cycle is None:
                return cycles

        tasks = await self._tasks.run_pass(
            release, self._ctx.tasks.list_for_cycle(cycle.id), cycle=cycle
        )
        if tasks_satisfied(tasks):
            self._finish(cycle, tasks)
        return self._ctx.cycles.list_for_release(release.id)

    def start_cycle(self, release: Release, cycle: RegressionCycle) -> RegressionCycle | None:
        """Start ``cycle`` if every platform has a staged REGRESSION build; else ``None``."""
        if cycle.status is not CycleStatus.NOT_STARTED:
            return None
        try:
            with self._ctx.db.transaction() as tx:
                staged = self._tracker.staged_for(
                    release.id, Stage.REGRESSION, release.platforms, conn=tx
                )
                if staged is None:
                    return None
                now = self._ctx.now()
                first_cycle = not any(
                    other.started_at is not None
                    for other in self._ctx.cycles.list_for_release(release.id, conn=tx)
                    if other.id != cycle.id
                )
                started = replace(
                    cycle, status=CycleStatus.IN_PROGRESS, started_at=now, updated_at=now
                )
                try:
                    if not self._ctx.cycles.update(
                        started, expected_status=CycleStatus.NOT_STARTED, conn=tx
                    ):
                        raise _CycleStartConflict
                except sqlite3.IntegrityError as exc:
                    raise _CycleStartConflict from exc

                trigger_spec, *remaining = cycle_task_specs(release, first_cycle=first_cycle)
                build_ids = tuple(staged[platform].id for platform in release.platforms)
                trigger = replace(
                    self._tasks.new_task(release, trigger_spec, cycle_id=cycle.id),
                    status=TaskStatus.COMPLETED,
                    platform_results={p: CallbackOutcome.SUCCEEDED for p in release.platforms},
                    output=BuildOutput(
                        tuple(
                            BuildRef(platform, staged[platform].id, staged[platform].locator)
                            for platform in release.platforms
                        )
                    ),
                    consumed_build_ids=build_ids,
                    started_at=now,
                    completed_at=now,
                )
                if self._ctx.tasks.ensure(trigger, conn=tx).id != trigger.id:
                    raise _CycleStartConflict
                if not self._tracker.consume(
                    build_ids, task_id=trigger.id, cycle_id=cycle.id, conn=tx
                ):
                    raise _CycleStartConflict
                for spec in remaining:
                    self._ctx.tasks.ensure(
                        self._tasks.new_task(release, spec, cycle_id=cycle.id), conn=tx
                    )
        except _CycleStartConflict:
            self._logger.info(
                "regression_cycle_start_lost_race", release_id=release.id, cycle_id=cycle.id
            )
            return None

        self._ctx.metrics.inc("regression_cycles_started_total")
        self._logger.info(
            "regression_cycle_started",
            release_id=release.id,
            cycle_id=cycle.id,
            slot_index=cycle.slot_index,
            first_cycle=first_cycle,
            build_ids=list(build_ids),
        )
        return started

    def abandon_cycle(self, cycle_id: str) -> RegressionCycle:
        """Abandon a NOT_STARTED or IN_PROGRESS cycle, skipping its unfinished tasks."""
        with self._ctx.db.transaction() as tx:
            cycle = self._ctx.cycles.require(cycle_id, conn=tx)
            if cycle.status in TERMINAL_CYCLE_STATUSES:
                raise InvalidTransitionError(
                    f"cycle {cycle_id} is already {cycle.status.value}"
                )
            skipped = self._tasks.skip_unfinished(
                self._ctx.tasks.list_for_cycle(cycle_id, conn=tx), conn=tx
            )
            abandoned = replace(
                cycle,
                status=CycleStatus.ABANDONED,
                completed_at=self._ctx.now(),
                updated_at=self._ctx.now(),
            )
            if not self._ctx.cycles.update(abandoned, expected_status=cycle.status, conn=tx):
                raise InvalidTransitionError(f"cycle {cycle_id} changed while abandoning it")
        self._logger.info(
            "regression_cycle_abandoned",
            release_id=cycle.release_id,
            cycle_id=cycle_id,
            previous_status=cycle.status.value,
            skipped_tasks=len(skipped),
        )
        return abandoned

    def _finish(self, cycle: RegressionCycle, tasks: Sequence[Task]) -> RegressionCycle | None:
        tag_output = next(
            (
                task.output
                for task in tasks
                if task.task_type is TaskType.CREATE_RC_TAG and isinstance(task.output, TagOutput)
            ),
            None,
        )
        now = self._ctx.now()
        done = replace(
            cycle,
            status=CycleStatus.DONE,
            tag=tag_output.tag if tag_output is not None else cycle.tag,
            completed_at=now,
            updated_at=now,
        )
        if not self._ctx.cycles.update(done, expected_status=CycleStatus.IN_PROGRESS):
            return None
        self._ctx.metrics.inc("regression_cycles_done_total")
        self._logger.info(
            "regression_cycle_done",
            release_id=cycle.release_id,
            cycle_id=cycle.id,
            slot_index=cycle.slot_index,
            tag=done.tag,
        )
        return done


__all__ = [
    "RegressionCycleScheduler",
    "active_cycle",
    "cycles_complete",
    "next_due_cycle",
]
