"""
release-orchestrator: task execution engine

File: src/release_orchestrator/engine/tasks.py

Purpose
- Create the tasks a stage or cycle requires, dispatch eligible ones to adapters and
  move tasks through their statuses in reaction to adapter outcomes, staged builds,
  webhook callbacks and operator retries.

Rules
- Only PENDING tasks dispatch. A task is eligible once every lower-sequence task of
  its stage (or cycle) is COMPLETED or SKIPPED, judged on the state at the start of
  the pass; a task unblocked mid-pass waits for the next tick.
- Every status write is compare-and-set on the status the engine observed. A write
  that loses its race is dropped, which makes redelivered callbacks, repeated retries
  and repeated ticks no-ops.
- A task found IN_PROGRESS when a pass starts was interrupted between its adapter
  call and the status write; it is failed with ``interrupted`` instead of redispatched.
- The execution flag is restamped before and after every adapter call. If another
  owner took it meanwhile the pass aborts and the adapter outcome is not written.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any

import structlog

from release_orchestrator.domain import ids
from release_orchestrator.domain.enums import (
    SATISFIED_TASK_STATUSES,
    BuildSource,
    CallbackOutcome,
    Platform,
    Stage,
    TaskStatus,
    TaskType,
)
from release_orchestrator.domain.models import RegressionCycle, Release, Task
from release_orchestrator.domain.outputs import (
    ApprovalOutput,
    AutomationOutput,
    BuildOutput,
    BuildRef,
    TaskOutput,
    check_output,
    expected_output_type,
)
from release_orchestrator.engine.adapters import (
    AwaitingCallback,
    AwaitingManualBuild,
    CompletedSync,
    DispatchContext,
    DispatchOutcome,
    Failed,
)
from release_orchestrator.engine.artifacts import BuildArtifactTracker
from release_orchestrator.engine.catalog import (
    TASK_SEQUENCE,
    CompletionMode,
    TaskSpec,
    spec_for,
    stage_task_specs,
)
from release_orchestrator.engine.context import OrchestrationContext
from release_orchestrator.errors import ValidationError
from release_orchestrator.utils.concurrency import run_with_timeout

_MAX_ERROR_CHARS = 4096
_LOCATOR_REF_PREFIX = "build_locator."
_RUN_REF_PREFIX = "run."

INTERRUPTED_REASON = "interrupted"
APPROVAL_PENDING_REASON = "release approval pending"


@dataclass(frozen=True, slots=True)
class CallbackResult:
    applied: bool
    task: Task
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class RetryOutcome:
    accepted: bool
    task: Task
    reason: str | None = None


class _StaleTask(Exception):
    """The task changed status between read and write; the transaction is rolled back."""


def tasks_satisfied(tasks: Sequence[Task]) -> bool:
    return all(task.status in SATISFIED_TASK_STATUSES for task in tasks)


def next_eligible(tasks: Sequence[Task]) -> Task | None:
    """The task the next pass may dispatch, if any."""
    for task in sorted(tasks, key=lambda item: item.sequence):
        if task.status in SATISFIED_TASK_STATUSES:
            continue
        return task if task.status is TaskStatus.PENDING else None
    return None


class TaskExecutionEngine:
    def __init__(
        self,
        ctx: OrchestrationContext,
        tracker: BuildArtifactTracker,
        *,
        renew_lock: Callable[[str], None] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._ctx = ctx
        self._tracker = tracker
        self._renew_lock = renew_lock
        self._logger = logger or structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def new_task(
        self,
        release: Release,
        spec: TaskSpec,
        *,
        cycle_id: str | None = None,
        status: TaskStatus = TaskStatus.PENDING,
    ) -> Task:
        now = self._ctx.now()
        return Task(
            id=ids.generate_task_id(),
            release_id=release.id,
            stage=spec.stage,
            task_type=spec.task_type,
            status=status,
            sequence=TASK_SEQUENCE[spec.task_type],
            platforms=spec.platforms_for(release),
            created_at=now,
            updated_at=now,
            cycle_id=cycle_id,
        )

    def ensure_stage_tasks(
        self, release: Release, stage: Stage, *, conn: sqlite3.Connection | None = None
    ) -> list[Task]:
        """Create the stage's required tasks; existing ones are kept as they are."""
        created = [
            self._ctx.tasks.ensure(self.new_task(release, spec), conn=conn)
            for spec in stage_task_specs(release, stage)
        ]
        self._logger.info(
            "stage_tasks_ensured",
            release_id=release.id,
            stage=stage.value,
            task_types=[task.task_type.value for task in created],
        )
        return created

    # ------------------------------------------------------------------
    # evaluation pass
    # ------------------------------------------------------------------

    async def run_pass(
        self,
        release: Release,
        tasks: Sequence[Task],
        *,
        cycle: RegressionCycle | None = None,
    ) -> list[Task]:
        """Advance one stage's (or cycle's) tasks by one tick and return their new state."""
        ordered = sorted(tasks, key=lambda item: item.sequence)
        eligible = next_eligible(ordered)
        current = {task.id: task for task in ordered}

        for task in ordered:
            if task.status is TaskStatus.IN_PROGRESS:
                current[task.id] = self._fail(task, INTERRUPTED_REASON)
            elif task.status is TaskStatus.AWAITING_MANUAL_BUILD:
                completed = self.complete_from_staged(release, task)
                if completed is not None:
                    current[task.id] = completed

        if eligible is not None:
            current[eligible.id] = await self._dispatch(release, eligible, cycle=cycle)
        return [current[task.id] for task in ordered]

    async def _dispatch(
        self, release: Release, task: Task, *, cycle: RegressionCycle | None
    ) -> Task:
        spec = spec_for(task.task_type)
        self._check_lock(release)
        now = self._ctx.now()
        started = replace(task, status=TaskStatus.IN_PROGRESS, started_at=now, updated_at=now)
        if not self._ctx.tasks.update(started, expected_status=TaskStatus.PENDING):
            return self._ctx.tasks.require(task.id)

        build_mode = release.build_mode_for(task.stage)
        if spec.mode is CompletionMode.BUILD and build_mode is BuildSource.MANUAL:
            self._ctx.metrics.inc(
                "task_dispatch_total", labels={"outcome": "awaiting_manual_build"}
            )
            return self._await_manual_build(release, started)

        adapter = self._ctx.adapters.get(spec.integration)
        if adapter is None:
            return self._fail(
                started,
                f"no adapter registered for {spec.integration.value}",
                expected=TaskStatus.IN_PROGRESS,
            )

        context = DispatchContext(
            release=release,
            task=started,
            platforms=started.pending_platforms(),
            build_mode=build_mode,
            now=now,
            cycle=cycle,
            previous_tag=self._previous_tag(release, cycle),
            prior_outputs=self._prior_outputs(release),
        )
        outcome: DispatchOutcome
        try:
            outcome = await run_with_timeout(
                adapter.dispatch(task.task_type, context),
                self._ctx.settings.adapter_timeout_seconds,
            )
        except TimeoutError:
            outcome = Failed(
                f"adapter timed out after {self._ctx.settings.adapter_timeout_seconds:g}s"
            )
        except Exception as exc:
            self._logger.warning(
                "adapter_raised",
                release_id=release.id,
                task_id=task.id,
                task_type=task.task_type.value,
                error=str(exc),
                exc_info=True,
            )
            outcome = Failed(f"{type(exc).__name__}: {exc}")

        self._ctx.metrics.inc(
            "task_dispatch_total", labels={"outcome": type(outcome).__name__.lower()}
        )
        self._check_lock(release)
        return self._apply_outcome(release, started, spec, outcome)

    def _check_lock(self, release: Release) -> None:
        # Raises when the execution flag has passed to another owner.
        if self._renew_lock is not None:
            self._renew_lock(release.id)

    def _apply_outcome(
        self, release: Release, task: Task, spec: TaskSpec, outcome: DispatchOutcome
    ) -> Task:
        if isinstance(outcome, Failed):
            return self._fail(task, outcome.reason, expected=TaskStatus.IN_PROGRESS)

        if isinstance(outcome, CompletedSync):
            try:
                output = check_output(task.task_type, outcome.output)
            except ValueError as exc:
                return self._fail(
                    task, f"invalid adapter output: {exc}", expected=TaskStatus.IN_PROGRESS
                )
            if isinstance(output, ApprovalOutput) and not output.approved:
                return self._fail(task, APPROVAL_PENDING_REASON, expected=TaskStatus.IN_PROGRESS)
            return self._complete(task, output, expected=TaskStatus.IN_PROGRESS)

        if isinstance(outcome, AwaitingCallback):
            if spec.mode is CompletionMode.SYNC:
                return self._fail(
                    task,
                    f"{task.task_type.value} completes synchronously; adapter deferred it",
                    expected=TaskStatus.IN_PROGRESS,
                )
            now = self._ctx.now()
            refs = dict(task.external_refs)
            refs.update(outcome.external_refs)
            waiting = replace(
                task, status=TaskStatus.AWAITING_CALLBACK, external_refs=refs, updated_at=now
            )
            return self._write(waiting, expected=TaskStatus.IN_PROGRESS)

        if spec.mode is not CompletionMode.BUILD:
            return self._fail(
                task,
                f"{task.task_type.value} does not consume builds",
                expected=TaskStatus.IN_PROGRESS,
            )
        return self._await_manual_build(release, task)

    def _await_manual_build(self, release: Release, task: Task) -> Task:
        waiting = replace(
            task, status=TaskStatus.AWAITING_MANUAL_BUILD, updated_at=self._ctx.now()
        )
        waiting = self._write(waiting, expected=TaskStatus.IN_PROGRESS)
        if waiting.status is not TaskStatus.AWAITING_MANUAL_BUILD:
            return waiting
        return self.complete_from_staged(release, waiting) or waiting

    # ------------------------------------------------------------------
    # completion by build availability
    # ------------------------------------------------------------------

    def complete_from_staged(self, release: Release, task: Task) -> Task | None:
        """Consume staged builds for every platform of ``task`` and complete it.

        Returns ``None`` when a platform has nothing staged yet, or when another
        evaluation consumed the builds or moved the task first.
        """
        if task.status is not TaskStatus.AWAITING_MANUAL_BUILD:
            return None
        try:
            with self._ctx.db.transaction() as tx:
                staged = self._tracker.staged_for(
                    release.id, task.stage, task.platforms, conn=tx
                )
                if staged is None:
                    return None
                build_ids = [staged[platform].id for platform in task.platforms]
                if not self._tracker.consume(
                    build_ids, task_id=task.id, cycle_id=task.cycle_id, conn=tx
                ):
                    return None
                now = self._ctx.now()
                completed = replace(
                    task,
                    status=TaskStatus.COMPLETED,
                    platform_results={p: CallbackOutcome.SUCCEEDED for p in task.platforms},
                    output=BuildOutput(
                        tuple(
                            BuildRef(platform, staged[platform].id, staged[platform].locator)
                            for platform in task.platforms
                        )
                    ),
                    consumed_build_ids=tuple(build_ids),
                    completed_at=now,
                    updated_at=now,
                )
                if not self._ctx.tasks.update(
                    completed, expected_status=TaskStatus.AWAITING_MANUAL_BUILD, conn=tx
                ):
                    raise _StaleTask
        except _StaleTask:
            return None
        self._logger.info(
            "task_completed_from_staged_builds",
            release_id=release.id,
            task_id=task.id,
            task_type=task.task_type.value,
            build_ids=build_ids,
        )
        return completed

    # ------------------------------------------------------------------
    # completion by callback
    # ------------------------------------------------------------------

    def handle_callback(
        self,
        task_id: str,
        platform: Platform,
        outcome: CallbackOutcome,
        *,
        locator: str | None = None,
        reason: str | None = None,
    ) -> CallbackResult:
        """Apply one platform's webhook result to a task awaiting callbacks."""
        task = self._ctx.tasks.require(task_id)
        if platform not in task.platforms:
            raise ValidationError(
                f"task {task_id} does not target platform {platform.value}"
            )
        if task.status is not TaskStatus.AWAITING_CALLBACK:
            return self._ignore(task, platform, "task_not_awaiting_callback")
        if platform in task.platform_results:
            return self._ignore(task, platform, "duplicate_callback")

        now = self._ctx.now()
        results = dict(task.platform_results)
        results[platform] = outcome
        refs = dict(task.external_refs)
        if locator is not None:
            refs[f"{_LOCATOR_REF_PREFIX}{platform.value}"] = locator

        if outcome is CallbackOutcome.FAILED:
            failed = replace(
                task,
                status=TaskStatus.FAILED,
                platform_results=results,
                external_refs=refs,
                error=_truncate(reason or f"{platform.value} reported failure"),
                updated_at=now,
            )
            return self._callback_write(failed, platform)

        pending = [p for p in task.platforms if results.get(p) is not CallbackOutcome.SUCCEEDED]
        if pending:
            partial = replace(task, platform_results=results, external_refs=refs, updated_at=now)
            return self._callback_write(partial, platform)

        try:
            with self._ctx.db.transaction() as tx:
                output, consumed = self._callback_output(task, refs, conn=tx)
                completed = replace(
                    task,
                    status=TaskStatus.COMPLETED,
                    platform_results=results,
                    external_refs=refs,
                    output=output,
                    consumed_build_ids=consumed,
                    completed_at=now,
                    updated_at=now,
                )
                if not self._ctx.tasks.update(
                    completed, expected_status=TaskStatus.AWAITING_CALLBACK, conn=tx
                ):
                    raise _StaleTask
        except _StaleTask:
            return self._ignore(self._ctx.tasks.require(task_id), platform, "stale_task")
        self._ctx.metrics.inc("callbacks_total", labels={"result": "applied"})
        self._logger.info(
            "task_completed_by_callback",
            release_id=task.release_id,
            task_id=task.id,
            task_type=task.task_type.value,
        )
        return CallbackResult(True, completed)

    def _callback_output(
        self, task: Task, refs: dict[str, str], *, conn: sqlite3.Connection
    ) -> tuple[TaskOutput | None, tuple[str, ...]]:
        expected = expected_output_type(task.task_type)
        if expected is BuildOutput:
            release = self._ctx.releases.require(task.release_id, conn=conn)
            artifacts = [
                self._tracker.record_ci_artifact(
                    release,
                    platform,
                    task.stage,
                    task_id=task.id,
                    cycle_id=task.cycle_id,
                    locator=refs.get(f"{_LOCATOR_REF_PREFIX}{platform.value}"),
                    conn=conn,
                )
                for platform in task.platforms
            ]
            output = BuildOutput(
                tuple(BuildRef(item.platform, item.id, item.locator) for item in artifacts)
            )
            return output, tuple(item.id for item in artifacts)
        if expected is AutomationOutput:
            run_ids = [
                value for key, value in sorted(refs.items()) if key.startswith(_RUN_REF_PREFIX)
            ]
            if not run_ids:
                run_ids = [f"{task.id}:{platform.value}" for platform in task.platforms]
            return AutomationOutput(tuple(dict.fromkeys(run_ids))), ()
        return None, ()

    def _callback_write(self, task: Task, platform: Platform) -> CallbackResult:
        if not self._ctx.tasks.update(task, expected_status=TaskStatus.AWAITING_CALLBACK):
            return self._ignore(self._ctx.tasks.require(task.id), platform, "stale_task")
        self._ctx.metrics.inc("callbacks_total", labels={"result": "applied"})
        self._logger.info(
            "task_callback_applied",
            release_id=task.release_id,
            task_id=task.id,
            platform=platform.value,
            status=task.status.value,
        )
        return CallbackResult(True, task)

    def _ignore(self, task: Task, platform: Platform, reason: str) -> CallbackResult:
        self._ctx.metrics.inc("callbacks_total", labels={"result": "ignored"})
        self._logger.warning(
            "task_callback_ignored",
            release_id=task.release_id,
            task_id=task.id,
            platform=platform.value,
            status=task.status.value,
            reason=reason,
        )
        return CallbackResult(False, task, reason)

    # ------------------------------------------------------------------
    # retry / skip
    # ------------------------------------------------------------------

    def retry(self, task_id: str) -> RetryOutcome:
        """Reset a FAILED task to PENDING; any other status is left untouched."""
        task = self._ctx.tasks.require(task_id)
        if task.status is not TaskStatus.FAILED:
            return RetryOutcome(False, task, "not_failed")
        reset = replace(
            task,
            status=TaskStatus.PENDING,
            error=None,
            output=None,
            started_at=None,
            completed_at=None,
            updated_at=self._ctx.now(),
            platform_results={
                platform: result
                for platform, result in task.platform_results.items()
                if result is CallbackOutcome.SUCCEEDED
            },
        )
        if not self._ctx.tasks.update(reset, expected_status=TaskStatus.FAILED):
            return RetryOutcome(False, self._ctx.tasks.require(task_id), "not_failed")
        self._logger.info(
            "task_retry_accepted",
            release_id=task.release_id,
            task_id=task.id,
            task_type=task.task_type.value,
        )
        return RetryOutcome(True, reset)

    def skip_unfinished(
        self, tasks: Sequence[Task], *, conn: sqlite3.Connection | None = None
    ) -> list[Task]:
        skipped: list[Task] = []
        for task in tasks:
            if task.status in SATISFIED_TASK_STATUSES:
                continue
            updated = replace(
                task,
                status=TaskStatus.SKIPPED,
                error=None,
                output=None,
                updated_at=self._ctx.now(),
            )
            if self._ctx.tasks.update(updated, expected_status=task.status, conn=conn):
                skipped.append(updated)
        return skipped

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _complete(self, task: Task, output: TaskOutput, *, expected: TaskStatus) -> Task:
        now = self._ctx.now()
        completed = replace(
            task,
            status=TaskStatus.COMPLETED,
            platform_results={p: CallbackOutcome.SUCCEEDED for p in task.platforms},
            output=output,
            completed_at=now,
            updated_at=now,
        )
        written = self._write(completed, expected=expected)
        if written.status is TaskStatus.COMPLETED:
            self._logger.info(
                "task_completed",
                release_id=task.release_id,
                task_id=task.id,
                task_type=task.task_type.value,
            )
        return written

    def _fail(
        self, task: Task, reason: str, *, expected: TaskStatus | None = None
    ) -> Task:
        failed = replace(
            task,
            status=TaskStatus.FAILED,
            error=_truncate(reason),
            output=None,
            updated_at=self._ctx.now(),
        )
        written = self._write(failed, expected=expected or task.status)
        if written.status is TaskStatus.FAILED:
            self._ctx.metrics.inc("tasks_failed_total", labels={"task_type": task.task_type.value})
            self._logger.warning(
                "task_failed",
                release_id=task.release_id,
                task_id=task.id,
                task_type=task.task_type.value,
                reason=written.error,
            )
        return written

    def _write(self, task: Task, *, expected: TaskStatus) -> Task:
        if self._ctx.tasks.update(task, expected_status=expected):
            return task
        return self._ctx.tasks.require(task.id)

    def _prior_outputs(self, release: Release) -> dict[TaskType, TaskOutput]:
        outputs: dict[TaskType, TaskOutput] = {}
        for task in self._ctx.tasks.list_for_release(release.id):
            if task.status is TaskStatus.COMPLETED and task.output is not None:
                outputs[task.task_type] = task.output
        return outputs

    def _previous_tag(self, release: Release, cycle: RegressionCycle | None) -> str | None:
        tags = [
            item.tag
            for item in self._ctx.cycles.list_for_release(release.id)
            if item.tag is not None and (cycle is None or item.slot_index < cycle.slot_index)
        ]
        return tags[-1] if tags else None


def _truncate(reason: str) -> str:
    text = reason.strip() or "unknown error"
    if len(text) <= _MAX_ERROR_CHARS:
        return text
    return text[: _MAX_ERROR_CHARS - 3] + "..."


__all__ = [
    "APPROVAL_PENDING_REASON",
    "INTERRUPTED_REASON",
    "CallbackResult",
    "RetryOutcome",
    "TaskExecutionEngine",
    "next_eligible",
    "tasks_satisfied",
]
