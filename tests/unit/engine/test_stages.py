"""
release-orchestrator: unit tests for the stage state machine

File: tests/unit/engine/test_stages.py

Purpose
- Verify phase gates: kickoff time, stage completion, armed transitions and
  operator triggers.
- Verify phases only move forward and a full release runs to RELEASED.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from release_orchestrator.domain.enums import (
    CycleStatus,
    Platform,
    ReleasePhase,
    Stage,
    StageStatus,
    TaskStatus,
    TaskType,
)
from release_orchestrator.engine import Failed
from release_orchestrator.errors import InvalidTransitionError, ValidationError

from . import (
    BASE_TS,
    FakeClock,
    ScriptedAdapter,
    make_coordinator,
    make_definition,
    phase_of,
    scripted_registry,
    slot,
    stage_builds,
    stage_tasks,
    tick_times,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.asyncio
async def test_kickoff_waits_for_kickoff_time(tmp_path: Path) -> None:
    clock = FakeClock()
    coordinator = make_coordinator(tmp_path, clock=clock)
    release = coordinator.create_release(
        make_definition(kickoff_at=BASE_TS + timedelta(hours=1))
    )

    await tick_times(coordinator, 1)
    assert phase_of(coordinator, release.id) is ReleasePhase.NOT_STARTED
    assert coordinator.context.tasks.list_for_release(release.id) == []

    clock.advance(hours=1)
    await tick_times(coordinator, 1)
    assert phase_of(coordinator, release.id) is ReleasePhase.REGRESSION
    record = coordinator.context.stage_statuses.require(release.id)
    assert record.kickoff is StageStatus.COMPLETED
    assert record.regression is StageStatus.IN_PROGRESS
    assert record.post_regression is StageStatus.PENDING


@pytest.mark.asyncio
async def test_unarmed_transition_waits_for_an_operator(tmp_path: Path) -> None:
    coordinator = make_coordinator(tmp_path)
    release = coordinator.create_release(make_definition(auto_transitions=()))

    await tick_times(coordinator, 2)
    assert phase_of(coordinator, release.id) is ReleasePhase.KICKOFF
    assert coordinator.context.stage_statuses.require(release.id).kickoff is (
        StageStatus.COMPLETED
    )

    triggered = await coordinator.trigger_next_stage(release.id)
    assert triggered.phase is ReleasePhase.REGRESSION
    assert coordinator.context.stage_statuses.require(release.id).regression is (
        StageStatus.IN_PROGRESS
    )


@pytest.mark.asyncio
async def test_arming_a_transition_lets_the_next_tick_take_it(tmp_path: Path) -> None:
    coordinator = make_coordinator(tmp_path)
    release = coordinator.create_release(make_definition(auto_transitions=()))
    await tick_times(coordinator, 1)

    record = await coordinator.arm_transition(release.id, "regression")
    assert record.is_armed(ReleasePhase.REGRESSION)
    await tick_times(coordinator, 1)
    assert phase_of(coordinator, release.id) is ReleasePhase.REGRESSION

    disarmed = await coordinator.arm_transition(release.id, "regression", armed=False)
    assert not disarmed.is_armed(ReleasePhase.REGRESSION)
    with pytest.raises(ValidationError, match="can be armed"):
        await coordinator.arm_transition(release.id, ReleasePhase.KICKOFF)


@pytest.mark.asyncio
async def test_trigger_requires_the_current_stage_to_be_completed(tmp_path: Path) -> None:
    adapter = ScriptedAdapter(outcomes={TaskType.FORK_BRANCH: [Failed("protected branch")]})
    coordinator = make_coordinator(tmp_path, adapters=scripted_registry(adapter))
    release = coordinator.create_release(make_definition())
    await tick_times(coordinator, 1)

    with pytest.raises(InvalidTransitionError, match="must be completed"):
        await coordinator.trigger_next_stage(release.id)
    assert phase_of(coordinator, release.id) is ReleasePhase.KICKOFF
    assert coordinator.context.stage_statuses.require(release.id).kickoff is (
        StageStatus.IN_PROGRESS
    )


@pytest.mark.asyncio
async def test_trigger_starts_kickoff_before_its_scheduled_time(tmp_path: Path) -> None:
    coordinator = make_coordinator(tmp_path)
    release = coordinator.create_release(make_definition(kickoff_at=slot(1)))

    triggered = await coordinator.trigger_next_stage(release.id)

    assert triggered.phase is ReleasePhase.KICKOFF
    tasks = stage_tasks(coordinator, release.id, Stage.KICKOFF)
    assert tasks[TaskType.FORK_BRANCH].status is TaskStatus.PENDING
    await tick_times(coordinator, 1)
    assert phase_of(coordinator, release.id) is ReleasePhase.REGRESSION


@pytest.mark.asyncio
async def test_phases_never_move_backwards(tmp_path: Path) -> None:
    coordinator = make_coordinator(tmp_path)
    release = coordinator.create_release(make_definition())
    await tick_times(coordinator, 1)

    with pytest.raises(InvalidTransitionError):
        coordinator.context.releases.set_phase(
            release.id, ReleasePhase.KICKOFF, now=coordinator.context.now()
        )
    assert phase_of(coordinator, release.id) is ReleasePhase.REGRESSION


@pytest.mark.asyncio
async def test_adding_a_slot_reopens_a_completed_regression(tmp_path: Path) -> None:
    coordinator = make_coordinator(tmp_path)
    release = coordinator.create_release(
        make_definition(auto_transitions=(ReleasePhase.REGRESSION,))
    )
    await tick_times(coordinator, 1)
    await stage_builds(coordinator, release.id, Stage.REGRESSION)
    await tick_times(coordinator, 2)
    assert coordinator.context.stage_statuses.require(release.id).regression is (
        StageStatus.COMPLETED
    )

    added = await coordinator.add_regression_slot(release.id, slot(5))
    assert added.slot_index == 2
    assert added.status is CycleStatus.NOT_STARTED
    assert coordinator.context.stage_statuses.require(release.id).regression is (
        StageStatus.IN_PROGRESS
    )
    with pytest.raises(InvalidTransitionError):
        await coordinator.trigger_next_stage(release.id)

    await stage_builds(coordinator, release.id, Stage.REGRESSION)
    await tick_times(coordinator, 2)
    assert coordinator.context.stage_statuses.require(release.id).regression is (
        StageStatus.COMPLETED
    )

    await coordinator.trigger_next_stage(release.id)
    with pytest.raises(InvalidTransitionError, match="has left regression"):
        await coordinator.add_regression_slot(release.id, slot(7))


@pytest.mark.asyncio
async def test_release_runs_from_kickoff_to_released(tmp_path: Path) -> None:
    coordinator = make_coordinator(tmp_path)
    release = coordinator.create_release(make_definition())
    phases = []

    await tick_times(coordinator, 1)
    phases.append(phase_of(coordinator, release.id))
    await stage_builds(coordinator, release.id, Stage.REGRESSION)
    for _ in range(2):
        await tick_times(coordinator, 1)
        phases.append(phase_of(coordinator, release.id))
    await stage_builds(coordinator, release.id, Stage.POST_REGRESSION)
    for _ in range(3):
        await tick_times(coordinator, 1)
        phases.append(phase_of(coordinator, release.id))

    assert phases == [
        ReleasePhase.REGRESSION,
        ReleasePhase.REGRESSION,
        ReleasePhase.POST_REGRESSION,
        ReleasePhase.POST_REGRESSION,
        ReleasePhase.POST_REGRESSION,
        ReleasePhase.RELEASED,
    ]
    assert sorted(phase.rank for phase in phases) == [phase.rank for phase in phases]

    record = coordinator.context.stage_statuses.require(release.id)
    assert [record.status_of(stage) for stage in Stage] == [StageStatus.COMPLETED] * 3
    post = stage_tasks(coordinator, release.id, Stage.POST_REGRESSION)
    assert post[TaskType.TRIGGER_TEST_FLIGHT_BUILD].platforms == (Platform.IOS,)
    assert post[TaskType.CREATE_AAB_BUILD].status is TaskStatus.COMPLETED

    report = await coordinator.tick()
    assert report.results == ()
    with pytest.raises(InvalidTransitionError, match="already released"):
        await coordinator.trigger_next_stage(release.id)
