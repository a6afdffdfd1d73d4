"""
release-orchestrator: unit tests for the build artifact tracker

File: tests/unit/engine/test_artifacts.py

Purpose
- Verify staging replaces an unconsumed build per (release, platform, stage).
- Verify consumption is exclusive and all-or-nothing, including under thread races.
"""

from __future__ import annotations

import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from release_orchestrator.domain.enums import BuildSource, Platform, Stage, TaskType
from release_orchestrator.domain.models import Release, Task
from release_orchestrator.engine import Coordinator, spec_for
from release_orchestrator.errors import ValidationError

from . import make_coordinator, make_definition

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


def _setup(tmp_path: Path) -> tuple[Coordinator, Release, dict[TaskType, Task]]:
    coordinator = make_coordinator(tmp_path)
    release = coordinator.create_release(make_definition())
    consumers = {}
    for task_type in (TaskType.CREATE_AAB_BUILD, TaskType.TRIGGER_TEST_FLIGHT_BUILD):
        task = coordinator.tasks.new_task(release, spec_for(task_type))
        consumers[task_type] = coordinator.context.tasks.ensure(task)
    return coordinator, release, consumers


def test_restaging_replaces_the_unconsumed_build(tmp_path: Path) -> None:
    coordinator, release, consumers = _setup(tmp_path)
    tracker = coordinator.tracker
    aab = consumers[TaskType.CREATE_AAB_BUILD]

    first = tracker.stage_artifact(release, Platform.ANDROID, Stage.POST_REGRESSION, locator="a1")
    second = tracker.stage_artifact(release, Platform.ANDROID, Stage.POST_REGRESSION, locator="a2")

    staged = tracker.list_staged(release.id, stage=Stage.POST_REGRESSION)
    assert [build.id for build in staged] == [second.id]
    assert coordinator.context.builds.get(first.id) is None
    assert tracker.consume([first.id], task_id=aab.id) is False
    assert tracker.consume([second.id], task_id=aab.id) is True


def test_staging_after_consumption_keeps_history(tmp_path: Path) -> None:
    coordinator, release, consumers = _setup(tmp_path)
    tracker = coordinator.tracker
    aab = consumers[TaskType.CREATE_AAB_BUILD]

    consumed = tracker.stage_artifact(release, Platform.ANDROID, Stage.POST_REGRESSION)
    assert tracker.consume([consumed.id], task_id=aab.id)
    fresh = tracker.stage_artifact(
        release, Platform.ANDROID, Stage.POST_REGRESSION, source=BuildSource.CI_CD
    )

    history = tracker.list_consumed(release.id)
    assert [build.id for build in history] == [consumed.id]
    assert history[0].consumed_by_task_id == aab.id
    assert [build.id for build in tracker.list_staged(release.id)] == [fresh.id]
    assert tracker.list_staged(release.id)[0].source is BuildSource.CI_CD


def test_a_build_is_consumed_at_most_once(tmp_path: Path) -> None:
    coordinator, release, consumers = _setup(tmp_path)
    tracker = coordinator.tracker
    aab = consumers[TaskType.CREATE_AAB_BUILD]
    flight = consumers[TaskType.TRIGGER_TEST_FLIGHT_BUILD]

    build = tracker.stage_artifact(release, Platform.IOS, Stage.POST_REGRESSION)

    assert tracker.consume([build.id], task_id=flight.id) is True
    assert tracker.consume([build.id], task_id=aab.id) is False
    stored = coordinator.context.builds.get(build.id)
    assert stored is not None
    assert stored.consumed_by_task_id == flight.id
    assert coordinator.context.metrics.get_counter("builds_consumed_total") == 1.0


def test_consume_is_all_or_nothing(tmp_path: Path) -> None:
    coordinator, release, consumers = _setup(tmp_path)
    tracker = coordinator.tracker
    aab = consumers[TaskType.CREATE_AAB_BUILD]
    flight = consumers[TaskType.TRIGGER_TEST_FLIGHT_BUILD]

    android = tracker.stage_artifact(release, Platform.ANDROID, Stage.REGRESSION)
    ios = tracker.stage_artifact(release, Platform.IOS, Stage.REGRESSION)
    assert tracker.consume([ios.id], task_id=flight.id)

    assert tracker.consume([android.id, ios.id], task_id=aab.id) is False

    still_staged = tracker.list_staged(release.id, stage=Stage.REGRESSION)
    assert [build.id for build in still_staged] == [android.id]


def test_concurrent_consumers_yield_exactly_one_winner(tmp_path: Path) -> None:
    coordinator, release, consumers = _setup(tmp_path)
    tracker = coordinator.tracker
    task_ids = [task.id for task in consumers.values()]
    build = tracker.stage_artifact(release, Platform.ANDROID, Stage.REGRESSION)

    def attempt(index: int) -> bool:
        return tracker.consume([build.id], task_id=task_ids[index % len(task_ids)])

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(16)))

    assert results.count(True) == 1
    assert tracker.list_staged(release.id) == []


def test_staged_for_requires_every_platform(tmp_path: Path) -> None:
    coordinator, release, _ = _setup(tmp_path)
    tracker = coordinator.tracker

    android = tracker.stage_artifact(release, Platform.ANDROID, Stage.REGRESSION)
    assert tracker.staged_for(release.id, Stage.REGRESSION, release.platforms) is None

    ios = tracker.stage_artifact(release, Platform.IOS, Stage.REGRESSION)
    staged = tracker.staged_for(release.id, Stage.REGRESSION, release.platforms)
    assert staged is not None
    assert {platform: build.id for platform, build in staged.items()} == {
        Platform.ANDROID: android.id,
        Platform.IOS: ios.id,
    }
    assert tracker.staged_for(release.id, Stage.KICKOFF, release.platforms) is None


def test_untargeted_platform_is_rejected(tmp_path: Path) -> None:
    coordinator, release, _ = _setup(tmp_path)

    with pytest.raises(ValidationError, match="web"):
        coordinator.tracker.stage_artifact(release, Platform.WEB, Stage.REGRESSION)
    assert coordinator.tracker.list_staged(release.id) == []


if _HYPOTHESIS_AVAILABLE:
    _STAGE_ACTIONS = st.tuples(
        st.sampled_from((Platform.ANDROID, Platform.IOS)),
        st.sampled_from(tuple(Stage)),
        st.booleans(),
    )

    @given(actions=st.lists(_STAGE_ACTIONS, min_size=1, max_size=12))
    @settings(max_examples=20, derandomize=True, deadline=None)
    def test_property_one_staged_build_per_key(
        actions: list[tuple[Platform, Stage, bool]],
    ) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            coordinator, release, consumers = _setup(Path(temp_dir))
            tracker = coordinator.tracker
            aab = consumers[TaskType.CREATE_AAB_BUILD]
            consumed_ids: set[str] = set()

            for platform, stage, consume in actions:
                build = tracker.stage_artifact(release, platform, stage)
                if consume:
                    assert tracker.consume([build.id], task_id=aab.id)
                    consumed_ids.add(build.id)

            staged = tracker.list_staged(release.id)
            consumed = tracker.list_consumed(release.id)
        keys = [(build.platform, build.stage) for build in staged]
        assert len(keys) == len(set(keys))
        assert not consumed_ids & {build.id for build in staged}
        assert {build.id for build in consumed} == consumed_ids

else:

    def test_property_one_staged_build_per_key() -> None:
        pytest.skip("hypothesis is not installed")
