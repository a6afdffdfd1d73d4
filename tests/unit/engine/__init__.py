"""Shared deterministic fixtures and builders for engine tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Final

from release_orchestrator.domain import ids
from release_orchestrator.domain.enums import (
    Integration,
    Platform,
    ReleasePhase,
    Stage,
    TaskType,
)
from release_orchestrator.domain.models import Release, Task
from release_orchestrator.engine import (
    AdapterRegistry,
    Coordinator,
    DispatchContext,
    DispatchOutcome,
    EngineSettings,
    OrchestrationContext,
    ReleaseDefinition,
    SimulatedAdapter,
)

BASE_TS: Final[datetime] = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)
BOTH: Final[tuple[Platform, ...]] = (Platform.ANDROID, Platform.IOS)
ALL_ARMED: Final[tuple[ReleasePhase, ...]] = (
    ReleasePhase.REGRESSION,
    ReleasePhase.POST_REGRESSION,
    ReleasePhase.RELEASED,
)
OWNER: Final[str] = "test-host:1"


class FakeClock:
    def __init__(self, start: datetime = BASE_TS) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def slot(days: int) -> datetime:
    return BASE_TS + timedelta(days=days)


def make_definition(**overrides: object) -> ReleaseDefinition:
    fields: dict[str, object] = {
        "tenant_id": "acme",
        "version": "4.2.0",
        "platforms": BOTH,
        "regression_slots": (slot(2),),
        "auto_transitions": ALL_ARMED,
    }
    fields.update(overrides)
    return ReleaseDefinition(**fields)  # type: ignore[arg-type]


def make_release(seed: int = 1, **overrides: object) -> Release:
    """An unpersisted release for catalog and adapter tests."""
    fields: dict[str, object] = {
        "id": ids.generate_release_id(
            timestamp_ms=1_800_000_000_000 + seed, randbytes=lambda size: bytes([seed]) * size
        ),
        "tenant_id": "acme",
        "version": "4.2.0",
        "platforms": BOTH,
        "phase": ReleasePhase.NOT_STARTED,
        "branch_name": "release/4.2.0",
        "base_branch": "main",
        "created_at": BASE_TS,
        "updated_at": BASE_TS,
        "integrations": (Integration.SOURCE_CONTROL,),
    }
    fields.update(overrides)
    return Release(**fields)  # type: ignore[arg-type]


def make_coordinator(
    tmp_path: Path,
    *,
    clock: FakeClock | None = None,
    adapters: AdapterRegistry | None = None,
    settings: EngineSettings | None = None,
    owner_id: str = OWNER,
) -> Coordinator:
    ctx = OrchestrationContext.open(
        tmp_path / "state" / "releases.sqlite3",
        adapters=adapters,
        settings=settings,
        clock=clock or FakeClock(),
        owner_id=owner_id,
    )
    return Coordinator(ctx)


@dataclass
class ScriptedAdapter:
    """Returns scripted outcomes per task type; everything else is simulated."""

    outcomes: dict[TaskType, list[DispatchOutcome]] = field(default_factory=dict)
    raises: dict[TaskType, Exception] = field(default_factory=dict)
    delay_seconds: float = 0.0
    calls: list[tuple[TaskType, tuple[Platform, ...]]] = field(default_factory=list)
    fallback: SimulatedAdapter = field(default_factory=SimulatedAdapter)

    async def dispatch(self, task_type: TaskType, context: DispatchContext) -> DispatchOutcome:
        self.calls.append((task_type, context.platforms))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if task_type in self.raises:
            raise self.raises[task_type]
        queued = self.outcomes.get(task_type)
        if queued:
            return queued.pop(0)
        return await self.fallback.dispatch(task_type, context)


def scripted_registry(adapter: ScriptedAdapter) -> AdapterRegistry:
    return AdapterRegistry({integration: adapter for integration in Integration})


async def tick_times(coordinator: Coordinator, count: int) -> None:
    for _ in range(count):
        report = await coordinator.tick()
        assert report.failed == 0, report.to_dict()


async def stage_builds(
    coordinator: Coordinator,
    release_id: str,
    stage: Stage,
    platforms: Sequence[Platform] = BOTH,
    *,
    locator_prefix: str = "s3://builds",
) -> list[str]:
    staged = []
    for platform in platforms:
        build = await coordinator.on_build_uploaded(
            release_id,
            platform,
            stage,
            locator=f"{locator_prefix}/{stage.value}/{platform.value}",
        )
        staged.append(build.id)
    return staged


def stage_tasks(coordinator: Coordinator, release_id: str, stage: Stage) -> dict[TaskType, Task]:
    tasks = coordinator.context.tasks.list_for_stage(release_id, stage)
    return {task.task_type: task for task in tasks}


def cycle_tasks(coordinator: Coordinator, cycle_id: str) -> dict[TaskType, Task]:
    return {task.task_type: task for task in coordinator.context.tasks.list_for_cycle(cycle_id)}


def phase_of(coordinator: Coordinator, release_id: str) -> ReleasePhase:
    return coordinator.context.releases.require(release_id).phase


def statuses(tasks: Mapping[TaskType, Task]) -> dict[TaskType, str]:
    return {task_type: task.status.value for task_type, task in tasks.items()}
