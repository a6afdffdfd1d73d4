"""Fixed clocks and record builders shared by the persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from release_orchestrator.domain import ids
from release_orchestrator.domain.enums import (
    BuildSource,
    CycleStatus,
    Platform,
    ReleasePhase,
    Stage,
    TaskStatus,
    TaskType,
)
from release_orchestrator.domain.models import (
    BuildArtifact,
    RegressionCycle,
    Release,
    StageStatusRecord,
    Task,
)
from release_orchestrator.persistence.repositories import (
    BuildArtifactRepo,
    CycleRepo,
    ReleaseRepo,
    StageStatusRepo,
    TaskRepo,
)
from release_orchestrator.persistence.state_db import StateDB

_BASE_TS: Final[datetime] = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def _randbytes(seed: int):
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_release(seed: int, *, version: str | None = None, tenant_id: str = "acme") -> Release:
    ts = fixed_now(seed)
    resolved_version = version or f"4.{seed % 100}.0"
    return Release(
        id=ids.generate_release_id(timestamp_ms=1_000 + seed, randbytes=_randbytes(seed)),
        tenant_id=tenant_id,
        version=resolved_version,
        platforms=(Platform.ANDROID, Platform.IOS),
        phase=ReleasePhase.NOT_STARTED,
        branch_name=f"release/{resolved_version}",
        base_branch="main",
        created_at=ts,
        updated_at=ts,
    )


def make_stage_status(release: Release) -> StageStatusRecord:
    return StageStatusRecord(release_id=release.id, updated_at=release.created_at)


def make_cycle(release: Release, slot_index: int, *, seed: int = 0) -> RegressionCycle:
    ts = fixed_now(seed)
    return RegressionCycle(
        id=ids.generate_cycle_id(
            timestamp_ms=2_000 + seed * 10 + slot_index, randbytes=_randbytes(seed + slot_index)
        ),
        release_id=release.id,
        slot_index=slot_index,
        scheduled_at=ts + timedelta(days=slot_index),
        status=CycleStatus.NOT_STARTED,
        created_at=ts,
        updated_at=ts,
    )


def make_task(
    release: Release,
    task_type: TaskType,
    *,
    seed: int = 0,
    stage: Stage = Stage.KICKOFF,
    cycle: RegressionCycle | None = None,
    sequence: int = 0,
    platforms: tuple[Platform, ...] = (),
) -> Task:
    ts = fixed_now(seed)
    return Task(
        id=ids.generate_task_id(timestamp_ms=3_000 + seed, randbytes=_randbytes(seed)),
        release_id=release.id,
        stage=Stage.REGRESSION if cycle is not None else stage,
        task_type=task_type,
        status=TaskStatus.PENDING,
        sequence=sequence,
        platforms=platforms,
        created_at=ts,
        updated_at=ts,
        cycle_id=None if cycle is None else cycle.id,
    )


def make_build(
    release: Release,
    platform: Platform,
    *,
    seed: int = 0,
    stage: Stage = Stage.REGRESSION,
) -> BuildArtifact:
    return BuildArtifact(
        id=ids.generate_build_id(timestamp_ms=4_000 + seed, randbytes=_randbytes(seed)),
        release_id=release.id,
        platform=platform,
        stage=stage,
        source=BuildSource.MANUAL,
        staged_at=fixed_now(seed),
        locator=f"s3://builds/{release.version}/{platform.value}-{seed}",
    )


class Repos:
    """Every repository over one state DB."""

    def __init__(self, db: StateDB) -> None:
        self.db = db
        self.releases = ReleaseRepo(db)
        self.stage_statuses = StageStatusRepo(db)
        self.tasks = TaskRepo(db)
        self.cycles = CycleRepo(db)
        self.builds = BuildArtifactRepo(db)

    def add_release(self, seed: int, **kwargs: str) -> Release:
        release = make_release(seed, **kwargs)
        with self.db.transaction() as tx:
            self.releases.add(release, conn=tx)
            self.stage_statuses.add(make_stage_status(release), conn=tx)
        return release


__all__ = [
    "Repos",
    "fixed_now",
    "make_build",
    "make_cycle",
    "make_release",
    "make_stage_status",
    "make_task",
]
