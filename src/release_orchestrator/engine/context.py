"""
release-orchestrator: orchestration context

File: src/release_orchestrator/engine/context.py

Purpose
- One object owning the state DB, repositories, per-release lock registry, adapter
  registry, clock, metrics and scheduler settings. Built once per process and passed
  to every engine component; nothing in the engine reaches for module globals.
"""

from __future__ import annotations

import os
import socket
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from release_orchestrator.constants import (
    DEFAULT_ADAPTER_TIMEOUT_SECONDS,
    DEFAULT_INGRESS_LOCK_TIMEOUT_SECONDS,
    DEFAULT_LOCK_STALE_AFTER_SECONDS,
    DEFAULT_MAX_CONCURRENT_RELEASES,
    DEFAULT_TICK_INTERVAL_SECONDS,
)
from release_orchestrator.engine.adapters import AdapterRegistry
from release_orchestrator.observability.metrics import MetricsRegistry
from release_orchestrator.persistence.repositories import (
    BuildArtifactRepo,
    CycleRepo,
    ReleaseRepo,
    StageStatusRepo,
    TaskRepo,
)
from release_orchestrator.persistence.state_db import StateDB
from release_orchestrator.utils.concurrency import KeyedTryLock

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class EngineSettings:
    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    max_concurrent_releases: int = DEFAULT_MAX_CONCURRENT_RELEASES
    adapter_timeout_seconds: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS
    ingress_lock_timeout_seconds: float = DEFAULT_INGRESS_LOCK_TIMEOUT_SECONDS
    lock_stale_after_seconds: float = DEFAULT_LOCK_STALE_AFTER_SECONDS

    def __post_init__(self) -> None:
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        if self.max_concurrent_releases <= 0:
            raise ValueError("max_concurrent_releases must be > 0")
        if self.adapter_timeout_seconds <= 0:
            raise ValueError("adapter_timeout_seconds must be > 0")
        if self.ingress_lock_timeout_seconds < 0:
            raise ValueError("ingress_lock_timeout_seconds must be >= 0")
        if self.lock_stale_after_seconds <= self.adapter_timeout_seconds:
            raise ValueError("lock_stale_after_seconds must exceed adapter_timeout_seconds")

    @classmethod
    def from_config(cls, scheduler: Mapping[str, object]) -> EngineSettings:
        """Build settings from the validated ``[scheduler]`` section."""
        return cls(
            tick_interval_seconds=_number(scheduler, "tick_interval_seconds"),
            max_concurrent_releases=int(_number(scheduler, "max_concurrent_releases")),
            adapter_timeout_seconds=_number(scheduler, "adapter_timeout_seconds"),
            ingress_lock_timeout_seconds=_number(scheduler, "ingress_lock_timeout_seconds"),
            lock_stale_after_seconds=_number(scheduler, "lock_stale_after_seconds"),
        )


def _number(section: Mapping[str, object], key: str) -> float:
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValueError(f"scheduler.{key} must be a number")
    return float(value)


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(slots=True)
class OrchestrationContext:
    db: StateDB
    releases: ReleaseRepo
    stage_statuses: StageStatusRepo
    tasks: TaskRepo
    cycles: CycleRepo
    builds: BuildArtifactRepo
    adapters: AdapterRegistry
    settings: EngineSettings = field(default_factory=EngineSettings)
    metrics: MetricsRegistry = field(default_factory=MetricsRegistry)
    locks: KeyedTryLock = field(default_factory=KeyedTryLock)
    clock: Clock = utc_now
    owner_id: str = field(default_factory=default_owner_id)

    @classmethod
    def open(
        cls,
        db_path: str | Path | StateDB,
        *,
        adapters: AdapterRegistry | None = None,
        settings: EngineSettings | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Clock | None = None,
        owner_id: str | None = None,
    ) -> OrchestrationContext:
        """Open (and migrate) the state DB and wire every repository onto it."""
        db = db_path if isinstance(db_path, StateDB) else StateDB(db_path)
        db.migrate()
        return cls(
            db=db,
            releases=ReleaseRepo(db),
            stage_statuses=StageStatusRepo(db),
            tasks=TaskRepo(db),
            cycles=CycleRepo(db),
            builds=BuildArtifactRepo(db),
            adapters=adapters if adapters is not None else AdapterRegistry.simulated(),
            settings=settings or EngineSettings(),
            metrics=metrics or MetricsRegistry(),
            clock=clock or utc_now,
            owner_id=owner_id or default_owner_id(),
        )

    def now(self) -> datetime:
        value = self.clock()
        if value.tzinfo is None:
            raise ValueError("clock must return timezone-aware datetimes")
        return value.astimezone(UTC)


__all__ = [
    "Clock",
    "EngineSettings",
    "OrchestrationContext",
    "default_owner_id",
    "utc_now",
]
