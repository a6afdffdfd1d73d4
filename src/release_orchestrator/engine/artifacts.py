"""
release-orchestrator: build artifact tracker

File: src/release_orchestrator/engine/artifacts.py

Purpose
- Record builds per (release, platform, stage): staged until a task consumes them,
  then permanently bound to that task (and cycle) as append-only history.

Invariants
- At most one staged build per key; staging again replaces the previous one.
- ``consume`` is the only staged -> consumed mutation and is all-or-nothing; when two
  evaluations race, exactly one wins and the other sees ``False``.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Sequence
from typing import Any

import structlog

from release_orchestrator.domain import ids
from release_orchestrator.domain.enums import BuildSource, Platform, Stage
from release_orchestrator.domain.models import BuildArtifact, Release
from release_orchestrator.engine.context import OrchestrationContext
from release_orchestrator.errors import ValidationError


class BuildArtifactTracker:
    def __init__(self, ctx: OrchestrationContext, *, logger: Any | None = None) -> None:
        self._ctx = ctx
        self._logger = logger or structlog.get_logger(__name__)

    def stage_artifact(
        self,
        release: Release,
        platform: Platform,
        stage: Stage,
        *,
        locator: str | None = None,
        source: BuildSource = BuildSource.MANUAL,
        conn: sqlite3.Connection | None = None,
    ) -> BuildArtifact:
        """Stage a build for ``release``; an unconsumed build for the same key is replaced."""
        if platform not in release.platforms:
            raise ValidationError(
                f"platform {platform.value} is not targeted by release {release.id}"
            )
        now = self._ctx.now()
        try:
            artifact = BuildArtifact(
                id=ids.generate_build_id(),
                release_id=release.id,
                platform=platform,
                stage=stage,
                source=source,
                staged_at=now,
                locator=locator,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        replaced = self._ctx.builds.stage(artifact, conn=conn)
        self._logger.info(
            "build_staged",
            release_id=release.id,
            platform=platform.value,
            stage=stage.value,
            build_id=artifact.id,
            replaced_build_id=replaced.id if replaced is not None else None,
        )
        return artifact

    def list_staged(
        self,
        release_id: str,
        *,
        stage: Stage | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[BuildArtifact]:
        return self._ctx.builds.list_staged(release_id, stage=stage, conn=conn)

    def staged_for(
        self,
        release_id: str,
        stage: Stage,
        platforms: Iterable[Platform],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[Platform, BuildArtifact] | None:
        """Staged builds keyed by platform, or ``None`` unless every platform has one."""
        staged = {
            artifact.platform: artifact
            for artifact in self.list_staged(release_id, stage=stage, conn=conn)
        }
        wanted = tuple(platforms)
        if not wanted or any(platform not in staged for platform in wanted):
            return None
        return {platform: staged[platform] for platform in wanted}

    def consume(
        self,
        build_ids: Sequence[str],
        *,
        task_id: str,
        cycle_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        consumed = self._ctx.builds.consume(
            build_ids,
            task_id=task_id,
            cycle_id=cycle_id,
            consumed_at=self._ctx.now(),
            conn=conn,
        )
        if consumed:
            self._ctx.metrics.inc("builds_consumed_total", float(len(build_ids)))
            self._logger.info(
                "builds_consumed", task_id=task_id, cycle_id=cycle_id, build_ids=list(build_ids)
            )
        else:
            self._logger.info(
                "builds_already_consumed", task_id=task_id, build_ids=list(build_ids)
            )
        return consumed

    def list_consumed(
        self, release_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[BuildArtifact]:
        return self._ctx.builds.list_consumed(release_id, conn=conn)

    def record_ci_artifact(
        self,
        release: Release,
        platform: Platform,
        stage: Stage,
        *,
        task_id: str,
        cycle_id: str | None = None,
        locator: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> BuildArtifact:
        """Record a CI-produced build directly as consumed by the task that reported it."""
        now = self._ctx.now()
        artifact = BuildArtifact(
            id=ids.generate_build_id(),
            release_id=release.id,
            platform=platform,
            stage=stage,
            source=BuildSource.CI_CD,
            staged_at=now,
            locator=locator,
            consumed_by_task_id=task_id,
            consumed_by_cycle_id=cycle_id,
            consumed_at=now,
        )
        self._ctx.builds.record_consumed(artifact, conn=conn)
        self._ctx.metrics.inc("builds_consumed_total")
        return artifact


__all__ = ["BuildArtifactTracker"]
