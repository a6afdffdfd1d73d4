"""
release-orchestrator: repositories

File: src/release_orchestrator/persistence/repositories.py

Purpose
- Read/write domain entities to the state DB: ReleaseRepo, StageStatusRepo, TaskRepo,
  CycleRepo and BuildArtifactRepo.

Conventions
- Every write accepts ``conn=`` so the engine can compose several writes into one
  ``StateDB.transaction()``; without it each call commits on its own.
- Status updates are compare-and-set (``expected_status``) and report whether they
  applied, which makes redelivered webhooks and repeated retries no-ops.
- Build artifacts are column-stored because consumption is a single conditional
  UPDATE; consumed rows are append-only history.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Final, TypeVar, cast

from release_orchestrator.domain import ids
from release_orchestrator.domain.base import CanonicalModel, canonical_json, datetime_to_iso8601z
from release_orchestrator.domain.enums import (
    CycleStatus,
    Platform,
    PauseType,
    ReleasePhase,
    Stage,
    StageStatus,
    TaskStatus,
)
from release_orchestrator.domain.models import (
    BuildArtifact,
    RegressionCycle,
    Release,
    StageStatusRecord,
    Task,
)
from release_orchestrator.errors import InvalidTransitionError, NotFoundError
from release_orchestrator.persistence.state_db import RowValue, SQLParams, StateDB

_MAX_PAGE_SIZE: Final[int] = 1_000
_ACTIVE_PAGE_SIZE: Final[int] = 500

TModel = TypeVar("TModel", bound=CanonicalModel)


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class ReleaseRepo(_BaseRepo):
    """Releases, their forward-only phase and the terminal archive marker."""

    def add(self, release: Release, *, conn: sqlite3.Connection | None = None) -> Release:
        self._db.execute(
            """
            INSERT INTO releases (
                id, tenant_id, version, phase, kickoff_at, created_at, updated_at,
                archived_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                release.id,
                release.tenant_id,
                release.version,
                release.phase.value,
                _optional_ts(release.kickoff_at),
                datetime_to_iso8601z(release.created_at),
                datetime_to_iso8601z(release.updated_at),
                _optional_ts(release.archived_at),
                release.to_json(),
            ),
            conn=conn,
        )
        return release

    def get(self, release_id: str, *, conn: sqlite3.Connection | None = None) -> Release | None:
        ids.validate_release_id(release_id)
        row = self._db.query_one(
            "SELECT payload_json FROM releases WHERE id = ?", (release_id,), conn=conn
        )
        if row is None:
            return None
        return Release.from_json(_row_text(row, "payload_json", "releases.payload_json"))

    def require(self, release_id: str, *, conn: sqlite3.Connection | None = None) -> Release:
        release = self.get(release_id, conn=conn)
        if release is None:
            raise NotFoundError(f"release not found: {release_id}")
        return release

    def list(
        self,
        *,
        phase: ReleasePhase | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Release]:
        self._validate_page(limit, offset)
        sql = "SELECT payload_json FROM releases"
        params: list[object] = []
        if phase is not None:
            sql += " WHERE phase = ?"
            params.append(phase.value)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [_load(Release, row, "releases.payload_json") for row in rows]

    def list_active_ids(self, *, page_size: int | None = None) -> list[str]:
        """Ids of every unreleased, unarchived release, oldest first.

        Reads keyset pages of ``page_size`` rows until one comes back short, so the
        result is never truncated however many releases are active.
        """
        size = _ACTIVE_PAGE_SIZE if page_size is None else page_size
        self._validate_page(size, 0)
        found: list[str] = []
        after: tuple[str, str] | None = None
        while True:
            sql = "SELECT id, created_at FROM releases WHERE archived_at IS NULL AND phase != ?"
            params: list[object] = [ReleasePhase.RELEASED.value]
            if after is not None:
                sql += " AND (created_at > ? OR (created_at = ? AND id > ?))"
                params.extend((after[0], after[0], after[1]))
            sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
            params.append(size)
            rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
            found.extend(_row_text(row, "id", "releases.id") for row in rows)
            if len(rows) < size:
                return found
            last = rows[-1]
            after = (
                _row_text(last, "created_at", "releases.created_at"),
                _row_text(last, "id", "releases.id"),
            )

    def set_phase(
        self,
        release_id: str,
        phase: ReleasePhase,
        *,
        now: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> Release:
        """Advance the phase; moving backwards or moving an archived release raises."""
        with self._db.transaction(conn=conn) as tx:
            release = self.require(release_id, conn=tx)
            if release.is_archived:
                raise InvalidTransitionError(f"release {release_id} is archived")
            if phase.rank < release.phase.rank:
                raise InvalidTransitionError(
                    f"release {release_id} cannot move from {release.phase.value} "
                    f"back to {phase.value}"
                )
            if phase is release.phase:
                return release
            payload = release.to_dict()
            payload["phase"] = phase.value
            payload["updated_at"] = datetime_to_iso8601z(now)
            updated = Release.from_dict(payload)
            self._db.execute(
                "UPDATE releases SET phase = ?, updated_at = ?, payload_json = ? WHERE id = ?",
                (updated.phase.value, datetime_to_iso8601z(now), updated.to_json(), release_id),
                conn=tx,
            )
            return updated

    def archive(
        self, release_id: str, *, now: datetime, conn: sqlite3.Connection | None = None
    ) -> Release:
        """Stamp ``archived_at`` once; an archived release is returned unchanged."""
        with self._db.transaction(conn=conn) as tx:
            release = self.require(release_id, conn=tx)
            if release.is_archived:
                return release
            payload = release.to_dict()
            payload["archived_at"] = datetime_to_iso8601z(now)
            payload["updated_at"] = datetime_to_iso8601z(now)
            archived = Release.from_dict(payload)
            self._db.execute(
                """
                UPDATE releases SET archived_at = ?, updated_at = ?, payload_json = ?
                WHERE id = ? AND archived_at IS NULL
                """,
                (
                    datetime_to_iso8601z(now),
                    datetime_to_iso8601z(now),
                    archived.to_json(),
                    release_id,
                ),
                conn=tx,
            )
            return archived


class StageStatusRepo(_BaseRepo):
    """Per-release stage statuses, the operator pause and the durable execution flag."""

    def add(
        self, record: StageStatusRecord, *, conn: sqlite3.Connection | None = None
    ) -> StageStatusRecord:
        self._db.execute(
            """
            INSERT INTO stage_statuses (
                release_id, kickoff, regression, post_regression, armed_transitions_json,
                is_executing, lock_owner, lock_acquired_at, pause_type, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.release_id,
                record.kickoff.value,
                record.regression.value,
                record.post_regression.value,
                canonical_json([phase.value for phase in record.armed_transitions]),
                int(record.is_executing),
                record.lock_owner,
                _optional_ts(record.lock_acquired_at),
                record.pause_type.value,
                datetime_to_iso8601z(record.updated_at),
            ),
            conn=conn,
        )
        return record

    def get(
        self, release_id: str, *, conn: sqlite3.Connection | None = None
    ) -> StageStatusRecord | None:
        ids.validate_release_id(release_id)
        row = self._db.query_one(
            "SELECT * FROM stage_statuses WHERE release_id = ?", (release_id,), conn=conn
        )
        return None if row is None else _stage_status_from_row(row)

    def require(
        self, release_id: str, *, conn: sqlite3.Connection | None = None
    ) -> StageStatusRecord:
        record = self.get(release_id, conn=conn)
        if record is None:
            raise NotFoundError(f"stage status not found for release: {release_id}")
        return record

    def set_status(
        self,
        release_id: str,
        stage: Stage,
        status: StageStatus,
        *,
        now: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> StageStatusRecord:
        changed = self._db.execute(
            f"UPDATE stage_statuses SET {_stage_column(stage)} = ?, updated_at = ? "
            "WHERE release_id = ?",
            (status.value, datetime_to_iso8601z(now), release_id),
            conn=conn,
        )
        if changed == 0:
            raise NotFoundError(f"stage status not found for release: {release_id}")
        return self.require(release_id, conn=conn)

    def set_armed(
        self,
        release_id: str,
        phase: ReleasePhase,
        *,
        armed: bool,
        now: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> StageStatusRecord:
        with self._db.transaction(conn=conn) as tx:
            record = self.require(release_id, conn=tx)
            phases = set(record.armed_transitions)
            if armed:
                phases.add(phase)
            else:
                phases.discard(phase)
            payload = record.to_dict()
            payload["armed_transitions"] = [item.value for item in phases]
            updated = StageStatusRecord.from_dict(payload)
            self._db.execute(
                "UPDATE stage_statuses SET armed_transitions_json = ?, updated_at = ? "
                "WHERE release_id = ?",
                (
                    canonical_json([item.value for item in updated.armed_transitions]),
                    datetime_to_iso8601z(now),
                    release_id,
                ),
                conn=tx,
            )
            return self.require(release_id, conn=tx)

    def set_pause(
        self,
        release_id: str,
        pause_type: PauseType,
        *,
        expected: PauseType,
        now: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Compare-and-set the pause type; ``False`` when the stored one is not ``expected``."""
        changed = self._db.execute(
            """
            UPDATE stage_statuses SET pause_type = ?, updated_at = ?
            WHERE release_id = ? AND pause_type = ?
            """,
            (pause_type.value, datetime_to_iso8601z(now), release_id, expected.value),
            conn=conn,
        )
        return changed == 1

    def try_acquire_execution(
        self,
        release_id: str,
        owner: str,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """Set the execution flag unless a live holder has it; stale holders are taken over."""
        changed = self._db.execute(
            """
            UPDATE stage_statuses
            SET is_executing = 1, lock_owner = ?, lock_acquired_at = ?
            WHERE release_id = ?
              AND (is_executing = 0 OR lock_owner = ? OR lock_acquired_at < ?)
            """,
            (
                owner,
                datetime_to_iso8601z(now),
                release_id,
                owner,
                datetime_to_iso8601z(stale_before),
            ),
        )
        return changed == 1

    def renew_execution(self, release_id: str, owner: str, *, now: datetime) -> bool:
        """Restamp the flag for its current holder; ``False`` once someone else took it."""
        changed = self._db.execute(
            """
            UPDATE stage_statuses SET lock_acquired_at = ?
            WHERE release_id = ? AND is_executing = 1 AND lock_owner = ?
            """,
            (datetime_to_iso8601z(now), release_id, owner),
        )
        return changed == 1

    def release_execution(self, release_id: str, owner: str) -> bool:
        changed = self._db.execute(
            """
            UPDATE stage_statuses
            SET is_executing = 0, lock_owner = NULL, lock_acquired_at = NULL
            WHERE release_id = ? AND lock_owner = ?
            """,
            (release_id, owner),
        )
        return changed == 1


class TaskRepo(_BaseRepo):
    """Stage and cycle tasks with compare-and-set status updates."""

    def ensure(self, task: Task, *, conn: sqlite3.Connection | None = None) -> Task:
        """Insert ``task`` unless its slot is taken; return the stored task for that slot."""
        self._db.execute(
            """
            INSERT OR IGNORE INTO tasks (
                id, release_id, cycle_id, stage, task_type, status, sequence,
                created_at, updated_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.release_id,
                task.cycle_id,
                task.stage.value,
                task.task_type.value,
                task.status.value,
                task.sequence,
                datetime_to_iso8601z(task.created_at),
                datetime_to_iso8601z(task.updated_at),
                task.to_json(),
            ),
            conn=conn,
        )
        if task.cycle_id is None:
            row = self._db.query_one(
                """
                SELECT payload_json FROM tasks
                WHERE release_id = ? AND stage = ? AND task_type = ? AND cycle_id IS NULL
                """,
                (task.release_id, task.stage.value, task.task_type.value),
                conn=conn,
            )
        else:
            row = self._db.query_one(
                "SELECT payload_json FROM tasks WHERE cycle_id = ? AND task_type = ?",
                (task.cycle_id, task.task_type.value),
                conn=conn,
            )
        if row is None:
            raise NotFoundError(f"task vanished after insert: {task.id}")
        return _load(Task, row, "tasks.payload_json")

    def get(self, task_id: str, *, conn: sqlite3.Connection | None = None) -> Task | None:
        ids.validate_task_id(task_id)
        row = self._db.query_one(
            "SELECT payload_json FROM tasks WHERE id = ?", (task_id,), conn=conn
        )
        return None if row is None else _load(Task, row, "tasks.payload_json")

    def require(self, task_id: str, *, conn: sqlite3.Connection | None = None) -> Task:
        task = self.get(task_id, conn=conn)
        if task is None:
            raise NotFoundError(f"task not found: {task_id}")
        return task

    def list_for_stage(
        self, release_id: str, stage: Stage, *, conn: sqlite3.Connection | None = None
    ) -> list[Task]:
        rows = self._db.query_all(
            """
            SELECT payload_json FROM tasks
            WHERE release_id = ? AND stage = ? AND cycle_id IS NULL
            ORDER BY sequence ASC, id ASC
            """,
            (release_id, stage.value),
            conn=conn,
        )
        return [_load(Task, row, "tasks.payload_json") for row in rows]

    def list_for_cycle(
        self, cycle_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[Task]:
        rows = self._db.query_all(
            "SELECT payload_json FROM tasks WHERE cycle_id = ? ORDER BY sequence ASC, id ASC",
            (cycle_id,),
            conn=conn,
        )
        return [_load(Task, row, "tasks.payload_json") for row in rows]

    def list_for_release(
        self, release_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[Task]:
        rows = self._db.query_all(
            """
            SELECT tasks.payload_json AS payload_json FROM tasks
            LEFT JOIN regression_cycles ON regression_cycles.id = tasks.cycle_id
            WHERE tasks.release_id = ?
            ORDER BY
                CASE tasks.stage
                    WHEN 'kickoff' THEN 0 WHEN 'regression' THEN 1 ELSE 2
                END,
                COALESCE(regression_cycles.slot_index, 0),
                tasks.sequence,
                tasks.id
            """,
            (release_id,),
            conn=conn,
        )
        return [_load(Task, row, "tasks.payload_json") for row in rows]

    def update(
        self,
        task: Task,
        *,
        expected_status: TaskStatus | Iterable[TaskStatus],
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Persist ``task`` only if the stored status is still one of ``expected_status``."""
        expected = (
            (expected_status,)
            if isinstance(expected_status, TaskStatus)
            else tuple(expected_status)
        )
        placeholders = ",".join("?" for _ in expected)
        changed = self._db.execute(
            f"""
            UPDATE tasks SET status = ?, updated_at = ?, payload_json = ?
            WHERE id = ? AND status IN ({placeholders})
            """,
            (
                task.status.value,
                datetime_to_iso8601z(task.updated_at),
                task.to_json(),
                task.id,
                *(status.value for status in expected),
            ),
            conn=conn,
        )
        return changed == 1


class CycleRepo(_BaseRepo):
    """Regression cycles, one per configured slot."""

    def add(
        self, cycle: RegressionCycle, *, conn: sqlite3.Connection | None = None
    ) -> RegressionCycle:
        self._db.execute(
            """
            INSERT INTO regression_cycles (
                id, release_id, slot_index, scheduled_at, status, tag, updated_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                cycle.id,
                cycle.release_id,
                cycle.slot_index,
                datetime_to_iso8601z(cycle.scheduled_at),
                cycle.status.value,
                cycle.tag,
                datetime_to_iso8601z(cycle.updated_at),
                cycle.to_json(),
            ),
            conn=conn,
        )
        return cycle

    def get(
        self, cycle_id: str, *, conn: sqlite3.Connection | None = None
    ) -> RegressionCycle | None:
        ids.validate_cycle_id(cycle_id)
        row = self._db.query_one(
            "SELECT payload_json FROM regression_cycles WHERE id = ?", (cycle_id,), conn=conn
        )
        return None if row is None else _load(RegressionCycle, row, "regression_cycles")

    def require(self, cycle_id: str, *, conn: sqlite3.Connection | None = None) -> RegressionCycle:
        cycle = self.get(cycle_id, conn=conn)
        if cycle is None:
            raise NotFoundError(f"regression cycle not found: {cycle_id}")
        return cycle

    def list_for_release(
        self, release_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[RegressionCycle]:
        rows = self._db.query_all(
            """
            SELECT payload_json FROM regression_cycles
            WHERE release_id = ? ORDER BY slot_index ASC
            """,
            (release_id,),
            conn=conn,
        )
        return [_load(RegressionCycle, row, "regression_cycles") for row in rows]

    def next_slot_index(self, release_id: str, *, conn: sqlite3.Connection | None = None) -> int:
        row = self._db.query_one(
            "SELECT COALESCE(MAX(slot_index), 0) + 1 AS next_index FROM regression_cycles "
            "WHERE release_id = ?",
            (release_id,),
            conn=conn,
        )
        value = None if row is None else row["next_index"]
        if not isinstance(value, int):
            raise ValueError("regression_cycles.slot_index must be an integer")
        return value

    def update(
        self,
        cycle: RegressionCycle,
        *,
        expected_status: CycleStatus | Iterable[CycleStatus],
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        expected = (
            (expected_status,)
            if isinstance(expected_status, CycleStatus)
            else tuple(expected_status)
        )
        placeholders = ",".join("?" for _ in expected)
        changed = self._db.execute(
            f"""
            UPDATE regression_cycles SET status = ?, tag = ?, updated_at = ?, payload_json = ?
            WHERE id = ? AND status IN ({placeholders})
            """,
            (
                cycle.status.value,
                cycle.tag,
                datetime_to_iso8601z(cycle.updated_at),
                cycle.to_json(),
                cycle.id,
                *(status.value for status in expected),
            ),
            conn=conn,
        )
        return changed == 1


class _ConsumeConflict(Exception):
    """At least one requested build was consumed by someone else first."""


class BuildArtifactRepo(_BaseRepo):
    """Staged and consumed builds; consumed rows are append-only."""

    def stage(
        self, artifact: BuildArtifact, *, conn: sqlite3.Connection | None = None
    ) -> BuildArtifact | None:
        """Store a staged build, replacing the staged one for its key; returns the replaced one."""
        if artifact.is_consumed:
            raise ValueError("stage() only accepts unconsumed builds")
        with self._db.transaction(conn=conn) as tx:
            previous = self._staged_for_key(
                artifact.release_id, artifact.platform, artifact.stage, conn=tx
            )
            if previous is not None:
                self._db.execute(
                    "DELETE FROM build_artifacts WHERE id = ? AND consumed_by_task_id IS NULL",
                    (previous.id,),
                    conn=tx,
                )
            self._insert(artifact, conn=tx)
        return previous

    def record_consumed(
        self, artifact: BuildArtifact, *, conn: sqlite3.Connection | None = None
    ) -> BuildArtifact:
        """Append a build that was bound to its task at creation (CI-produced)."""
        if not artifact.is_consumed:
            raise ValueError("record_consumed() only accepts consumed builds")
        self._insert(artifact, conn=conn)
        return artifact

    def consume(
        self,
        build_ids: Sequence[str],
        *,
        task_id: str,
        cycle_id: str | None = None,
        consumed_at: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Bind every build to ``task_id``; all-or-nothing, ``False`` if any was taken."""
        if not build_ids:
            raise ValueError("build_ids must not be empty")
        if len(set(build_ids)) != len(build_ids):
            raise ValueError("build_ids contains duplicates")
        for build_id in build_ids:
            ids.validate_build_id(build_id)
        ids.validate_task_id(task_id)
        if cycle_id is not None:
            ids.validate_cycle_id(cycle_id)

        try:
            with self._db.transaction(conn=conn) as tx:
                changed = self._db.executemany(
                    """
                    UPDATE build_artifacts
                    SET consumed_by_task_id = ?, consumed_by_cycle_id = ?, consumed_at = ?
                    WHERE id = ? AND consumed_by_task_id IS NULL
                    """,
                    [
                        (task_id, cycle_id, datetime_to_iso8601z(consumed_at), bid)
                        for bid in build_ids
                    ],
                    conn=tx,
                )
                if changed != len(build_ids):
                    raise _ConsumeConflict
        except _ConsumeConflict:
            return False
        return True

    def get(self, build_id: str, *, conn: sqlite3.Connection | None = None) -> BuildArtifact | None:
        ids.validate_build_id(build_id)
        row = self._db.query_one(
            "SELECT * FROM build_artifacts WHERE id = ?", (build_id,), conn=conn
        )
        return None if row is None else _artifact_from_row(row)

    def list_staged(
        self,
        release_id: str,
        *,
        stage: Stage | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[BuildArtifact]:
        sql = "SELECT * FROM build_artifacts WHERE release_id = ? AND consumed_by_task_id IS NULL"
        params: list[object] = [release_id]
        if stage is not None:
            sql += " AND stage = ?"
            params.append(stage.value)
        sql += " ORDER BY stage ASC, platform ASC"
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        return [_artifact_from_row(row) for row in rows]

    def list_consumed(
        self, release_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[BuildArtifact]:
        rows = self._db.query_all(
            """
            SELECT * FROM build_artifacts
            WHERE release_id = ? AND consumed_by_task_id IS NOT NULL
            ORDER BY consumed_at ASC, id ASC
            """,
            (release_id,),
            conn=conn,
        )
        return [_artifact_from_row(row) for row in rows]

    def list_for_task(
        self, task_id: str, *, conn: sqlite3.Connection | None = None
    ) -> list[BuildArtifact]:
        rows = self._db.query_all(
            "SELECT * FROM build_artifacts WHERE consumed_by_task_id = ? ORDER BY platform ASC",
            (task_id,),
            conn=conn,
        )
        return [_artifact_from_row(row) for row in rows]

    def _staged_for_key(
        self,
        release_id: str,
        platform: Platform,
        stage: Stage,
        *,
        conn: sqlite3.Connection,
    ) -> BuildArtifact | None:
        row = self._db.query_one(
            """
            SELECT * FROM build_artifacts
            WHERE release_id = ? AND platform = ? AND stage = ? AND consumed_by_task_id IS NULL
            """,
            (release_id, platform.value, stage.value),
            conn=conn,
        )
        return None if row is None else _artifact_from_row(row)

    def _insert(self, artifact: BuildArtifact, *, conn: sqlite3.Connection | None) -> None:
        self._db.execute(
            """
            INSERT INTO build_artifacts (
                id, release_id, platform, stage, source, locator, staged_at,
                consumed_by_task_id, consumed_by_cycle_id, consumed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.id,
                artifact.release_id,
                artifact.platform.value,
                artifact.stage.value,
                artifact.source.value,
                artifact.locator,
                datetime_to_iso8601z(artifact.staged_at),
                artifact.consumed_by_task_id,
                artifact.consumed_by_cycle_id,
                _optional_ts(artifact.consumed_at),
            ),
            conn=conn,
        )


def _stage_column(stage: Stage) -> str:
    # Column names mirror Stage values; never interpolate anything else.
    return {
        Stage.KICKOFF: "kickoff",
        Stage.REGRESSION: "regression",
        Stage.POST_REGRESSION: "post_regression",
    }[stage]


def _load(model: type[TModel], row: dict[str, RowValue], path: str) -> TModel:
    return model.from_json(_row_text(row, "payload_json", path))


def _row_text(row: dict[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text, got {type(value).__name__}")
    return value


def _row_optional_text(row: dict[str, RowValue], key: str, path: str) -> str | None:
    if row.get(key) is None:
        return None
    return _row_text(row, key, path)


def _optional_ts(value: datetime | None) -> str | None:
    return None if value is None else datetime_to_iso8601z(value)


def _stage_status_from_row(row: dict[str, RowValue]) -> StageStatusRecord:
    armed = json.loads(
        _row_text(row, "armed_transitions_json", "stage_statuses.armed_transitions_json")
    )
    return StageStatusRecord.from_dict(
        {
            "release_id": _row_text(row, "release_id", "stage_statuses.release_id"),
            "kickoff": _row_text(row, "kickoff", "stage_statuses.kickoff"),
            "regression": _row_text(row, "regression", "stage_statuses.regression"),
            "post_regression": _row_text(row, "post_regression", "stage_statuses.post_regression"),
            "armed_transitions": armed,
            "is_executing": bool(row.get("is_executing")),
            "lock_owner": _row_optional_text(row, "lock_owner", "stage_statuses.lock_owner"),
            "lock_acquired_at": _row_optional_text(
                row, "lock_acquired_at", "stage_statuses.lock_acquired_at"
            ),
            "pause_type": _row_text(row, "pause_type", "stage_statuses.pause_type"),
            "updated_at": _row_text(row, "updated_at", "stage_statuses.updated_at"),
        }
    )


def _artifact_from_row(row: dict[str, RowValue]) -> BuildArtifact:
    return BuildArtifact.from_dict(
        {
            key: row[key]
            for key in (
                "id",
                "release_id",
                "platform",
                "stage",
                "source",
                "locator",
                "staged_at",
                "consumed_by_task_id",
                "consumed_by_cycle_id",
                "consumed_at",
            )
        }
    )


__all__ = [
    "BuildArtifactRepo",
    "CycleRepo",
    "ReleaseRepo",
    "StageStatusRepo",
    "TaskRepo",
]
