"""State DB migration, pragmas, savepoints and concurrency tests."""

from __future__ import annotations

import sqlite3
import time
from typing import TYPE_CHECKING

import pytest

from release_orchestrator.constants import STATE_DB_SCHEMA_VERSION
from release_orchestrator.domain.base import as_datetime, datetime_to_iso8601z
from release_orchestrator.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

from . import Repos

if TYPE_CHECKING:
    from pathlib import Path

EXPECTED_TABLES = frozenset(
    {
        "schema_versions",
        "releases",
        "stage_statuses",
        "regression_cycles",
        "tasks",
        "build_artifacts",
    }
)
EXPECTED_INDEXES = frozenset(
    {
        "idx_releases_phase",
        "idx_releases_active",
        "uq_regression_cycles_one_in_progress",
        "uq_tasks_stage_type",
        "uq_tasks_cycle_type",
        "idx_tasks_release_status",
        "uq_build_artifacts_one_staged",
        "idx_build_artifacts_consumer",
    }
)


def _catalog(db: StateDB, kind: str) -> set[str]:
    rows = db.query_all("SELECT name FROM sqlite_master WHERE type = ?", (kind,))
    return {str(row["name"]) for row in rows}


def _pragma(conn: sqlite3.Connection, name: str) -> object:
    (value,) = conn.execute(f"PRAGMA {name}").fetchone()
    return value


def test_migrate_twice_lands_on_the_current_schema(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "releases.sqlite3", busy_timeout_ms=4_321)

    assert [db.migrate(), db.migrate()] == [STATE_DB_SCHEMA_VERSION] * 2
    assert EXPECTED_TABLES <= _catalog(db, "table")
    assert EXPECTED_INDEXES <= _catalog(db, "index")

    history = db.schema_history()
    assert [record.version for record in history] == list(range(1, STATE_DB_SCHEMA_VERSION + 1))
    assert {len(record.checksum) for record in history} == {64}
    stamps = [as_datetime(record.applied_at, "applied_at") for record in history]
    assert [datetime_to_iso8601z(stamp) for stamp in stamps] == [
        record.applied_at for record in history
    ]


def test_every_connection_gets_wal_foreign_keys_and_busy_timeout(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "releases.sqlite3", busy_timeout_ms=4_321)

    with db.connection() as conn:
        assert _pragma(conn, "foreign_keys") == 1
        assert str(_pragma(conn, "journal_mode")).lower() == "wal"
        assert _pragma(conn, "busy_timeout") == 4_321


def test_migrate_rejects_tampered_checksums_and_newer_schemas(tmp_path: Path) -> None:
    tampered = StateDB(tmp_path / "tampered.sqlite3")
    tampered.migrate()
    tampered.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("0" * 64,))

    with pytest.raises(StateDBMigrationError, match="checksum mismatch"):
        tampered.migrate()

    future = StateDB(tmp_path / "future.sqlite3")
    future.migrate()
    future.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "future", "f" * 64, "2026-03-02T09:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer than supported"):
        future.migrate()


def test_nested_transaction_rolls_back_only_the_savepoint(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "releases.sqlite3")
    db.migrate()
    db.execute("CREATE TABLE scratch (value INTEGER NOT NULL)")

    with db.transaction() as tx:
        db.execute("INSERT INTO scratch (value) VALUES (1)", conn=tx)
        with pytest.raises(RuntimeError, match="inner"):
            with db.transaction(conn=tx):
                db.execute("INSERT INTO scratch (value) VALUES (2)", conn=tx)
                raise RuntimeError("inner")
        db.execute("INSERT INTO scratch (value) VALUES (3)", conn=tx)

    rows = db.query_all("SELECT value FROM scratch ORDER BY value")
    assert [row["value"] for row in rows] == [1, 3]


def test_operational_errors_are_wrapped_with_the_db_path(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "releases.sqlite3")
    db.migrate()

    with pytest.raises(StateDBError, match="releases.sqlite3"):
        db.query_all("SELECT * FROM no_such_table")


def test_a_non_database_file_is_reported_as_corruption(tmp_path: Path) -> None:
    path = tmp_path / "releases.sqlite3"
    path.write_bytes(b"this is not a sqlite database" * 64)

    with pytest.raises(StateDBCorruptionError, match="releases.sqlite3"):
        StateDB(path).migrate()


def test_constructor_rejects_negative_busy_settings(tmp_path: Path) -> None:
    path = tmp_path / "state.sqlite3"

    with pytest.raises(ValueError, match="busy_timeout_ms"):
        StateDB(path, busy_timeout_ms=-1)
    with pytest.raises(ValueError, match="busy_retry_limit"):
        StateDB(path, busy_retry_limit=-1)
    with pytest.raises(ValueError, match="busy_retry_backoff_ms"):
        StateDB(path, busy_retry_backoff_ms=-1)


def test_a_reader_is_not_blocked_by_an_open_write_transaction(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "releases.sqlite3")
    release = Repos(db).add_release(1)

    with db.connection() as writer, db.connection() as reader:
        writer.execute("BEGIN IMMEDIATE")
        writer.execute("UPDATE releases SET phase = 'kickoff' WHERE id = ?", (release.id,))

        started = time.monotonic()
        (phase,) = reader.execute(
            "SELECT phase FROM releases WHERE id = ?", (release.id,)
        ).fetchone()
        waited = time.monotonic() - started

        writer.execute("ROLLBACK")

    assert phase == "not_started"
    assert waited < 0.75


def test_a_held_write_lock_surfaces_as_busy_after_retries(tmp_path: Path) -> None:
    db = StateDB(
        tmp_path / "releases.sqlite3",
        busy_timeout_ms=20,
        busy_retry_limit=2,
        busy_retry_backoff_ms=1,
    )
    db.migrate()
    db.execute("CREATE TABLE scratch (value INTEGER NOT NULL)")

    with db.connection() as holder:
        holder.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StateDBBusyError, match="after 3 attempt"):
                db.execute("INSERT INTO scratch (value) VALUES (1)")
        finally:
            holder.execute("ROLLBACK")

    assert db.execute("INSERT INTO scratch (value) VALUES (1)") == 1
