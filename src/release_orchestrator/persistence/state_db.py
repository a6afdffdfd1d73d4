"""
release-orchestrator: SQLite state database

File: src/release_orchestrator/persistence/state_db.py

Purpose
- SQLite schema management, checksummed forward-only migrations and the
  connection/transaction lifecycle for release state.

Schema guarantees enforced by the database itself
- One staged (unconsumed) build per (release, platform, stage): partial unique index.
- At most one in-progress regression cycle per release: partial unique index.
- Consumed builds are append-only: UPDATE and DELETE abort once consumed.
- A cut regression tag never changes.
- Archived releases drop out of the partial index the scheduling loop pages through.
- Task creation is idempotent per (release, stage, type) outside cycles and per
  (cycle, type) inside them.

Locking
- Connections are short-lived. Writes start with BEGIN IMMEDIATE and retry a bounded
  number of times on SQLITE_BUSY; WAL lets status queries read during a tick.
"""

from __future__ import annotations

import hashlib
import itertools
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Final, TypeVar

from release_orchestrator.constants import STATE_DB_SCHEMA_VERSION
from release_orchestrator.domain.base import datetime_to_iso8601z
from release_orchestrator.domain.enums import (
    BuildSource,
    CycleStatus,
    Platform,
    PauseType,
    ReleasePhase,
    Stage,
    StageStatus,
    TaskStatus,
    TaskType,
)


SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(enum_type: type[Enum]) -> str:
    return ",".join(f"'{value}'" for value in sorted(item.value for item in enum_type))


_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS releases (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        version TEXT NOT NULL,
        phase TEXT NOT NULL CHECK (phase IN ({_sql_enum(ReleasePhase)})),
        kickoff_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        UNIQUE (tenant_id, version)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_releases_phase ON releases(phase, created_at)",
    f"""
    CREATE TABLE IF NOT EXISTS stage_statuses (
        release_id TEXT PRIMARY KEY REFERENCES releases(id) ON DELETE CASCADE,
        kickoff TEXT NOT NULL CHECK (kickoff IN ({_sql_enum(StageStatus)})),
        regression TEXT NOT NULL CHECK (regression IN ({_sql_enum(StageStatus)})),
        post_regression TEXT NOT NULL CHECK (post_regression IN ({_sql_enum(StageStatus)})),
        armed_transitions_json TEXT NOT NULL,
        is_executing INTEGER NOT NULL CHECK (is_executing IN (0, 1)) DEFAULT 0,
        lock_owner TEXT,
        lock_acquired_at TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS regression_cycles (
        id TEXT PRIMARY KEY,
        release_id TEXT NOT NULL REFERENCES releases(id) ON DELETE CASCADE,
        slot_index INTEGER NOT NULL CHECK (slot_index > 0),
        scheduled_at TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(CycleStatus)})),
        tag TEXT,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        UNIQUE (release_id, slot_index)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_regression_cycles_one_in_progress
    ON regression_cycles(release_id) WHERE status = 'in_progress'
    """,
    """
    CREATE TRIGGER IF NOT EXISTS regression_cycles_tag_immutable
    BEFORE UPDATE OF tag ON regression_cycles
    WHEN OLD.tag IS NOT NULL AND NEW.tag IS NOT OLD.tag
    BEGIN
        SELECT RAISE(ABORT, 'regression cycle tag is immutable once cut');
    END
    """,
    f"""
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        release_id TEXT NOT NULL REFERENCES releases(id) ON DELETE CASCADE,
        cycle_id TEXT REFERENCES regression_cycles(id) ON DELETE CASCADE,
        stage TEXT NOT NULL CHECK (stage IN ({_sql_enum(Stage)})),
        task_type TEXT NOT NULL CHECK (task_type IN ({_sql_enum(TaskType)})),
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(TaskStatus)})),
        sequence INTEGER NOT NULL CHECK (sequence >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_tasks_stage_type
    ON tasks(release_id, stage, task_type) WHERE cycle_id IS NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_tasks_cycle_type
    ON tasks(cycle_id, task_type) WHERE cycle_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_release_status ON tasks(release_id, status)",
    f"""
    CREATE TABLE IF NOT EXISTS build_artifacts (
        id TEXT PRIMARY KEY,
        release_id TEXT NOT NULL REFERENCES releases(id) ON DELETE CASCADE,
        platform TEXT NOT NULL CHECK (platform IN ({_sql_enum(Platform)})),
        stage TEXT NOT NULL CHECK (stage IN ({_sql_enum(Stage)})),
        source TEXT NOT NULL CHECK (source IN ({_sql_enum(BuildSource)})),
        locator TEXT,
        staged_at TEXT NOT NULL,
        consumed_by_task_id TEXT REFERENCES tasks(id),
        consumed_by_cycle_id TEXT REFERENCES regression_cycles(id),
        consumed_at TEXT,
        CHECK ((consumed_by_task_id IS NULL) = (consumed_at IS NULL)),
        CHECK (consumed_by_cycle_id IS NULL OR consumed_by_task_id IS NOT NULL)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_build_artifacts_one_staged
    ON build_artifacts(release_id, platform, stage) WHERE consumed_by_task_id IS NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_build_artifacts_consumer
    ON build_artifacts(consumed_by_task_id)
    """,
    """
    CREATE TRIGGER IF NOT EXISTS build_artifacts_consumed_no_update
    BEFORE UPDATE ON build_artifacts
    WHEN OLD.consumed_by_task_id IS NOT NULL
    BEGIN
        SELECT RAISE(ABORT, 'consumed build artifacts are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS build_artifacts_consumed_no_delete
    BEFORE DELETE ON build_artifacts
    WHEN OLD.consumed_by_task_id IS NOT NULL
    BEGIN
        SELECT RAISE(ABORT, 'consumed build artifacts are append-only');
    END
    """,
)

_MIGRATION_0002_STATEMENTS: Final[tuple[str, ...]] = (
    "ALTER TABLE releases ADD COLUMN archived_at TEXT",
    """
    CREATE INDEX IF NOT EXISTS idx_releases_active
    ON releases(created_at, id) WHERE archived_at IS NULL
    """,
    f"""
    ALTER TABLE stage_statuses ADD COLUMN pause_type TEXT NOT NULL DEFAULT 'none'
    CHECK (pause_type IN ({_sql_enum(PauseType)}))
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """One applied row of ``schema_versions``."""

    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        """sha256 over version, name and statements with trailing whitespace trimmed."""
        digest = hashlib.sha256(f"{self.version}:{self.name}\n".encode())
        for statement in self.statements:
            lines = (line.rstrip() for line in statement.strip().splitlines())
            digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
        return digest.hexdigest()


MIGRATIONS: Final[tuple[Migration, ...]] = (
    Migration(1, "release_state_schema", _MIGRATION_0001_STATEMENTS),
    Migration(2, "release_archive_and_pause", _MIGRATION_0002_STATEMENTS),
)

_BUSY_CODES: Final[frozenset[int]] = frozenset(
    getattr(sqlite3, name)
    for name in ("SQLITE_BUSY", "SQLITE_BUSY_RECOVERY", "SQLITE_BUSY_SNAPSHOT", "SQLITE_LOCKED")
    if hasattr(sqlite3, name)
)
_CORRUPT_CODES: Final[frozenset[int]] = frozenset(
    getattr(sqlite3, name) for name in ("SQLITE_CORRUPT", "SQLITE_NOTADB") if hasattr(sqlite3, name)
)
_BUSY_MESSAGES: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)
_CORRUPT_MESSAGES: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "file is not a database",
)

_T = TypeVar("_T")


class StateDBError(RuntimeError):
    """A SQLite failure other than a constraint violation."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be reconciled with this build's migrations."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a malformed or foreign file."""


def _classify(exc: sqlite3.Error) -> type[StateDBError]:
    code = getattr(exc, "sqlite_errorcode", None)
    text = str(exc).lower()
    if code in _CORRUPT_CODES or any(marker in text for marker in _CORRUPT_MESSAGES):
        return StateDBCorruptionError
    if code in _BUSY_CODES or any(marker in text for marker in _BUSY_MESSAGES):
        return StateDBBusyError
    return StateDBError


def _pending_migrations(target: int) -> tuple[Migration, ...]:
    registered = {migration.version: migration for migration in MIGRATIONS}
    gaps = [version for version in range(1, target + 1) if version not in registered]
    if gaps:
        raise StateDBMigrationError(f"no migration registered for schema version {gaps[0]}")
    return tuple(registered[version] for version in range(1, target + 1))


class StateDB:
    """Release state in one SQLite file.

    Each public call opens its own connection unless ``conn=`` is passed, so the
    scheduler, the CLI and a concurrent status query never share a handle. Constraint
    violations (``sqlite3.IntegrityError``, including trigger aborts) propagate
    unchanged because repositories translate them; every other SQLite error becomes a
    ``StateDBError`` naming the file. Lock contention is retried with exponential
    backoff before surfacing as ``StateDBBusyError``.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for label, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{label} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._retries = busy_retry_limit
        self._backoff_s = busy_retry_backoff_ms / 1000.0
        self._savepoint_ids = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """A new autocommit connection with WAL, foreign keys and the busy timeout set."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            (mode,) = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        except sqlite3.Error as exc:
            conn.close()
            raise _classify(exc)(f"cannot open state db {self._path}: {exc}") from exc
        if str(mode).lower() != "wal":
            conn.close()
            raise StateDBError(f"state db {self._path} refused WAL mode (got {mode!r})")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Commit the block atomically or roll it back on error.

        On a connection that is already inside a transaction this opens a savepoint,
        so a failing inner block undoes only its own writes.
        """
        if conn is None:
            with self.connection() as owned, self.transaction(
                conn=owned, immediate=immediate
            ) as tx:
                yield tx
            return

        if conn.in_transaction:
            savepoint = f"relorch_sp_{next(self._savepoint_ids)}"
            begin = f"SAVEPOINT {savepoint}"
            on_error = (f"ROLLBACK TO SAVEPOINT {savepoint}", f"RELEASE SAVEPOINT {savepoint}")
            on_success: tuple[str, ...] = (f"RELEASE SAVEPOINT {savepoint}",)
        else:
            begin = "BEGIN IMMEDIATE" if immediate else "BEGIN DEFERRED"
            on_error = ("ROLLBACK",)
            on_success = ("COMMIT",)

        self._run(conn, begin, operation="begin")
        try:
            yield conn
        except Exception:
            for statement in on_error:
                self._run(conn, statement, operation="rollback")
            raise
        for statement in on_success:
            self._run(conn, statement, operation="commit")

    def migrate(self) -> int:
        """Apply outstanding migrations and return the resulting schema version.

        Re-running is a no-op. Refuses a database written by a newer build and one
        whose recorded checksums differ from the migrations shipped here.
        """
        wanted = _pending_migrations(STATE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._run(conn, _SCHEMA_VERSIONS_TABLE_SQL, operation="create schema_versions")
            applied = self._applied(conn)
            newest = max(applied, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this build "
                    f"(db={newest}, code={STATE_DB_SCHEMA_VERSION})"
                )
            for migration in wanted:
                recorded = applied.get(migration.version)
                if recorded is None:
                    self._apply(conn, migration)
                elif recorded.checksum != migration.checksum:
                    raise StateDBMigrationError(
                        f"migration checksum mismatch for version {migration.version}: "
                        f"db={recorded.checksum} code={migration.checksum}"
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        version = 0 if row is None else row["version"]
        if not isinstance(version, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return version

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return sorted(self._applied(conn).values(), key=lambda record: record.version)

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Run one statement and return its rowcount; commits unless ``conn`` is given."""
        with self._borrow(conn, write=True) as target:
            return self._run(target, sql, params, operation="execute").rowcount

    def executemany(
        self,
        sql: str,
        params_iter: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        batch = [tuple(params) for params in params_iter]
        with self._borrow(conn, write=True) as target:
            return self._retrying(
                "execute many", lambda: target.executemany(sql, batch).rowcount
            )

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        with self._borrow(conn, write=False) as target:
            rows = self._run(target, sql, params, operation="query").fetchall()
        return [_as_dict(row) for row in rows]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        with self._borrow(conn, write=False) as target:
            row = self._run(target, sql, params, operation="query").fetchone()
        return None if row is None else _as_dict(row)

    @contextmanager
    def _borrow(
        self, conn: sqlite3.Connection | None, *, write: bool
    ) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        elif write:
            with self.transaction() as tx:
                yield tx
        else:
            with self.connection() as owned:
                yield owned

    def _apply(self, conn: sqlite3.Connection, migration: Migration) -> None:
        operation = f"apply migration {migration.version} ({migration.name})"
        with self.transaction(conn=conn) as tx:
            for statement in migration.statements:
                self._run(tx, statement, operation=operation)
            self._run(
                tx,
                "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    migration.version,
                    migration.name,
                    migration.checksum,
                    datetime_to_iso8601z(_utcnow()),
                ),
                operation=operation,
            )

    def _applied(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        rows = self._run(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions",
            operation="read schema_versions",
        ).fetchall()
        records: dict[int, MigrationRecord] = {}
        for row in rows:
            version, name, checksum, applied_at = tuple(row)
            if not isinstance(version, int) or not all(
                isinstance(text, str) for text in (name, checksum, applied_at)
            ):
                raise StateDBMigrationError(f"schema_versions row {version!r} is malformed")
            records[version] = MigrationRecord(version, name, checksum, applied_at)
        return records

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams = (),
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        bound = tuple(params)
        return self._retrying(operation, lambda: conn.execute(sql, bound))

    def _retrying(self, operation: str, call: Callable[[], _T]) -> _T:
        attempt = 0
        while True:
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                kind = _classify(exc)
                if kind is StateDBBusyError and attempt < self._retries:
                    time.sleep(self._backoff_s * 2**attempt)
                    attempt += 1
                    continue
                tries = f" after {attempt + 1} attempt(s)" if kind is StateDBBusyError else ""
                raise kind(f"{operation} failed for {self._path}{tries}: {exc}") from exc


def _as_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    return dict(zip(row.keys(), tuple(row), strict=True))


def _utcnow() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIGRATIONS",
    "Migration",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
