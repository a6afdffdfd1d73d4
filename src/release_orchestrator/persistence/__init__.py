"""
release-orchestrator: persistence layer

File: src/release_orchestrator/persistence/__init__.py

Purpose
- SQLite state DB access, migrations and repositories for releases, stage statuses,
  tasks, regression cycles and build artifacts.

Guarantees
- A crashed scheduler resumes from what is on disk; status readers never block the tick.
"""

from __future__ import annotations

from release_orchestrator.persistence.repositories import (
    BuildArtifactRepo,
    CycleRepo,
    ReleaseRepo,
    StageStatusRepo,
    TaskRepo,
)
from release_orchestrator.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "BuildArtifactRepo",
    "CycleRepo",
    "ReleaseRepo",
    "StageStatusRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "TaskRepo",
]
