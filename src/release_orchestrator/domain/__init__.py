"""
release-orchestrator: domain layer

File: src/release_orchestrator/domain/__init__.py

Purpose
- Domain types shared across layers: Release, StageStatusRecord, Task,
  RegressionCycle, BuildArtifact, their enumerations and the typed task outputs.
- Free of IO side effects; every model validates on construction and serializes to
  canonical JSON.
"""

from __future__ import annotations

from release_orchestrator.domain.enums import (
    BuildSource,
    CallbackOutcome,
    CycleStatus,
    Integration,
    Platform,
    ReleasePhase,
    Stage,
    StageStatus,
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

__all__ = [
    "BuildArtifact",
    "BuildSource",
    "CallbackOutcome",
    "CycleStatus",
    "Integration",
    "Platform",
    "RegressionCycle",
    "Release",
    "ReleasePhase",
    "Stage",
    "StageStatus",
    "StageStatusRecord",
    "Task",
    "TaskStatus",
    "TaskType",
]
