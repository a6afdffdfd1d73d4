"""
release-orchestrator: orchestration engine

File: src/release_orchestrator/engine/__init__.py

Purpose
- Stage state machine, task execution engine, regression cycle scheduler, build
  artifact tracker and the coordinator that drives them on every tick.
"""

from release_orchestrator.engine.adapters import (
    AdapterRegistry,
    AwaitingCallback,
    AwaitingManualBuild,
    CompletedSync,
    DispatchContext,
    DispatchOutcome,
    Failed,
    IntegrationAdapter,
    SimulatedAdapter,
)
from release_orchestrator.engine.artifacts import BuildArtifactTracker
from release_orchestrator.engine.catalog import CompletionMode, TaskSpec, spec_for
from release_orchestrator.engine.context import EngineSettings, OrchestrationContext
from release_orchestrator.engine.coordinator import (
    Coordinator,
    ReleaseSnapshot,
    ReleaseTickResult,
    TickReport,
)
from release_orchestrator.engine.definitions import (
    ReleaseDefinition,
    load_release_definition,
    parse_release_definition,
)
from release_orchestrator.engine.regression import RegressionCycleScheduler
from release_orchestrator.engine.stages import PauseOutcome, StageStateMachine
from release_orchestrator.engine.tasks import CallbackResult, RetryOutcome, TaskExecutionEngine

__all__ = [
    "AdapterRegistry",
    "AwaitingCallback",
    "AwaitingManualBuild",
    "BuildArtifactTracker",
    "CallbackResult",
    "CompletedSync",
    "CompletionMode",
    "Coordinator",
    "DispatchContext",
    "DispatchOutcome",
    "EngineSettings",
    "Failed",
    "IntegrationAdapter",
    "OrchestrationContext",
    "PauseOutcome",
    "RegressionCycleScheduler",
    "ReleaseDefinition",
    "ReleaseSnapshot",
    "ReleaseTickResult",
    "RetryOutcome",
    "SimulatedAdapter",
    "StageStateMachine",
    "TaskExecutionEngine",
    "TaskSpec",
    "TickReport",
    "load_release_definition",
    "parse_release_definition",
    "spec_for",
]
