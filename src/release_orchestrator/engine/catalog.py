"""
release-orchestrator: task catalog

File: src/release_orchestrator/engine/catalog.py

Purpose
- Declare, per task type, the owning stage, the integration family whose adapter
  performs it, its completion mode and the platforms it targets.
- Decide which tasks a release requires for a stage or a regression cycle, in the
  order they run. Position in that order is the task's ``sequence``: a task becomes
  eligible only when every lower-sequence sibling is satisfied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from release_orchestrator.domain.base import StrEnum
from release_orchestrator.domain.enums import Integration, Platform, Stage, TaskType
from release_orchestrator.domain.models import Release


class CompletionMode(StrEnum):
    SYNC = "sync"
    CALLBACK = "callback"
    BUILD = "build"


@dataclass(frozen=True, slots=True)
class TaskSpec:
    task_type: TaskType
    stage: Stage
    integration: Integration
    mode: CompletionMode
    only_platform: Platform | None = None

    def platforms_for(self, release: Release) -> tuple[Platform, ...]:
        if self.only_platform is None:
            return release.platforms
        return (self.only_platform,) if self.only_platform in release.platforms else ()


_SPECS: Final[tuple[TaskSpec, ...]] = (
    TaskSpec(TaskType.FORK_BRANCH, Stage.KICKOFF, Integration.SOURCE_CONTROL, CompletionMode.SYNC),
    TaskSpec(
        TaskType.CREATE_PROJECT_MANAGEMENT_TICKET,
        Stage.KICKOFF,
        Integration.PROJECT_MANAGEMENT,
        CompletionMode.SYNC,
    ),
    TaskSpec(
        TaskType.CREATE_TEST_SUITE, Stage.KICKOFF, Integration.TEST_MANAGEMENT, CompletionMode.SYNC
    ),
    TaskSpec(
        TaskType.TRIGGER_PRE_REGRESSION_BUILDS,
        Stage.KICKOFF,
        Integration.CI_CD,
        CompletionMode.BUILD,
    ),
    TaskSpec(
        TaskType.TRIGGER_REGRESSION_BUILDS,
        Stage.REGRESSION,
        Integration.CI_CD,
        CompletionMode.BUILD,
    ),
    TaskSpec(
        TaskType.RESET_TEST_SUITE,
        Stage.REGRESSION,
        Integration.TEST_MANAGEMENT,
        CompletionMode.SYNC,
    ),
    TaskSpec(
        TaskType.CREATE_RC_TAG, Stage.REGRESSION, Integration.SOURCE_CONTROL, CompletionMode.SYNC
    ),
    TaskSpec(
        TaskType.CREATE_RELEASE_NOTES,
        Stage.REGRESSION,
        Integration.SOURCE_CONTROL,
        CompletionMode.SYNC,
    ),
    TaskSpec(
        TaskType.TRIGGER_AUTOMATION_RUNS,
        Stage.REGRESSION,
        Integration.CI_CD,
        CompletionMode.CALLBACK,
    ),
    TaskSpec(
        TaskType.CREATE_RELEASE_TAG,
        Stage.POST_REGRESSION,
        Integration.SOURCE_CONTROL,
        CompletionMode.SYNC,
    ),
    TaskSpec(
        TaskType.CREATE_FINAL_RELEASE_NOTES,
        Stage.POST_REGRESSION,
        Integration.SOURCE_CONTROL,
        CompletionMode.SYNC,
    ),
    TaskSpec(
        TaskType.TRIGGER_TEST_FLIGHT_BUILD,
        Stage.POST_REGRESSION,
        Integration.CI_CD,
        CompletionMode.BUILD,
        only_platform=Platform.IOS,
    ),
    TaskSpec(
        TaskType.CREATE_AAB_BUILD,
        Stage.POST_REGRESSION,
        Integration.CI_CD,
        CompletionMode.BUILD,
        only_platform=Platform.ANDROID,
    ),
    TaskSpec(
        TaskType.CHECK_PROJECT_RELEASE_APPROVAL,
        Stage.POST_REGRESSION,
        Integration.PROJECT_MANAGEMENT,
        CompletionMode.SYNC,
    ),
)

TASK_SPECS: Final[dict[TaskType, TaskSpec]] = {spec.task_type: spec for spec in _SPECS}
TASK_SEQUENCE: Final[dict[TaskType, int]] = {
    spec.task_type: index for index, spec in enumerate(_SPECS)
}


def spec_for(task_type: TaskType) -> TaskSpec:
    return TASK_SPECS[task_type]


def stage_task_specs(release: Release, stage: Stage) -> list[TaskSpec]:
    """Tasks ``release`` requires for a Kickoff or Post-Regression stage, in run order."""
    if stage is Stage.REGRESSION:
        raise ValueError("regression tasks belong to cycles; use cycle_task_specs()")
    return [
        spec
        for spec in _SPECS
        if spec.stage is stage and _is_required(spec, release, first_cycle=True)
    ]


def cycle_task_specs(release: Release, *, first_cycle: bool) -> list[TaskSpec]:
    """Tasks of one regression cycle, build trigger first."""
    return [
        spec
        for spec in _SPECS
        if spec.stage is Stage.REGRESSION and _is_required(spec, release, first_cycle=first_cycle)
    ]


def _is_required(spec: TaskSpec, release: Release, *, first_cycle: bool) -> bool:
    if not spec.platforms_for(release):
        return False
    task_type = spec.task_type
    if task_type in {
        TaskType.CREATE_PROJECT_MANAGEMENT_TICKET,
        TaskType.CHECK_PROJECT_RELEASE_APPROVAL,
    }:
        return release.has_integration(Integration.PROJECT_MANAGEMENT)
    if task_type is TaskType.CREATE_TEST_SUITE:
        return release.has_integration(Integration.TEST_MANAGEMENT)
    if task_type is TaskType.RESET_TEST_SUITE:
        # The suite is created fresh at kickoff; later cycles reset it.
        return not first_cycle and release.has_integration(Integration.TEST_MANAGEMENT)
    if task_type is TaskType.TRIGGER_PRE_REGRESSION_BUILDS:
        return release.pre_regression_builds
    if task_type is TaskType.TRIGGER_AUTOMATION_RUNS:
        return release.automation_runs
    return True


__all__ = [
    "TASK_SEQUENCE",
    "TASK_SPECS",
    "CompletionMode",
    "TaskSpec",
    "cycle_task_specs",
    "spec_for",
    "stage_task_specs",
]
