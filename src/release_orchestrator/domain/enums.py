"""Canonical enumerations: one vocabulary per concept, shared by every layer."""

from __future__ import annotations

from typing import Final

from release_orchestrator.domain.base import StrEnum


class Platform(StrEnum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"


class ReleasePhase(StrEnum):
    NOT_STARTED = "not_started"
    KICKOFF = "kickoff"
    REGRESSION = "regression"
    POST_REGRESSION = "post_regression"
    RELEASED = "released"

    @property
    def rank(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def stage(self) -> Stage | None:
        """Orchestrated stage active in this phase, ``None`` for the bookend phases."""
        try:
            return Stage(self.value)
        except ValueError:
            return None

    def next_phase(self) -> ReleasePhase | None:
        index = self.rank + 1
        return PHASE_ORDER[index] if index < len(PHASE_ORDER) else None


class Stage(StrEnum):
    KICKOFF = "kickoff"
    REGRESSION = "regression"
    POST_REGRESSION = "post_regression"

    @property
    def phase(self) -> ReleasePhase:
        return ReleasePhase(self.value)


class StageStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PauseType(StrEnum):
    """Why the scheduling loop is holding a release back."""

    NONE = "none"
    USER_REQUESTED = "user_requested"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_CALLBACK = "awaiting_callback"
    AWAITING_MANUAL_BUILD = "awaiting_manual_build"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CycleStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ABANDONED = "abandoned"


class BuildSource(StrEnum):
    MANUAL = "manual"
    CI_CD = "ci_cd"


class Integration(StrEnum):
    SOURCE_CONTROL = "source_control"
    PROJECT_MANAGEMENT = "project_management"
    TEST_MANAGEMENT = "test_management"
    CI_CD = "ci_cd"
    APP_STORE = "app_store"


class CallbackOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskType(StrEnum):
    FORK_BRANCH = "fork_branch"
    CREATE_PROJECT_MANAGEMENT_TICKET = "create_project_management_ticket"
    CREATE_TEST_SUITE = "create_test_suite"
    TRIGGER_PRE_REGRESSION_BUILDS = "trigger_pre_regression_builds"
    TRIGGER_REGRESSION_BUILDS = "trigger_regression_builds"
    RESET_TEST_SUITE = "reset_test_suite"
    CREATE_RC_TAG = "create_rc_tag"
    CREATE_RELEASE_NOTES = "create_release_notes"
    TRIGGER_AUTOMATION_RUNS = "trigger_automation_runs"
    CREATE_RELEASE_TAG = "create_release_tag"
    CREATE_FINAL_RELEASE_NOTES = "create_final_release_notes"
    TRIGGER_TEST_FLIGHT_BUILD = "trigger_test_flight_build"
    CREATE_AAB_BUILD = "create_aab_build"
    CHECK_PROJECT_RELEASE_APPROVAL = "check_project_release_approval"


PHASE_ORDER: Final[tuple[ReleasePhase, ...]] = tuple(ReleasePhase)
STAGE_ORDER: Final[tuple[Stage, ...]] = tuple(Stage)

TERMINAL_TASK_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED}
)
SATISFIED_TASK_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.SKIPPED}
)
TERMINAL_CYCLE_STATUSES: Final[frozenset[CycleStatus]] = frozenset(
    {CycleStatus.DONE, CycleStatus.ABANDONED}
)

__all__ = [
    "PHASE_ORDER",
    "SATISFIED_TASK_STATUSES",
    "STAGE_ORDER",
    "TERMINAL_CYCLE_STATUSES",
    "TERMINAL_TASK_STATUSES",
    "BuildSource",
    "CallbackOutcome",
    "CycleStatus",
    "Integration",
    "PauseType",
    "Platform",
    "ReleasePhase",
    "Stage",
    "StageStatus",
    "TaskStatus",
    "TaskType",
]
