"""Release, stage, task, cycle and build records, validated on construction."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from release_orchestrator.domain import ids as domain_ids
from release_orchestrator.domain.base import (
    SCHEMA_VERSION,
    CanonicalModel,
    as_bool,
    as_datetime,
    as_enum,
    as_enum_tuple,
    as_int,
    as_optional_datetime,
    as_optional_str,
    as_schema_version,
    as_str,
    as_str_dict,
    as_str_tuple,
    expect_object,
    fail,
)
from release_orchestrator.domain.enums import (
    BuildSource,
    CallbackOutcome,
    CycleStatus,
    Integration,
    Platform,
    PauseType,
    ReleasePhase,
    Stage,
    StageStatus,
    TaskStatus,
    TaskType,
)
from release_orchestrator.domain.outputs import (
    TaskOutput,
    check_output,
    output_from_dict,
)

_MAX_ERROR = 4096


def _validate_id(validator: object, value: object, path: str) -> str:
    parsed = as_str(value, path, max_len=64)
    try:
        validator(parsed)  # type: ignore[operator]
    except ValueError as exc:
        fail(path, str(exc))
    return parsed


def _as_build_modes(value: object, path: str) -> dict[Stage, BuildSource]:
    if not isinstance(value, Mapping):
        fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[Stage, BuildSource] = {}
    for key, item in value.items():
        stage = as_enum(Stage, key, f"{path}.<key>")
        parsed[stage] = as_enum(BuildSource, item, f"{path}.{stage.value}")
    return parsed


def _as_platform_results(value: object, path: str) -> dict[Platform, CallbackOutcome]:
    if not isinstance(value, Mapping):
        fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[Platform, CallbackOutcome] = {}
    for key, item in value.items():
        platform = as_enum(Platform, key, f"{path}.<key>")
        parsed[platform] = as_enum(CallbackOutcome, item, f"{path}.{platform.value}")
    return parsed


@dataclass(slots=True)
class Release(CanonicalModel):
    """One app version moving through the release phases."""

    id: str
    tenant_id: str
    version: str
    platforms: tuple[Platform, ...]
    phase: ReleasePhase
    branch_name: str
    base_branch: str
    created_at: datetime
    updated_at: datetime
    kickoff_at: datetime | None = None
    target_release_at: datetime | None = None
    build_modes: dict[Stage, BuildSource] = field(default_factory=dict)
    integrations: tuple[Integration, ...] = ()
    pre_regression_builds: bool = False
    automation_runs: bool = False
    archived_at: datetime | None = None
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = as_schema_version(self.schema_version, "Release.schema_version")
        self.id = _validate_id(domain_ids.validate_release_id, self.id, "Release.id")
        self.tenant_id = as_str(self.tenant_id, "Release.tenant_id", max_len=128)
        self.version = as_str(self.version, "Release.version", max_len=64)
        self.platforms = as_enum_tuple(
            Platform, self.platforms, "Release.platforms", allow_empty=False
        )
        self.phase = as_enum(ReleasePhase, self.phase, "Release.phase")
        self.branch_name = as_str(self.branch_name, "Release.branch_name", max_len=255)
        self.base_branch = as_str(self.base_branch, "Release.base_branch", max_len=255)
        self.created_at = as_datetime(self.created_at, "Release.created_at")
        self.updated_at = as_datetime(self.updated_at, "Release.updated_at")
        self.kickoff_at = as_optional_datetime(self.kickoff_at, "Release.kickoff_at")
        self.target_release_at = as_optional_datetime(
            self.target_release_at, "Release.target_release_at"
        )
        self.build_modes = _as_build_modes(self.build_modes, "Release.build_modes")
        self.integrations = as_enum_tuple(
            Integration, self.integrations, "Release.integrations", allow_empty=True
        )
        self.pre_regression_builds = as_bool(
            self.pre_regression_builds, "Release.pre_regression_builds"
        )
        self.automation_runs = as_bool(self.automation_runs, "Release.automation_runs")
        self.archived_at = as_optional_datetime(self.archived_at, "Release.archived_at")
        if (
            self.kickoff_at is not None
            and self.target_release_at is not None
            and self.target_release_at < self.kickoff_at
        ):
            fail("Release.target_release_at", "must be >= Release.kickoff_at")
        if self.updated_at < self.created_at:
            fail("Release.updated_at", "must be >= Release.created_at")
        if self.archived_at is not None and self.archived_at < self.created_at:
            fail("Release.archived_at", "must be >= Release.created_at")

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def has_integration(self, integration: Integration) -> bool:
        return integration in self.integrations

    def build_mode_for(self, stage: Stage) -> BuildSource:
        """Upload mode for builds of ``stage``; CI/CD when a CI provider is configured."""
        configured = self.build_modes.get(stage)
        if configured is not None:
            return configured
        if self.has_integration(Integration.CI_CD):
            return BuildSource.CI_CD
        return BuildSource.MANUAL

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Release:
        parsed = expect_object(
            data,
            "Release",
            required={
                "id",
                "tenant_id",
                "version",
                "platforms",
                "phase",
                "branch_name",
                "base_branch",
                "created_at",
                "updated_at",
            },
            optional={
                "kickoff_at",
                "target_release_at",
                "build_modes",
                "integrations",
                "pre_regression_builds",
                "automation_runs",
                "archived_at",
                "schema_version",
            },
        )
        return cls(
            id=as_str(parsed["id"], "Release.id"),
            tenant_id=as_str(parsed["tenant_id"], "Release.tenant_id"),
            version=as_str(parsed["version"], "Release.version"),
            platforms=as_enum_tuple(
                Platform, parsed["platforms"], "Release.platforms", allow_empty=False
            ),
            phase=as_enum(ReleasePhase, parsed["phase"], "Release.phase"),
            branch_name=as_str(parsed["branch_name"], "Release.branch_name"),
            base_branch=as_str(parsed["base_branch"], "Release.base_branch"),
            created_at=as_datetime(parsed["created_at"], "Release.created_at"),
            updated_at=as_datetime(parsed["updated_at"], "Release.updated_at"),
            kickoff_at=as_optional_datetime(parsed.get("kickoff_at"), "Release.kickoff_at"),
            target_release_at=as_optional_datetime(
                parsed.get("target_release_at"), "Release.target_release_at"
            ),
            build_modes=_as_build_modes(parsed.get("build_modes", {}), "Release.build_modes"),
            integrations=as_enum_tuple(
                Integration,
                parsed.get("integrations", []),
                "Release.integrations",
                allow_empty=True,
            ),
            pre_regression_builds=as_bool(
                parsed.get("pre_regression_builds", False), "Release.pre_regression_builds"
            ),
            automation_runs=as_bool(
                parsed.get("automation_runs", False), "Release.automation_runs"
            ),
            archived_at=as_optional_datetime(parsed.get("archived_at"), "Release.archived_at"),
            schema_version=as_schema_version(
                parsed.get("schema_version", SCHEMA_VERSION), "Release.schema_version"
            ),
        )


@dataclass(slots=True)
class StageStatusRecord(CanonicalModel):
    """Per-release stage progress, armed auto-transitions and the execution flag."""

    release_id: str
    updated_at: datetime
    kickoff: StageStatus = StageStatus.PENDING
    regression: StageStatus = StageStatus.PENDING
    post_regression: StageStatus = StageStatus.PENDING
    armed_transitions: tuple[ReleasePhase, ...] = ()
    is_executing: bool = False
    lock_owner: str | None = None
    lock_acquired_at: datetime | None = None
    pause_type: PauseType = PauseType.NONE

    def __post_init__(self) -> None:
        self.release_id = _validate_id(
            domain_ids.validate_release_id, self.release_id, "StageStatusRecord.release_id"
        )
        self.updated_at = as_datetime(self.updated_at, "StageStatusRecord.updated_at")
        for stage in Stage:
            setattr(
                self,
                stage.value,
                as_enum(
                    StageStatus, getattr(self, stage.value), f"StageStatusRecord.{stage.value}"
                ),
            )
        self.armed_transitions = as_enum_tuple(
            ReleasePhase,
            self.armed_transitions,
            "StageStatusRecord.armed_transitions",
            allow_empty=True,
        )
        if ReleasePhase.NOT_STARTED in self.armed_transitions or (
            ReleasePhase.KICKOFF in self.armed_transitions
        ):
            fail(
                "StageStatusRecord.armed_transitions",
                "only regression, post_regression and released can be armed",
            )
        self.is_executing = as_bool(self.is_executing, "StageStatusRecord.is_executing")
        self.lock_owner = as_optional_str(
            self.lock_owner, "StageStatusRecord.lock_owner", max_len=128
        )
        self.lock_acquired_at = as_optional_datetime(
            self.lock_acquired_at, "StageStatusRecord.lock_acquired_at"
        )
        if self.is_executing and (self.lock_owner is None or self.lock_acquired_at is None):
            fail("StageStatusRecord.is_executing", "an executing record must name its lock owner")
        self.pause_type = as_enum(PauseType, self.pause_type, "StageStatusRecord.pause_type")

    def status_of(self, stage: Stage) -> StageStatus:
        return getattr(self, stage.value)  # type: ignore[no-any-return]

    def is_armed(self, phase: ReleasePhase) -> bool:
        return phase in self.armed_transitions

    @property
    def is_paused(self) -> bool:
        return self.pause_type is not PauseType.NONE

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageStatusRecord:
        parsed = expect_object(
            data,
            "StageStatusRecord",
            required={"release_id", "updated_at"},
            optional={
                "kickoff",
                "regression",
                "post_regression",
                "armed_transitions",
                "is_executing",
                "lock_owner",
                "lock_acquired_at",
                "pause_type",
            },
        )
        return cls(
            release_id=as_str(parsed["release_id"], "StageStatusRecord.release_id"),
            updated_at=as_datetime(parsed["updated_at"], "StageStatusRecord.updated_at"),
            kickoff=as_enum(
                StageStatus, parsed.get("kickoff", "pending"), "StageStatusRecord.kickoff"
            ),
            regression=as_enum(
                StageStatus, parsed.get("regression", "pending"), "StageStatusRecord.regression"
            ),
            post_regression=as_enum(
                StageStatus,
                parsed.get("post_regression", "pending"),
                "StageStatusRecord.post_regression",
            ),
            armed_transitions=as_enum_tuple(
                ReleasePhase,
                parsed.get("armed_transitions", []),
                "StageStatusRecord.armed_transitions",
                allow_empty=True,
            ),
            is_executing=as_bool(
                parsed.get("is_executing", False), "StageStatusRecord.is_executing"
            ),
            lock_owner=as_optional_str(parsed.get("lock_owner"), "StageStatusRecord.lock_owner"),
            lock_acquired_at=as_optional_datetime(
                parsed.get("lock_acquired_at"), "StageStatusRecord.lock_acquired_at"
            ),
            pause_type=as_enum(
                PauseType, parsed.get("pause_type", "none"), "StageStatusRecord.pause_type"
            ),
        )


@dataclass(slots=True)
class Task(CanonicalModel):
    """A unit of work inside a stage, or inside one regression cycle."""

    id: str
    release_id: str
    stage: Stage
    task_type: TaskType
    status: TaskStatus
    sequence: int
    platforms: tuple[Platform, ...]
    created_at: datetime
    updated_at: datetime
    cycle_id: str | None = None
    platform_results: dict[Platform, CallbackOutcome] = field(default_factory=dict)
    external_refs: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    output: TaskOutput | None = None
    consumed_build_ids: tuple[str, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = as_schema_version(self.schema_version, "Task.schema_version")
        self.id = _validate_id(domain_ids.validate_task_id, self.id, "Task.id")
        self.release_id = _validate_id(
            domain_ids.validate_release_id, self.release_id, "Task.release_id"
        )
        self.stage = as_enum(Stage, self.stage, "Task.stage")
        self.task_type = as_enum(TaskType, self.task_type, "Task.task_type")
        self.status = as_enum(TaskStatus, self.status, "Task.status")
        self.sequence = as_int(self.sequence, "Task.sequence", minimum=0)
        self.platforms = as_enum_tuple(Platform, self.platforms, "Task.platforms", allow_empty=True)
        self.created_at = as_datetime(self.created_at, "Task.created_at")
        self.updated_at = as_datetime(self.updated_at, "Task.updated_at")
        if self.cycle_id is not None:
            self.cycle_id = _validate_id(
                domain_ids.validate_cycle_id, self.cycle_id, "Task.cycle_id"
            )
        if (self.stage is Stage.REGRESSION) != (self.cycle_id is not None):
            fail("Task.cycle_id", "regression tasks, and only those, belong to a cycle")

        self.platform_results = _as_platform_results(
            self.platform_results, "Task.platform_results"
        )
        unknown = sorted(p.value for p in self.platform_results if p not in self.platforms)
        if unknown:
            fail("Task.platform_results", f"platforms not targeted by this task: {unknown}")
        self.external_refs = as_str_dict(self.external_refs, "Task.external_refs")

        self.error = as_optional_str(self.error, "Task.error", max_len=_MAX_ERROR)
        if self.error is not None and self.status is not TaskStatus.FAILED:
            fail("Task.error", "only FAILED tasks carry an error")
        if self.output is not None:
            check_output(self.task_type, self.output, path="Task.output")
            if self.status is not TaskStatus.COMPLETED:
                fail("Task.output", "only COMPLETED tasks carry an output")
        self.consumed_build_ids = as_str_tuple(
            self.consumed_build_ids, "Task.consumed_build_ids", allow_empty=True, unique=True
        )
        for index, build_id in enumerate(self.consumed_build_ids):
            _validate_id(
                domain_ids.validate_build_id, build_id, f"Task.consumed_build_ids[{index}]"
            )
        self.started_at = as_optional_datetime(self.started_at, "Task.started_at")
        self.completed_at = as_optional_datetime(self.completed_at, "Task.completed_at")

    def pending_platforms(self) -> tuple[Platform, ...]:
        """Platforms that have not reported success yet."""
        return tuple(
            platform
            for platform in self.platforms
            if self.platform_results.get(platform) is not CallbackOutcome.SUCCEEDED
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Task:
        parsed = expect_object(
            data,
            "Task",
            required={
                "id",
                "release_id",
                "stage",
                "task_type",
                "status",
                "sequence",
                "platforms",
                "created_at",
                "updated_at",
            },
            optional={
                "cycle_id",
                "platform_results",
                "external_refs",
                "error",
                "output",
                "consumed_build_ids",
                "started_at",
                "completed_at",
                "schema_version",
            },
        )
        task_type = as_enum(TaskType, parsed["task_type"], "Task.task_type")
        raw_output = parsed.get("output")
        return cls(
            id=as_str(parsed["id"], "Task.id"),
            release_id=as_str(parsed["release_id"], "Task.release_id"),
            stage=as_enum(Stage, parsed["stage"], "Task.stage"),
            task_type=task_type,
            status=as_enum(TaskStatus, parsed["status"], "Task.status"),
            sequence=as_int(parsed["sequence"], "Task.sequence", minimum=0),
            platforms=as_enum_tuple(
                Platform, parsed["platforms"], "Task.platforms", allow_empty=True
            ),
            created_at=as_datetime(parsed["created_at"], "Task.created_at"),
            updated_at=as_datetime(parsed["updated_at"], "Task.updated_at"),
            cycle_id=as_optional_str(parsed.get("cycle_id"), "Task.cycle_id"),
            platform_results=_as_platform_results(
                parsed.get("platform_results", {}), "Task.platform_results"
            ),
            external_refs=as_str_dict(parsed.get("external_refs", {}), "Task.external_refs"),
            error=as_optional_str(parsed.get("error"), "Task.error", max_len=_MAX_ERROR),
            output=(
                output_from_dict(task_type, raw_output, path="Task.output")
                if raw_output is not None
                else None
            ),
            consumed_build_ids=as_str_tuple(
                parsed.get("consumed_build_ids", []),
                "Task.consumed_build_ids",
                allow_empty=True,
                unique=True,
            ),
            started_at=as_optional_datetime(parsed.get("started_at"), "Task.started_at"),
            completed_at=as_optional_datetime(parsed.get("completed_at"), "Task.completed_at"),
            schema_version=as_schema_version(
                parsed.get("schema_version", SCHEMA_VERSION), "Task.schema_version"
            ),
        )


@dataclass(slots=True)
class RegressionCycle(CanonicalModel):
    """One dated regression slot and the pass of testing bound to it."""

    id: str
    release_id: str
    slot_index: int
    scheduled_at: datetime
    status: CycleStatus
    created_at: datetime
    updated_at: datetime
    tag: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = as_schema_version(
            self.schema_version, "RegressionCycle.schema_version"
        )
        self.id = _validate_id(domain_ids.validate_cycle_id, self.id, "RegressionCycle.id")
        self.release_id = _validate_id(
            domain_ids.validate_release_id, self.release_id, "RegressionCycle.release_id"
        )
        self.slot_index = as_int(self.slot_index, "RegressionCycle.slot_index", minimum=1)
        self.scheduled_at = as_datetime(self.scheduled_at, "RegressionCycle.scheduled_at")
        self.status = as_enum(CycleStatus, self.status, "RegressionCycle.status")
        self.created_at = as_datetime(self.created_at, "RegressionCycle.created_at")
        self.updated_at = as_datetime(self.updated_at, "RegressionCycle.updated_at")
        self.tag = as_optional_str(self.tag, "RegressionCycle.tag", max_len=255)
        self.started_at = as_optional_datetime(self.started_at, "RegressionCycle.started_at")
        self.completed_at = as_optional_datetime(
            self.completed_at, "RegressionCycle.completed_at"
        )
        if self.status is CycleStatus.NOT_STARTED and self.started_at is not None:
            fail("RegressionCycle.started_at", "must be unset before the cycle starts")
        if self.status in {CycleStatus.IN_PROGRESS, CycleStatus.DONE} and self.started_at is None:
            fail("RegressionCycle.started_at", f"required for status {self.status.value}")
        if self.status is CycleStatus.DONE and self.completed_at is None:
            fail("RegressionCycle.completed_at", "required for status done")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RegressionCycle:
        parsed = expect_object(
            data,
            "RegressionCycle",
            required={
                "id",
                "release_id",
                "slot_index",
                "scheduled_at",
                "status",
                "created_at",
                "updated_at",
            },
            optional={"tag", "started_at", "completed_at", "schema_version"},
        )
        return cls(
            id=as_str(parsed["id"], "RegressionCycle.id"),
            release_id=as_str(parsed["release_id"], "RegressionCycle.release_id"),
            slot_index=as_int(parsed["slot_index"], "RegressionCycle.slot_index", minimum=1),
            scheduled_at=as_datetime(parsed["scheduled_at"], "RegressionCycle.scheduled_at"),
            status=as_enum(CycleStatus, parsed["status"], "RegressionCycle.status"),
            created_at=as_datetime(parsed["created_at"], "RegressionCycle.created_at"),
            updated_at=as_datetime(parsed["updated_at"], "RegressionCycle.updated_at"),
            tag=as_optional_str(parsed.get("tag"), "RegressionCycle.tag", max_len=255),
            started_at=as_optional_datetime(parsed.get("started_at"), "RegressionCycle.started_at"),
            completed_at=as_optional_datetime(
                parsed.get("completed_at"), "RegressionCycle.completed_at"
            ),
            schema_version=as_schema_version(
                parsed.get("schema_version", SCHEMA_VERSION), "RegressionCycle.schema_version"
            ),
        )


@dataclass(slots=True)
class BuildArtifact(CanonicalModel):
    """An uploaded or CI-produced build; staged until a task consumes it."""

    id: str
    release_id: str
    platform: Platform
    stage: Stage
    source: BuildSource
    staged_at: datetime
    locator: str | None = None
    consumed_by_task_id: str | None = None
    consumed_by_cycle_id: str | None = None
    consumed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _validate_id(domain_ids.validate_build_id, self.id, "BuildArtifact.id")
        self.release_id = _validate_id(
            domain_ids.validate_release_id, self.release_id, "BuildArtifact.release_id"
        )
        self.platform = as_enum(Platform, self.platform, "BuildArtifact.platform")
        self.stage = as_enum(Stage, self.stage, "BuildArtifact.stage")
        self.source = as_enum(BuildSource, self.source, "BuildArtifact.source")
        self.staged_at = as_datetime(self.staged_at, "BuildArtifact.staged_at")
        self.locator = as_optional_str(self.locator, "BuildArtifact.locator", max_len=2048)
        if self.consumed_by_task_id is not None:
            self.consumed_by_task_id = _validate_id(
                domain_ids.validate_task_id,
                self.consumed_by_task_id,
                "BuildArtifact.consumed_by_task_id",
            )
        if self.consumed_by_cycle_id is not None:
            self.consumed_by_cycle_id = _validate_id(
                domain_ids.validate_cycle_id,
                self.consumed_by_cycle_id,
                "BuildArtifact.consumed_by_cycle_id",
            )
            if self.consumed_by_task_id is None:
                fail("BuildArtifact.consumed_by_cycle_id", "requires consumed_by_task_id")
        self.consumed_at = as_optional_datetime(self.consumed_at, "BuildArtifact.consumed_at")
        if (self.consumed_at is None) != (self.consumed_by_task_id is None):
            fail("BuildArtifact.consumed_at", "must be set exactly when the build is consumed")

    @property
    def is_consumed(self) -> bool:
        return self.consumed_by_task_id is not None

    @property
    def is_staged(self) -> bool:
        return self.consumed_by_task_id is None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BuildArtifact:
        parsed = expect_object(
            data,
            "BuildArtifact",
            required={"id", "release_id", "platform", "stage", "source", "staged_at"},
            optional={"locator", "consumed_by_task_id", "consumed_by_cycle_id", "consumed_at"},
        )
        return cls(
            id=as_str(parsed["id"], "BuildArtifact.id"),
            release_id=as_str(parsed["release_id"], "BuildArtifact.release_id"),
            platform=as_enum(Platform, parsed["platform"], "BuildArtifact.platform"),
            stage=as_enum(Stage, parsed["stage"], "BuildArtifact.stage"),
            source=as_enum(BuildSource, parsed["source"], "BuildArtifact.source"),
            staged_at=as_datetime(parsed["staged_at"], "BuildArtifact.staged_at"),
            locator=as_optional_str(parsed.get("locator"), "BuildArtifact.locator"),
            consumed_by_task_id=as_optional_str(
                parsed.get("consumed_by_task_id"), "BuildArtifact.consumed_by_task_id"
            ),
            consumed_by_cycle_id=as_optional_str(
                parsed.get("consumed_by_cycle_id"), "BuildArtifact.consumed_by_cycle_id"
            ),
            consumed_at=as_optional_datetime(
                parsed.get("consumed_at"), "BuildArtifact.consumed_at"
            ),
        )


__all__ = [
    "BuildArtifact",
    "RegressionCycle",
    "Release",
    "StageStatusRecord",
    "Task",
]
