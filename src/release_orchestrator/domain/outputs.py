"""
release-orchestrator: typed task outputs

File: src/release_orchestrator/domain/outputs.py

Purpose
- Represent what a completed task produced as a tagged union keyed by ``TaskType``.
  A task's type is the tag: ``output_from_dict(task_type, payload)`` selects the
  variant, and ``check_output`` rejects a variant that does not belong to the type.

Contract
- Variants are frozen and validate in ``__post_init__``.
- Serialized payloads carry no tag of their own; they are always stored next to the
  task type they belong to.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from release_orchestrator.domain.base import (
    JSONValue,
    as_bool,
    as_enum,
    as_optional_str,
    as_sequence,
    as_str,
    as_str_tuple,
    expect_object,
    fail,
    serialize_value,
)
from release_orchestrator.domain.enums import Platform, TaskType


def _check_str(value: object, path: str, *, max_len: int = 1024) -> None:
    as_str(value, path, max_len=max_len)


def _check_str_tuple(value: object, path: str, *, allow_empty: bool) -> None:
    if not isinstance(value, tuple):
        fail(path, f"expected tuple, got {type(value).__name__}")
    as_str_tuple(value, path, allow_empty=allow_empty, unique=True)


@dataclass(frozen=True, slots=True)
class BranchOutput:
    branch_name: str
    base_branch: str
    branch_url: str | None = None

    def __post_init__(self) -> None:
        _check_str(self.branch_name, "BranchOutput.branch_name")
        _check_str(self.base_branch, "BranchOutput.base_branch")
        as_optional_str(self.branch_url, "BranchOutput.branch_url")


@dataclass(frozen=True, slots=True)
class TicketOutput:
    ticket_ids: tuple[str, ...]

    def __post_init__(self) -> None:
        _check_str_tuple(self.ticket_ids, "TicketOutput.ticket_ids", allow_empty=False)


@dataclass(frozen=True, slots=True)
class SuiteOutput:
    suite_id: str
    run_id: str | None = None

    def __post_init__(self) -> None:
        _check_str(self.suite_id, "SuiteOutput.suite_id")
        as_optional_str(self.run_id, "SuiteOutput.run_id")


@dataclass(frozen=True, slots=True)
class TagOutput:
    tag: str

    def __post_init__(self) -> None:
        _check_str(self.tag, "TagOutput.tag", max_len=255)


@dataclass(frozen=True, slots=True)
class ReleaseNotesOutput:
    tag: str
    notes: str
    previous_tag: str | None = None

    def __post_init__(self) -> None:
        _check_str(self.tag, "ReleaseNotesOutput.tag", max_len=255)
        as_str(self.notes, "ReleaseNotesOutput.notes", min_len=0)
        as_optional_str(self.previous_tag, "ReleaseNotesOutput.previous_tag", max_len=255)


@dataclass(frozen=True, slots=True)
class BuildRef:
    """One platform build a build task ended up with."""

    platform: Platform
    build_id: str | None = None
    locator: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.platform, Platform):
            fail("BuildRef.platform", f"expected Platform, got {type(self.platform).__name__}")
        as_optional_str(self.build_id, "BuildRef.build_id")
        as_optional_str(self.locator, "BuildRef.locator")


@dataclass(frozen=True, slots=True)
class BuildOutput:
    builds: tuple[BuildRef, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.builds, tuple) or not self.builds:
            fail("BuildOutput.builds", "must be a non-empty tuple")
        platforms = [build.platform for build in self.builds]
        if len(set(platforms)) != len(platforms):
            fail("BuildOutput.builds", "contains more than one build per platform")

    def platforms(self) -> tuple[Platform, ...]:
        return tuple(build.platform for build in self.builds)


@dataclass(frozen=True, slots=True)
class ApprovalOutput:
    approved: bool
    ticket_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        as_bool(self.approved, "ApprovalOutput.approved")
        _check_str_tuple(self.ticket_ids, "ApprovalOutput.ticket_ids", allow_empty=True)


@dataclass(frozen=True, slots=True)
class AutomationOutput:
    run_ids: tuple[str, ...]

    def __post_init__(self) -> None:
        _check_str_tuple(self.run_ids, "AutomationOutput.run_ids", allow_empty=False)


TaskOutput = (
    BranchOutput
    | TicketOutput
    | SuiteOutput
    | TagOutput
    | ReleaseNotesOutput
    | BuildOutput
    | ApprovalOutput
    | AutomationOutput
)

OUTPUT_TYPES: Final[Mapping[TaskType, type]] = {
    TaskType.FORK_BRANCH: BranchOutput,
    TaskType.CREATE_PROJECT_MANAGEMENT_TICKET: TicketOutput,
    TaskType.CREATE_TEST_SUITE: SuiteOutput,
    TaskType.TRIGGER_PRE_REGRESSION_BUILDS: BuildOutput,
    TaskType.TRIGGER_REGRESSION_BUILDS: BuildOutput,
    TaskType.RESET_TEST_SUITE: SuiteOutput,
    TaskType.CREATE_RC_TAG: TagOutput,
    TaskType.CREATE_RELEASE_NOTES: ReleaseNotesOutput,
    TaskType.TRIGGER_AUTOMATION_RUNS: AutomationOutput,
    TaskType.CREATE_RELEASE_TAG: TagOutput,
    TaskType.CREATE_FINAL_RELEASE_NOTES: ReleaseNotesOutput,
    TaskType.TRIGGER_TEST_FLIGHT_BUILD: BuildOutput,
    TaskType.CREATE_AAB_BUILD: BuildOutput,
    TaskType.CHECK_PROJECT_RELEASE_APPROVAL: ApprovalOutput,
}


def expected_output_type(task_type: TaskType) -> type:
    return OUTPUT_TYPES[task_type]


def check_output(task_type: TaskType, output: object, *, path: str = "output") -> TaskOutput:
    """Return ``output`` unchanged if it is the variant ``task_type`` produces."""
    expected = expected_output_type(task_type)
    if not isinstance(output, expected):
        fail(
            path,
            f"{task_type.value} produces {expected.__name__}, got {type(output).__name__}",
        )
    return output  # type: ignore[return-value]


def output_to_dict(output: TaskOutput) -> dict[str, JSONValue]:
    serialized = serialize_value(output, type(output).__name__)
    if not isinstance(serialized, dict):
        fail(type(output).__name__, "serialized output must be an object")
    return serialized


def output_from_dict(task_type: TaskType, data: object, *, path: str = "output") -> TaskOutput:
    expected = expected_output_type(task_type)
    if expected is BranchOutput:
        parsed = expect_object(
            data, path, required={"branch_name", "base_branch"}, optional={"branch_url"}
        )
        return BranchOutput(
            branch_name=as_str(parsed["branch_name"], f"{path}.branch_name"),
            base_branch=as_str(parsed["base_branch"], f"{path}.base_branch"),
            branch_url=as_optional_str(parsed.get("branch_url"), f"{path}.branch_url"),
        )
    if expected is TicketOutput:
        parsed = expect_object(data, path, required={"ticket_ids"})
        return TicketOutput(
            ticket_ids=as_str_tuple(
                parsed["ticket_ids"], f"{path}.ticket_ids", allow_empty=False, unique=True
            )
        )
    if expected is SuiteOutput:
        parsed = expect_object(data, path, required={"suite_id"}, optional={"run_id"})
        return SuiteOutput(
            suite_id=as_str(parsed["suite_id"], f"{path}.suite_id"),
            run_id=as_optional_str(parsed.get("run_id"), f"{path}.run_id"),
        )
    if expected is TagOutput:
        parsed = expect_object(data, path, required={"tag"})
        return TagOutput(tag=as_str(parsed["tag"], f"{path}.tag", max_len=255))
    if expected is ReleaseNotesOutput:
        parsed = expect_object(data, path, required={"tag", "notes"}, optional={"previous_tag"})
        return ReleaseNotesOutput(
            tag=as_str(parsed["tag"], f"{path}.tag", max_len=255),
            notes=as_str(parsed["notes"], f"{path}.notes", min_len=0),
            previous_tag=as_optional_str(
                parsed.get("previous_tag"), f"{path}.previous_tag", max_len=255
            ),
        )
    if expected is BuildOutput:
        parsed = expect_object(data, path, required={"builds"})
        builds: list[BuildRef] = []
        for index, item in enumerate(as_sequence(parsed["builds"], f"{path}.builds")):
            item_path = f"{path}.builds[{index}]"
            build = expect_object(
                item, item_path, required={"platform"}, optional={"build_id", "locator"}
            )
            builds.append(
                BuildRef(
                    platform=as_enum(Platform, build["platform"], f"{item_path}.platform"),
                    build_id=as_optional_str(build.get("build_id"), f"{item_path}.build_id"),
                    locator=as_optional_str(build.get("locator"), f"{item_path}.locator"),
                )
            )
        return BuildOutput(builds=tuple(builds))
    if expected is ApprovalOutput:
        parsed = expect_object(data, path, required={"approved"}, optional={"ticket_ids"})
        return ApprovalOutput(
            approved=as_bool(parsed["approved"], f"{path}.approved"),
            ticket_ids=as_str_tuple(
                parsed.get("ticket_ids", []), f"{path}.ticket_ids", allow_empty=True, unique=True
            ),
        )
    parsed = expect_object(data, path, required={"run_ids"})
    return AutomationOutput(
        run_ids=as_str_tuple(parsed["run_ids"], f"{path}.run_ids", allow_empty=False, unique=True)
    )


__all__ = [
    "OUTPUT_TYPES",
    "ApprovalOutput",
    "AutomationOutput",
    "BranchOutput",
    "BuildOutput",
    "BuildRef",
    "ReleaseNotesOutput",
    "SuiteOutput",
    "TagOutput",
    "TaskOutput",
    "TicketOutput",
    "check_output",
    "expected_output_type",
    "output_from_dict",
    "output_to_dict",
]
