"""
release-orchestrator: integration adapter boundary

File: src/release_orchestrator/engine/adapters.py

Purpose
- Narrow interface to external systems, one adapter per integration family.
- ``dispatch`` returns one of four outcomes; the task engine alone turns an outcome
  into a task status.
- ``SimulatedAdapter`` produces deterministic outputs for local runs and tests.

Contract
- Adapters must not mutate orchestration state. Raising, or not returning within
  the configured timeout, is treated like ``Failed``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from release_orchestrator.domain.enums import BuildSource, Integration, Platform, TaskType
from release_orchestrator.domain.models import RegressionCycle, Release, Task
from release_orchestrator.domain.outputs import (
    ApprovalOutput,
    BranchOutput,
    ReleaseNotesOutput,
    SuiteOutput,
    TagOutput,
    TaskOutput,
    TicketOutput,
)
from release_orchestrator.engine.catalog import CompletionMode, spec_for


@dataclass(frozen=True, slots=True)
class CompletedSync:
    output: TaskOutput


@dataclass(frozen=True, slots=True)
class AwaitingCallback:
    external_refs: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AwaitingManualBuild:
    pass


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str


DispatchOutcome = CompletedSync | AwaitingCallback | AwaitingManualBuild | Failed


@dataclass(frozen=True, slots=True)
class DispatchContext:
    """Everything an adapter may read to perform one task."""

    release: Release
    task: Task
    platforms: tuple[Platform, ...]
    build_mode: BuildSource
    now: datetime
    cycle: RegressionCycle | None = None
    previous_tag: str | None = None
    prior_outputs: Mapping[TaskType, TaskOutput] = field(default_factory=dict)


@runtime_checkable
class IntegrationAdapter(Protocol):
    """Adapter protocol implemented per integration family."""

    async def dispatch(self, task_type: TaskType, context: DispatchContext) -> DispatchOutcome: ...


class AdapterRegistry:
    """Integration family -> adapter."""

    def __init__(self, adapters: Mapping[Integration, IntegrationAdapter] | None = None) -> None:
        self._adapters: dict[Integration, IntegrationAdapter] = {}
        for integration, adapter in (adapters or {}).items():
            self.register(integration, adapter)

    def register(self, integration: Integration, adapter: IntegrationAdapter) -> None:
        if not isinstance(adapter, IntegrationAdapter):
            raise TypeError(f"{type(adapter).__name__} does not implement IntegrationAdapter")
        if integration in self._adapters:
            raise ValueError(f"adapter already registered for {integration.value}")
        self._adapters[integration] = adapter

    def get(self, integration: Integration) -> IntegrationAdapter | None:
        return self._adapters.get(integration)

    def for_task(self, task_type: TaskType) -> IntegrationAdapter | None:
        return self.get(spec_for(task_type).integration)

    def integrations(self) -> tuple[Integration, ...]:
        return tuple(sorted(self._adapters, key=list(Integration).index))

    @classmethod
    def simulated(cls) -> AdapterRegistry:
        adapter = SimulatedAdapter()
        return cls({integration: adapter for integration in Integration})


class SimulatedAdapter:
    """Deterministic stand-in for every integration family.

    Synchronous tasks complete with outputs derived from the release; CI-backed
    tasks report ``AwaitingCallback`` so builds and automation runs are finished by
    ``relorch callback`` or a test calling ``on_callback``.
    """

    def __init__(self, *, approve_releases: bool = True) -> None:
        self._approve_releases = approve_releases
        self.calls: list[tuple[TaskType, str]] = []

    async def dispatch(self, task_type: TaskType, context: DispatchContext) -> DispatchOutcome:
        self.calls.append((task_type, context.task.id))
        release = context.release

        if spec_for(task_type).mode is not CompletionMode.SYNC:
            return AwaitingCallback(
                {f"run.{platform.value}": f"sim-{context.task.id}-{platform.value}"
                 for platform in context.platforms}
            )

        if task_type is TaskType.FORK_BRANCH:
            return CompletedSync(BranchOutput(release.branch_name, release.base_branch))
        if task_type is TaskType.CREATE_PROJECT_MANAGEMENT_TICKET:
            return CompletedSync(TicketOutput((f"REL-{release.version}",)))
        if task_type is TaskType.CREATE_TEST_SUITE:
            return CompletedSync(SuiteOutput(f"suite-{release.version}"))
        if task_type is TaskType.RESET_TEST_SUITE:
            suite = context.prior_outputs.get(TaskType.CREATE_TEST_SUITE)
            suite_id = suite.suite_id if isinstance(suite, SuiteOutput) else "suite-unknown"
            slot = context.cycle.slot_index if context.cycle is not None else 0
            return CompletedSync(SuiteOutput(suite_id, run_id=f"{suite_id}-run-{slot}"))
        if task_type is TaskType.CREATE_RC_TAG:
            slot = context.cycle.slot_index if context.cycle is not None else 1
            return CompletedSync(TagOutput(f"v{release.version}-rc.{slot}"))
        if task_type is TaskType.CREATE_RELEASE_TAG:
            return CompletedSync(TagOutput(f"v{release.version}"))
        if task_type in {TaskType.CREATE_RELEASE_NOTES, TaskType.CREATE_FINAL_RELEASE_NOTES}:
            tag_type = (
                TaskType.CREATE_RC_TAG
                if task_type is TaskType.CREATE_RELEASE_NOTES
                else TaskType.CREATE_RELEASE_TAG
            )
            tag = context.prior_outputs.get(tag_type)
            tag_name = tag.tag if isinstance(tag, TagOutput) else f"v{release.version}"
            since = context.previous_tag or release.base_branch
            return CompletedSync(
                ReleaseNotesOutput(
                    tag=tag_name,
                    notes=f"Changes in {tag_name} since {since}",
                    previous_tag=context.previous_tag,
                )
            )
        if task_type is TaskType.CHECK_PROJECT_RELEASE_APPROVAL:
            tickets = context.prior_outputs.get(TaskType.CREATE_PROJECT_MANAGEMENT_TICKET)
            ticket_ids = tickets.ticket_ids if isinstance(tickets, TicketOutput) else ()
            return CompletedSync(ApprovalOutput(self._approve_releases, ticket_ids))
        return Failed(f"simulated adapter has no behaviour for {task_type.value}")


__all__ = [
    "AdapterRegistry",
    "AwaitingCallback",
    "AwaitingManualBuild",
    "CompletedSync",
    "DispatchContext",
    "DispatchOutcome",
    "Failed",
    "IntegrationAdapter",
    "SimulatedAdapter",
]
