"""Adapter registry and the simulated adapter's deterministic outputs."""

from __future__ import annotations

import pytest

from release_orchestrator.domain import ids
from release_orchestrator.domain.enums import (
    BuildSource,
    CycleStatus,
    Integration,
    Platform,
    Stage,
    TaskStatus,
    TaskType,
)
from release_orchestrator.domain.models import RegressionCycle, Task
from release_orchestrator.domain.outputs import (
    ApprovalOutput,
    BranchOutput,
    ReleaseNotesOutput,
    SuiteOutput,
    TagOutput,
    TicketOutput,
)
from release_orchestrator.engine import (
    AdapterRegistry,
    AwaitingCallback,
    CompletedSync,
    DispatchContext,
    IntegrationAdapter,
    SimulatedAdapter,
)
from release_orchestrator.engine.catalog import TASK_SEQUENCE, spec_for

from . import BASE_TS, make_release

def _context(
    task_type: TaskType,
    *,
    slot_index: int | None = None,
    previous_tag: str | None = None,
    prior_outputs: dict | None = None,
) -> DispatchContext:
    release = make_release()
    spec = spec_for(task_type)
    cycle = None
    if slot_index is not None:
        cycle = RegressionCycle(
            id=ids.generate_cycle_id(),
            release_id=release.id,
            slot_index=slot_index,
            scheduled_at=BASE_TS,
            status=CycleStatus.IN_PROGRESS,
            created_at=BASE_TS,
            updated_at=BASE_TS,
            started_at=BASE_TS,
        )
    task = Task(
        id=ids.generate_task_id(),
        release_id=release.id,
        stage=spec.stage,
        task_type=task_type,
        status=TaskStatus.IN_PROGRESS,
        sequence=TASK_SEQUENCE[task_type],
        platforms=spec.platforms_for(release),
        created_at=BASE_TS,
        updated_at=BASE_TS,
        cycle_id=cycle.id if spec.stage is Stage.REGRESSION and cycle is not None else None,
    )
    return DispatchContext(
        release=release,
        task=task,
        platforms=task.platforms,
        build_mode=BuildSource.CI_CD,
        now=BASE_TS,
        cycle=cycle,
        previous_tag=previous_tag,
        prior_outputs=prior_outputs or {},
    )


def test_registry_rejects_non_adapters_and_duplicates() -> None:
    registry = AdapterRegistry()
    registry.register(Integration.SOURCE_CONTROL, SimulatedAdapter())

    with pytest.raises(TypeError):
        registry.register(Integration.CI_CD, object())  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="already registered"):
        registry.register(Integration.SOURCE_CONTROL, SimulatedAdapter())

    assert registry.for_task(TaskType.CREATE_RC_TAG) is registry.get(Integration.SOURCE_CONTROL)
    assert registry.for_task(TaskType.CREATE_AAB_BUILD) is None


def test_simulated_registry_covers_every_integration() -> None:
    registry = AdapterRegistry.simulated()

    assert registry.integrations() == tuple(Integration)
    assert isinstance(registry.get(Integration.APP_STORE), IntegrationAdapter)


@pytest.mark.asyncio
async def test_sync_tasks_complete_with_release_derived_outputs() -> None:
    adapter = SimulatedAdapter()

    fork = await adapter.dispatch(TaskType.FORK_BRANCH, _context(TaskType.FORK_BRANCH))
    ticket = await adapter.dispatch(
        TaskType.CREATE_PROJECT_MANAGEMENT_TICKET,
        _context(TaskType.CREATE_PROJECT_MANAGEMENT_TICKET),
    )
    tag = await adapter.dispatch(
        TaskType.CREATE_RC_TAG, _context(TaskType.CREATE_RC_TAG, slot_index=2)
    )

    assert fork == CompletedSync(BranchOutput("release/4.2.0", "main"))
    assert ticket == CompletedSync(TicketOutput(("REL-4.2.0",)))
    assert tag == CompletedSync(TagOutput("v4.2.0-rc.2"))
    assert [call[0] for call in adapter.calls] == [
        TaskType.FORK_BRANCH,
        TaskType.CREATE_PROJECT_MANAGEMENT_TICKET,
        TaskType.CREATE_RC_TAG,
    ]


@pytest.mark.asyncio
async def test_notes_and_reset_read_prior_outputs() -> None:
    adapter = SimulatedAdapter()
    prior = {
        TaskType.CREATE_TEST_SUITE: SuiteOutput("suite-4.2.0"),
        TaskType.CREATE_RC_TAG: TagOutput("v4.2.0-rc.2"),
    }

    reset = await adapter.dispatch(
        TaskType.RESET_TEST_SUITE,
        _context(TaskType.RESET_TEST_SUITE, slot_index=2, prior_outputs=prior),
    )
    notes = await adapter.dispatch(
        TaskType.CREATE_RELEASE_NOTES,
        _context(
            TaskType.CREATE_RELEASE_NOTES,
            slot_index=2,
            previous_tag="v4.2.0-rc.1",
            prior_outputs=prior,
        ),
    )

    assert reset == CompletedSync(SuiteOutput("suite-4.2.0", run_id="suite-4.2.0-run-2"))
    assert notes == CompletedSync(
        ReleaseNotesOutput(
            tag="v4.2.0-rc.2",
            notes="Changes in v4.2.0-rc.2 since v4.2.0-rc.1",
            previous_tag="v4.2.0-rc.1",
        )
    )


@pytest.mark.asyncio
async def test_ci_tasks_await_callbacks_per_platform() -> None:
    adapter = SimulatedAdapter()
    context = _context(TaskType.TRIGGER_AUTOMATION_RUNS, slot_index=1)

    outcome = await adapter.dispatch(TaskType.TRIGGER_AUTOMATION_RUNS, context)

    assert isinstance(outcome, AwaitingCallback)
    assert sorted(outcome.external_refs) == ["run.android", "run.ios"]


@pytest.mark.asyncio
async def test_approval_reflects_configuration() -> None:
    prior = {TaskType.CREATE_PROJECT_MANAGEMENT_TICKET: TicketOutput(("REL-4.2.0",))}
    context = _context(TaskType.CHECK_PROJECT_RELEASE_APPROVAL, prior_outputs=prior)

    approved = await SimulatedAdapter().dispatch(TaskType.CHECK_PROJECT_RELEASE_APPROVAL, context)
    pending = await SimulatedAdapter(approve_releases=False).dispatch(
        TaskType.CHECK_PROJECT_RELEASE_APPROVAL, context
    )

    assert approved == CompletedSync(ApprovalOutput(True, ("REL-4.2.0",)))
    assert pending == CompletedSync(ApprovalOutput(False, ("REL-4.2.0",)))
    assert Platform.IOS in context.platforms
