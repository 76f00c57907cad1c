import pytest

from idpflow.contracts import StepStatus, Workflow, WorkflowStatus, WorkflowType
from idpflow.errors import InvalidTransitionError, WorkflowNotFoundError
from idpflow.events import InMemoryEventPublisher
from idpflow.persistence import InMemoryWorkflowStore
from idpflow.registry import StepUpdate, WorkflowRegistry
from idpflow.steps import build_steps


def _workflow() -> Workflow:
    return Workflow(
        name="namespace-provisioning-team-a",
        type=WorkflowType.NAMESPACE_PROVISIONING,
        subject="team-a",
    )


async def _registered(registry: WorkflowRegistry):
    workflow = _workflow()
    steps = build_steps(("first", "second", "third"))
    await registry.create(workflow, steps)
    await registry.set_status(workflow.id, WorkflowStatus.RUNNING)
    return workflow, steps


@pytest.mark.asyncio
async def test_step_cannot_start_before_predecessor_finishes():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    workflow, steps = await _registered(registry)

    with pytest.raises(InvalidTransitionError):
        await registry.start_step(workflow.id, steps[1].id)

    await registry.start_step(workflow.id, steps[0].id)
    with pytest.raises(InvalidTransitionError):
        await registry.start_step(workflow.id, steps[1].id)

    await registry.finish_step(workflow.id, steps[0].id, StepStatus.SUCCEEDED)
    started = await registry.start_step(workflow.id, steps[1].id)
    assert started.status == StepStatus.RUNNING
    assert started.start_time is not None


@pytest.mark.asyncio
async def test_terminal_workflow_steps_are_frozen():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    workflow, steps = await _registered(registry)
    await registry.set_status(workflow.id, WorkflowStatus.SUCCEEDED)

    with pytest.raises(InvalidTransitionError):
        await registry.start_step(workflow.id, steps[0].id)
    changed = await registry.apply_step_updates(
        workflow.id, {"first": StepUpdate(status=StepStatus.FAILED)}
    )
    assert changed == []
    assert all(s.status == StepStatus.PENDING for s in await registry.steps(workflow.id))


@pytest.mark.asyncio
async def test_failed_workflow_only_restarts_through_retry():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    workflow, _ = await _registered(registry)
    await registry.set_status(workflow.id, WorkflowStatus.FAILED, error="boom")

    with pytest.raises(InvalidTransitionError):
        await registry.set_status(workflow.id, WorkflowStatus.RUNNING)

    retried = await registry.begin_retry(workflow.id, "remote-retry-1", build_steps(("only",)))
    assert retried.status == WorkflowStatus.RUNNING
    assert retried.retry_count == 1
    assert retried.error is None
    assert retried.end_time is None
    assert retried.remote_ref == "remote-retry-1"
    assert [s.name for s in await registry.steps(workflow.id)] == ["only"]


@pytest.mark.asyncio
async def test_retry_requires_failed_status():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    workflow, _ = await _registered(registry)
    with pytest.raises(InvalidTransitionError):
        await registry.begin_retry(workflow.id, None, build_steps(("a",)))


@pytest.mark.asyncio
async def test_abort_fails_running_steps():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    workflow, steps = await _registered(registry)
    await registry.start_step(workflow.id, steps[0].id)

    aborted = await registry.abort(workflow.id, "no longer needed")

    assert aborted.status == WorkflowStatus.ABORTED
    assert aborted.abort_reason == "no longer needed"
    first, second, _ = await registry.steps(workflow.id)
    assert first.status == StepStatus.FAILED
    assert first.error == "Workflow aborted: no longer needed"
    assert second.status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_unchanged_status_is_not_written_again():
    publisher = InMemoryEventPublisher()
    registry = WorkflowRegistry(InMemoryWorkflowStore(), publisher=publisher)
    workflow, _ = await _registered(registry)

    assert await registry.set_status(workflow.id, WorkflowStatus.RUNNING) is None
    assert [e.status for e in publisher.published] == ["created", "running"]


@pytest.mark.asyncio
async def test_apply_step_updates_reports_changes_once():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    workflow, _ = await _registered(registry)
    updates = {"first": StepUpdate(status=StepStatus.SUCCEEDED)}

    assert await registry.apply_step_updates(workflow.id, updates) == ["first"]
    assert await registry.apply_step_updates(workflow.id, updates) == []
    first = (await registry.steps(workflow.id))[0]
    assert first.end_time is not None
    assert first.start_time is not None


@pytest.mark.asyncio
async def test_unknown_workflow_raises():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    with pytest.raises(WorkflowNotFoundError):
        await registry.get("missing")


@pytest.mark.asyncio
async def test_locks_of_finished_workflows_are_released():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    finished = []
    for _ in range(5):
        workflow, steps = await _registered(registry)
        await registry.start_step(workflow.id, steps[0].id)
        await registry.finish_step(workflow.id, steps[0].id, StepStatus.SUCCEEDED)
        await registry.set_status(workflow.id, WorkflowStatus.SUCCEEDED)
        finished.append(workflow)
    running, _ = await _registered(registry)
    aborted, _ = await _registered(registry)
    await registry.abort(aborted.id, "stop")

    with pytest.raises(InvalidTransitionError):
        await registry.start_step(finished[0].id, "any")
    with pytest.raises(WorkflowNotFoundError):
        await registry.set_status("missing", WorkflowStatus.RUNNING)

    assert set(registry._locks) == {running.id}


@pytest.mark.asyncio
async def test_retried_workflow_gets_a_lock_again():
    registry = WorkflowRegistry(InMemoryWorkflowStore())
    workflow, _ = await _registered(registry)
    await registry.set_status(workflow.id, WorkflowStatus.FAILED, error="boom")
    assert workflow.id not in registry._locks

    await registry.begin_retry(workflow.id, None, build_steps(("again",)))
    step = (await registry.steps(workflow.id))[0]
    started = await registry.start_step(workflow.id, step.id)

    assert started.status == StepStatus.RUNNING
    assert workflow.id in registry._locks
