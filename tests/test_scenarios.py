"""End-to-end behaviour of the workflow service against a fake API server."""

import asyncio
from datetime import datetime, timezone

import pytest

from idpflow.contracts import LogLevel, StepStatus, WorkflowStatus, WorkflowType
from idpflow.errors import KubeApiError
from idpflow.kube import ARGO_WORKFLOW, RESOURCE_GROUP
from idpflow.kube.manifests import resource_group_manifest
from idpflow.steps import DIRECT_PLANS, KRO_CLUSTER_PLAN


def _messages(logs):
    return "\n".join(entry.message for entry in logs)


@pytest.mark.asyncio
async def test_dry_run_cluster_provisioning_logs_manifests_without_creating(
    make_service, fake_kube
):
    service = make_service("direct")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": True}
    )
    workflow = await service.wait_for(workflow.id)

    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.end_time is not None
    logs = _messages(await service.get_logs(workflow.id))
    assert "rg-demo" in logs
    assert "ManagedCluster: demo" in logs
    assert "[dry-run] Would create" in logs
    assert fake_kube.calls_for("create") == []

    steps = await service.get_steps(workflow.id)
    assert [s.name for s in steps] == list(DIRECT_PLANS[WorkflowType.CLUSTER_PROVISIONING])
    assert all(s.status == StepStatus.SUCCEEDED for s in steps)
    skipped = {s.name for s in steps if s.skipped}
    assert {"create-resource-group", "create-managed-cluster", "wait-for-cluster-ready"} <= skipped
    await service.close()


@pytest.mark.asyncio
async def test_missing_cluster_name_fails_without_running_steps(make_service, fake_kube):
    service = make_service("direct")
    workflow = await service.start_cluster_provisioning(
        {"location": "eastus", "nodePoolType": "standard"}
    )

    assert workflow.status == WorkflowStatus.FAILED
    assert "Missing required parameters" in workflow.error
    assert "clustername" in workflow.error.lower().replace("_", "")
    steps = await service.get_steps(workflow.id)
    assert steps
    assert all(s.status == StepStatus.PENDING for s in steps)
    logs = await service.get_logs(workflow.id)
    assert any(entry.level == LogLevel.ERROR for entry in logs)
    assert fake_kube.calls == []
    await service.close()


@pytest.mark.asyncio
async def test_mirror_marks_workflow_succeeded_from_remote_phase(make_service, fake_kube):
    service = make_service("argo")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": False}
    )
    workflow = await service.wait_for(workflow.id)
    assert workflow.status == WorkflowStatus.RUNNING
    assert workflow.remote_ref == f"cluster-provisioning-demo-{workflow.id[:8]}"

    key = (ARGO_WORKFLOW.plural, "argo", workflow.remote_ref)
    remote = fake_kube.objects[key]
    remote["metadata"]["resourceVersion"] = "2"
    remote["status"] = {
        "phase": "Running",
        "nodes": {
            "n1": {
                "type": "Pod",
                "templateName": "validate-cluster-config",
                "phase": "Succeeded",
                "startedAt": "2024-01-01T09:00:00Z",
                "finishedAt": "2024-01-01T09:01:00Z",
            }
        },
    }
    report = await service.sync_remote()
    assert report.changed == [workflow.id]
    workflow = await service.get_workflow(workflow.id)
    assert workflow.status == WorkflowStatus.RUNNING
    steps = {s.name: s for s in await service.get_steps(workflow.id)}
    assert steps["validate-cluster-config"].status == StepStatus.SUCCEEDED

    remote["metadata"]["resourceVersion"] = "3"
    remote["status"]["phase"] = "Succeeded"
    remote["status"]["finishedAt"] = "2024-01-01T10:00:00Z"
    await service.sync_remote()

    workflow = await service.get_workflow(workflow.id)
    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.end_time == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

    report = await service.sync_remote()
    assert report.checked == 0
    await service.close()


@pytest.mark.asyncio
async def test_existing_resource_group_is_a_warning(make_service, fake_kube):
    fake_kube.add(
        RESOURCE_GROUP, resource_group_manifest("demo", "eastus", "azure-system"), "azure-system"
    )
    service = make_service("direct")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": False}
    )
    workflow = await service.wait_for(workflow.id)

    assert workflow.status == WorkflowStatus.SUCCEEDED
    steps = {s.name: s for s in await service.get_steps(workflow.id)}
    assert steps["create-resource-group"].status == StepStatus.SUCCEEDED
    assert steps["create-managed-cluster"].status == StepStatus.SUCCEEDED
    logs = await service.get_logs(workflow.id)
    assert any(
        entry.level == LogLevel.WARNING and "already exists" in entry.message for entry in logs
    )
    assert ("create", "ManagedCluster", "demo", "azure-system") in fake_kube.calls
    await service.close()


@pytest.mark.asyncio
async def test_abort_records_reason_when_remote_delete_fails(make_service, fake_kube):
    fake_kube.fail("delete", "Workflow", KubeApiError(500, "InternalError", "boom"))
    service = make_service("argo")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": False}
    )
    await service.wait_for(workflow.id)

    aborted = await service.abort_workflow(workflow.id, "operator request")

    assert aborted.status == WorkflowStatus.ABORTED
    assert aborted.abort_reason == "operator request"
    assert aborted.end_time is not None
    assert fake_kube.calls_for("delete")
    await service.close()


@pytest.mark.asyncio
async def test_abort_stops_direct_sequencer(make_service, fake_kube):
    fake_kube.ready_kinds.clear()
    service = make_service("direct", ready_timeout=30.0)
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": False}
    )

    for _ in range(200):
        steps = {s.name: s for s in await service.get_steps(workflow.id)}
        if steps["wait-for-cluster-ready"].status == StepStatus.RUNNING:
            break
        await asyncio.sleep(0.01)

    await service.abort_workflow(workflow.id, "stop")
    workflow = await service.wait_for(workflow.id, timeout=5)

    assert workflow.status == WorkflowStatus.ABORTED
    steps = {s.name: s for s in await service.get_steps(workflow.id)}
    assert steps["wait-for-cluster-ready"].status == StepStatus.FAILED
    assert "Workflow aborted: stop" in steps["wait-for-cluster-ready"].error
    assert steps["configure-gitops"].status == StepStatus.PENDING
    await service.close()


@pytest.mark.asyncio
async def test_failed_step_fails_workflow_and_retry_reruns(make_service, fake_kube):
    fake_kube.fail("create", "ManagedCluster", KubeApiError(403, "Forbidden", "denied"))
    service = make_service("direct")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": False}
    )
    workflow = await service.wait_for(workflow.id)

    assert workflow.status == WorkflowStatus.FAILED
    assert "create-managed-cluster" in workflow.error
    steps = {s.name: s for s in await service.get_steps(workflow.id)}
    assert steps["create-managed-cluster"].status == StepStatus.FAILED
    assert steps["wait-for-cluster-ready"].status == StepStatus.PENDING

    fake_kube.errors.clear()
    retried = await service.retry_workflow(workflow.id)
    assert retried.id == workflow.id
    assert retried.retry_count == 1
    assert retried.status == WorkflowStatus.RUNNING
    assert retried.end_time is None

    workflow = await service.wait_for(workflow.id)
    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.retry_count == 1
    await service.close()


@pytest.mark.asyncio
async def test_argo_dry_run_submits_nothing(make_service, fake_kube):
    service = make_service("argo")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "westus2", "nodePoolType": "memory-optimized"}
    )
    workflow = await service.wait_for(workflow.id)

    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.remote_ref is None
    assert fake_kube.calls_for("create") == []
    steps = await service.get_steps(workflow.id)
    assert [s.name for s in steps] == list(KRO_CLUSTER_PLAN)
    assert all(s.skipped and s.status == StepStatus.SUCCEEDED for s in steps)
    logs = _messages(await service.get_logs(workflow.id))
    assert "aks-cluster-provisioning" in logs
    await service.close()


@pytest.mark.asyncio
async def test_argo_engine_runs_namespace_updates_directly(make_service, fake_kube):
    service = make_service("argo")
    workflow = await service.start_namespace_update(
        {"namespaceName": "team-a", "annotations": {"owner": "team-a"}, "dryRun": True}
    )
    workflow = await service.wait_for(workflow.id)

    assert workflow.engine == "direct"
    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert fake_kube.calls_for("patch") == []
    await service.close()


@pytest.mark.asyncio
async def test_status_changes_are_published(make_service):
    service = make_service("direct")
    workflow = await service.start_namespace_provisioning(
        {"namespaceName": "team-a", "dryRun": True}
    )
    await service.wait_for(workflow.id)

    events = [e for e in service._publisher.published if e.workflow_id == workflow.id]
    workflow_states = [e.status for e in events if e.kind == "workflow"]
    assert workflow_states == ["created", "running", "succeeded"]
    assert any(e.kind == "step" and e.step_name == "create-namespace" for e in events)
    await service.close()


@pytest.mark.asyncio
async def test_rejected_namespace_plan_honours_camel_case_isolation_flag(make_service):
    service = make_service("direct")
    workflow = await service.start_namespace_provisioning(
        {"namespaceName": "Team_A", "networkIsolated": False}
    )

    assert workflow.status == WorkflowStatus.FAILED
    names = [s.name for s in await service.get_steps(workflow.id)]
    assert "create-namespace" in names
    assert "apply-network-policy" not in names
    await service.close()


@pytest.mark.asyncio
async def test_abort_reports_workflow_that_finished_during_remote_delete(make_service, fake_kube):
    from idpflow.errors import InvalidTransitionError

    service = make_service("argo")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": False}
    )
    workflow = await service.wait_for(workflow.id)
    delete = fake_kube.delete

    async def delete_after_remote_success(ref, name, namespace=None):
        await service.registry.set_status(workflow.id, WorkflowStatus.SUCCEEDED)
        return await delete(ref, name, namespace)

    fake_kube.delete = delete_after_remote_success

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.abort_workflow(workflow.id, "too late")

    assert "finished as succeeded" in str(exc_info.value)
    assert workflow.remote_ref in str(exc_info.value)
    assert (await service.get_workflow(workflow.id)).status == WorkflowStatus.SUCCEEDED
    logs = await service.get_logs(workflow.id)
    assert any("before the abort was recorded" in entry.message for entry in logs)
    await service.close()


@pytest.mark.asyncio
async def test_failed_argo_workflow_retries_under_a_new_remote_name(make_service, fake_kube):
    service = make_service("argo")
    workflow = await service.start_cluster_provisioning(
        {"clusterName": "demo", "location": "eastus", "nodePoolType": "standard", "dryRun": False}
    )
    workflow = await service.wait_for(workflow.id)
    original_ref = workflow.remote_ref

    remote = fake_kube.objects[(ARGO_WORKFLOW.plural, "argo", original_ref)]
    remote["metadata"]["resourceVersion"] = "2"
    remote["status"] = {"phase": "Failed", "message": "quota exceeded"}
    await service.sync_remote()

    failed = await service.get_workflow(workflow.id)
    assert failed.status == WorkflowStatus.FAILED
    assert failed.error == "quota exceeded"

    retried = await service.retry_workflow(workflow.id)
    await service.wait_for(workflow.id)

    assert retried.id == workflow.id
    assert retried.retry_count == 1
    assert retried.status == WorkflowStatus.RUNNING
    assert retried.remote_ref == f"{original_ref}-retry-1"
    retry_key = (ARGO_WORKFLOW.plural, "argo", retried.remote_ref)
    assert retry_key in fake_kube.objects
    steps = await service.get_steps(workflow.id)
    assert all(s.status == StepStatus.PENDING for s in steps)

    fake_kube.objects[retry_key]["metadata"]["resourceVersion"] = "2"
    fake_kube.objects[retry_key]["status"] = {
        "phase": "Succeeded",
        "finishedAt": "2024-01-01T10:00:00Z",
    }
    report = await service.sync_remote()

    assert report.changed == [workflow.id]
    workflow = await service.get_workflow(workflow.id)
    assert workflow.status == WorkflowStatus.SUCCEEDED
    assert workflow.retry_count == 1
    assert workflow.remote_ref == f"{original_ref}-retry-1"
    await service.close()
