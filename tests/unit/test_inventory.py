import pytest

from idpflow.catalog import available_locations, display_name, node_pool_recommendations
from idpflow.errors import KubeApiError, RecordNotFoundError
from idpflow.inventory import ClusterState
from idpflow.kube import NAMESPACE
from idpflow.nodepools import NODE_POOL_CONFIGURATIONS
from idpflow.params import SUPPORTED_LOCATIONS


def _cluster(name="demo", dry_run=True, **extra):
    return {
        "clusterName": name,
        "location": "eastus",
        "nodePoolType": "standard",
        "dryRun": dry_run,
        **extra,
    }


async def _finish(service, start, params):
    workflow = await start(params)
    return await service.wait_for(workflow.id)


@pytest.mark.asyncio
async def test_dry_run_cluster_is_listed_as_validated(make_service):
    service = make_service("direct")
    workflow = await _finish(service, service.start_cluster_provisioning, _cluster())
    await _finish(service, service.start_cluster_provisioning, _cluster("bad", location="mars"))

    clusters = await service.list_clusters()

    assert [c.name for c in clusters] == ["demo"]
    assert clusters[0].status == ClusterState.VALIDATED
    assert clusters[0].dry_run
    assert clusters[0].workflow_id == workflow.id
    await service.close()


@pytest.mark.asyncio
async def test_cluster_details_read_ready_conditions(make_service, fake_kube):
    service = make_service("direct")
    workflow = await _finish(
        service, service.start_cluster_provisioning, _cluster(dry_run=False)
    )

    details = await service.get_cluster("demo")

    assert details.cluster.status == ClusterState.READY
    assert details.workflow.id == workflow.id
    resources = {r.kind: r for r in details.resources}
    assert resources["ResourceGroup"].name == "rg-demo"
    assert resources["ResourceGroup"].state == "NotReady"
    assert resources["ManagedCluster"].state == "Ready"
    assert resources["ManagedCluster"].namespace == "azure-system"
    await service.close()


@pytest.mark.asyncio
async def test_cluster_resources_report_missing_objects(make_service, fake_kube):
    service = make_service("direct")
    await _finish(service, service.start_cluster_provisioning, _cluster(dry_run=False))
    fake_kube.objects.pop(("managedclusters", "azure-system", "demo"))

    resources = await service.get_cluster_resources("demo")

    assert [r.state for r in resources] == ["NotReady", "Missing"]
    await service.close()


@pytest.mark.asyncio
async def test_deleted_cluster_is_forgotten(make_service):
    service = make_service("direct")
    await _finish(service, service.start_cluster_provisioning, _cluster(dry_run=False))
    await _finish(
        service, service.start_cluster_deletion, {"clusterName": "demo", "dryRun": True}
    )
    assert (await service.get_cluster("demo")).cluster.status == ClusterState.READY

    deletion = await _finish(
        service, service.start_cluster_deletion, {"clusterName": "demo", "dryRun": False}
    )

    assert deletion.status.value == "succeeded"
    assert await service.list_clusters() == []
    with pytest.raises(RecordNotFoundError, match="Cluster not found: demo"):
        await service.get_cluster("demo")
    await service.close()


@pytest.mark.asyncio
async def test_failed_deletion_keeps_cluster_with_its_status(make_service, fake_kube):
    fake_kube.fail("delete", "ManagedCluster", KubeApiError(500, "InternalError", "boom"))
    service = make_service("direct")
    await _finish(service, service.start_cluster_provisioning, _cluster(dry_run=False))
    deletion = await _finish(
        service, service.start_cluster_deletion, {"clusterName": "demo", "dryRun": False}
    )

    record = (await service.get_cluster("demo")).cluster

    assert record.status == ClusterState.DELETION_FAILED
    assert record.last_workflow_id == deletion.id
    await service.close()


@pytest.mark.asyncio
async def test_managed_namespaces_are_listed_with_their_request(make_service, fake_kube):
    fake_kube.add(NAMESPACE, {"metadata": {"name": "kube-system"}})
    fake_kube.add(NAMESPACE, {"metadata": {"name": "legacy", "labels": {"team": "x"}}})
    service = make_service("direct")
    await _finish(
        service,
        service.start_namespace_provisioning,
        {"namespaceName": "team-a", "description": "Team A", "networkIsolated": False},
    )

    namespaces = await service.list_namespaces()

    assert [ns.name for ns in namespaces] == ["team-a"]
    record = namespaces[0]
    assert record.phase == "Active"
    assert record.description == "Team A"
    assert record.network_isolated is False
    assert record.resource_limits.cpu.limit == "1000m"
    assert record.labels["app.kubernetes.io/managed-by"] == "idp-platform"
    assert ("list", "Namespace", "", None) in fake_kube.calls
    await service.close()


@pytest.mark.asyncio
async def test_namespace_status_checks_limit_range_and_policy(make_service, fake_kube):
    service = make_service("direct")
    await _finish(service, service.start_namespace_provisioning, {"namespaceName": "team-a"})

    status = await service.get_namespace_status("team-a")
    assert (status.limit_range, status.network_policy, status.health) == (
        "Active",
        "Active",
        "Healthy",
    )

    fake_kube.objects.pop(("networkpolicies", "team-a", "namespace-isolation"))
    status = await service.get_namespace_status("team-a")
    assert status.network_policy == "Missing"
    assert status.health == "Degraded"
    await service.close()


@pytest.mark.asyncio
async def test_namespace_without_isolation_reports_policy_not_applied(make_service):
    service = make_service("direct")
    await _finish(
        service,
        service.start_namespace_provisioning,
        {"namespaceName": "team-b", "networkIsolated": False},
    )

    status = await service.get_namespace_status("team-b")

    assert status.network_policy == "Not Applied"
    assert status.health == "Healthy"
    await service.close()


@pytest.mark.asyncio
async def test_unmanaged_or_unknown_namespace_is_not_found(make_service, fake_kube):
    fake_kube.add(NAMESPACE, {"metadata": {"name": "legacy"}, "status": {"phase": "Active"}})
    service = make_service("direct")

    with pytest.raises(RecordNotFoundError, match="Namespace not found: legacy"):
        await service.get_namespace_status("legacy")
    with pytest.raises(RecordNotFoundError):
        await service.preview_namespace_manifests("ghost")
    await service.close()


@pytest.mark.asyncio
async def test_manifest_preview_of_dry_run_namespace(make_service, fake_kube):
    service = make_service("direct")
    await _finish(
        service,
        service.start_namespace_provisioning,
        {"namespaceName": "team-a", "description": "Team A", "dryRun": True},
    )

    manifests = await service.preview_namespace_manifests("team-a")

    assert fake_kube.calls_for("create") == []
    assert manifests["namespace"]["metadata"]["annotations"]["idp-platform/description"] == "Team A"
    assert manifests["limit_range"]["metadata"]["namespace"] == "team-a"
    assert manifests["network_policy"]["metadata"]["name"] == "namespace-isolation"
    status = await service.get_namespace_status("team-a")
    assert status.phase is None
    assert status.health == "NotFound"
    await service.close()


@pytest.mark.asyncio
async def test_manifest_preview_uses_updated_limits(make_service):
    service = make_service("direct")
    await _finish(
        service,
        service.start_namespace_provisioning,
        {"namespaceName": "team-a", "networkIsolated": False},
    )
    update = await _finish(
        service,
        service.start_namespace_update,
        {
            "namespaceName": "team-a",
            "resourceLimits": {
                "cpu": {"request": "200m", "limit": "2"},
                "memory": {"request": "256Mi", "limit": "2Gi"},
            },
        },
    )
    assert update.status.value == "succeeded"

    manifests = await service.preview_namespace_manifests("team-a")

    container = manifests["limit_range"]["spec"]["limits"][0]
    assert container["default"] == {"cpu": "2", "memory": "2Gi"}
    assert manifests["network_policy"] is None
    await service.close()



@pytest.mark.asyncio
async def test_deleted_namespace_is_no_longer_tracked(make_service):
    service = make_service("direct")
    await _finish(service, service.start_namespace_provisioning, {"namespaceName": "team-a"})
    await _finish(service, service.start_namespace_deletion, {"namespaceName": "team-a"})

    assert await service.list_namespaces() == []
    with pytest.raises(RecordNotFoundError):
        await service.get_namespace("team-a")
    await service.close()


def test_locations_cover_supported_regions():
    locations = available_locations()
    assert [loc.name for loc in locations] == list(SUPPORTED_LOCATIONS)
    assert {loc.name for loc in locations if loc.recommended} == {"eastus", "westus2"}


def test_node_pool_recommendations():
    recommendations = {r.node_pool_type: r for r in node_pool_recommendations()}
    assert set(recommendations) == set(NODE_POOL_CONFIGURATIONS)
    spot = recommendations["spot-optimized"]
    assert spot.display_name == "Spot Optimized"
    assert spot.cost_tier == "very-low"
    assert spot.recommended_for == NODE_POOL_CONFIGURATIONS["spot-optimized"].recommended_for
    assert "Standard_DS2_v2" in spot.karpenter_features["instance_types"]
    assert display_name("memory-optimized") == "Memory Optimized"
