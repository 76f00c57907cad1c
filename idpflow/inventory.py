"""Cluster and namespace records built from workflow history and the API server.

Records are not stored separately. A cluster is known once a provisioning
workflow for it validated and is forgotten after a real deletion succeeded;
its status follows the latest of those workflows. Namespaces are read from
the API server and enriched with what their provisioning request asked for.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, TypeAdapter

from .contracts import Workflow, WorkflowStatus, WorkflowType, utcnow
from .errors import KubeApiError, ParameterValidationError, RecordNotFoundError
from .kube import (
    LIMIT_RANGE,
    MANAGED_CLUSTER,
    NAMESPACE,
    NETWORK_POLICY,
    RESOURCE_GROUP,
    KubeApi,
)
from .kube.manifests import (
    LIMIT_RANGE_NAME,
    MANAGED_BY,
    MANAGED_BY_SELECTOR,
    NETWORK_POLICY_NAME,
    ResourceRef,
    is_ready,
    limit_range_manifest,
    namespace_manifest,
    network_policy_manifest,
    resource_group_name,
)
from .params import PARAMS_MODELS, RequestParams, ResourceLimits, validate_params
from .registry import WorkflowRegistry

logger = logging.getLogger(__name__)

SYSTEM_NAMESPACES = frozenset({"default", "azure-system", "argo", "istio-system"})
DESCRIPTION_ANNOTATION = "idp-platform/description"

_DATETIME = TypeAdapter(datetime)


class ClusterState(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    VALIDATED = "validated"  # dry run succeeded, nothing was created
    FAILED = "failed"
    ABORTED = "aborted"
    DELETING = "deleting"
    DELETION_FAILED = "deletion-failed"
    DELETION_ABORTED = "deletion-aborted"


_PROVISIONING_STATES = {
    WorkflowStatus.CREATED: ClusterState.PROVISIONING,
    WorkflowStatus.RUNNING: ClusterState.PROVISIONING,
    WorkflowStatus.SUCCEEDED: ClusterState.READY,
    WorkflowStatus.FAILED: ClusterState.FAILED,
    WorkflowStatus.ABORTED: ClusterState.ABORTED,
}

_DELETION_STATES = {
    WorkflowStatus.CREATED: ClusterState.DELETING,
    WorkflowStatus.RUNNING: ClusterState.DELETING,
    WorkflowStatus.FAILED: ClusterState.DELETION_FAILED,
    WorkflowStatus.ABORTED: ClusterState.DELETION_ABORTED,
}


class ClusterRecord(BaseModel):
    name: str
    location: str
    node_pool_type: str
    status: ClusterState
    dry_run: bool = False
    engine: str = "direct"
    workflow_id: str
    last_workflow_id: str
    created_at: datetime
    updated_at: Optional[datetime] = None


class ResourceStatus(BaseModel):
    """Presence and ``Ready`` condition of one object on the API server."""

    kind: str
    name: str
    namespace: Optional[str] = None
    exists: bool = False
    ready: bool = False
    message: Optional[str] = None

    @property
    def state(self) -> str:
        if not self.exists:
            return "Missing"
        return "Ready" if self.ready else "NotReady"


class ClusterDetails(BaseModel):
    cluster: ClusterRecord
    workflow: Workflow
    resources: List[ResourceStatus] = Field(default_factory=list)


class NamespaceRecord(BaseModel):
    name: str
    phase: Optional[str] = None  # None when the namespace is not on the cluster
    description: str = ""
    created_at: Optional[datetime] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    resource_limits: Optional[ResourceLimits] = None
    network_isolated: Optional[bool] = None
    workflow_id: Optional[str] = None


class NamespaceStatus(BaseModel):
    name: str
    phase: Optional[str] = None
    limit_range: str
    network_policy: str
    health: str
    last_checked: datetime = Field(default_factory=utcnow)


def is_system_namespace(name: str) -> bool:
    return name in SYSTEM_NAMESPACES or name.startswith("kube-")


class Inventory:
    """Read-only view of the clusters and namespaces idpflow manages."""

    def __init__(
        self, registry: WorkflowRegistry, kube: KubeApi, infrastructure_namespace: str
    ) -> None:
        self.registry = registry
        self.kube = kube
        self.infrastructure_namespace = infrastructure_namespace

    async def _history(self) -> List[Tuple[Workflow, Any]]:
        """Workflows in creation order, paired with their validated parameters."""
        history = []
        for workflow in await self.registry.list():
            try:
                params: RequestParams = validate_params(
                    PARAMS_MODELS[workflow.type], workflow.parameters
                )
            except ParameterValidationError:
                continue  # rejected requests never reached the cluster
            history.append((workflow, params))
        return history

    async def _resource_status(
        self, ref: ResourceRef, name: str, namespace: Optional[str]
    ) -> ResourceStatus:
        status = ResourceStatus(kind=ref.kind, name=name, namespace=namespace)
        try:
            resource = await self.kube.get(ref, name, namespace)
        except KubeApiError as e:
            if not e.is_not_found:
                raise
            logger.debug(f"{ref.kind} {name} not found")
            return status
        status.exists = True
        status.ready, status.message = is_ready(resource)
        return status

    # ------------------------------------------------------------------
    # Clusters
    async def list_clusters(self) -> List[ClusterRecord]:
        records: Dict[str, ClusterRecord] = {}
        for workflow, params in await self._history():
            if workflow.type == WorkflowType.CLUSTER_PROVISIONING:
                state = _PROVISIONING_STATES[workflow.status]
                if state == ClusterState.READY and workflow.dry_run:
                    state = ClusterState.VALIDATED
                records[params.cluster_name] = ClusterRecord(
                    name=params.cluster_name,
                    location=params.location,
                    node_pool_type=params.node_pool_type,
                    status=state,
                    dry_run=workflow.dry_run,
                    engine=workflow.engine,
                    workflow_id=workflow.id,
                    last_workflow_id=workflow.id,
                    created_at=workflow.start_time,
                    updated_at=workflow.end_time,
                )
            elif workflow.type == WorkflowType.CLUSTER_DELETION and not workflow.dry_run:
                record = records.get(params.cluster_name)
                if record is None:
                    continue
                if workflow.status == WorkflowStatus.SUCCEEDED:
                    del records[params.cluster_name]
                    continue
                record.status = _DELETION_STATES[workflow.status]
                record.last_workflow_id = workflow.id
                record.updated_at = workflow.end_time or workflow.start_time
        return list(records.values())

    async def get_cluster(self, name: str) -> ClusterRecord:
        for record in await self.list_clusters():
            if record.name == name:
                return record
        raise RecordNotFoundError("Cluster", name)

    async def get_cluster_resources(self, name: str) -> List[ResourceStatus]:
        """Azure Service Operator objects backing a cluster."""
        await self.get_cluster(name)
        namespace = self.infrastructure_namespace
        return [
            await self._resource_status(RESOURCE_GROUP, resource_group_name(name), namespace),
            await self._resource_status(MANAGED_CLUSTER, name, namespace),
        ]

    async def get_cluster_details(self, name: str) -> ClusterDetails:
        cluster = await self.get_cluster(name)
        return ClusterDetails(
            cluster=cluster,
            workflow=await self.registry.get(cluster.last_workflow_id),
            resources=await self.get_cluster_resources(name),
        )

    # ------------------------------------------------------------------
    # Namespaces
    async def _tracked_namespaces(self) -> Dict[str, NamespaceRecord]:
        records: Dict[str, NamespaceRecord] = {}
        for workflow, params in await self._history():
            name = workflow.subject
            if workflow.type == WorkflowType.NAMESPACE_PROVISIONING:
                if workflow.status in (WorkflowStatus.FAILED, WorkflowStatus.ABORTED):
                    continue
                records[name] = NamespaceRecord(
                    name=name,
                    description=params.description,
                    created_at=workflow.start_time,
                    resource_limits=params.resource_limits,
                    network_isolated=params.network_isolated,
                    workflow_id=workflow.id,
                )
            elif workflow.status != WorkflowStatus.SUCCEEDED or workflow.dry_run:
                continue
            elif workflow.type == WorkflowType.NAMESPACE_UPDATE:
                if name in records and params.resource_limits is not None:
                    records[name].resource_limits = params.resource_limits
            elif workflow.type == WorkflowType.NAMESPACE_DELETION:
                records.pop(name, None)
        return records

    @staticmethod
    def _from_live(item: Dict[str, Any], tracked: Optional[NamespaceRecord]) -> NamespaceRecord:
        metadata = item.get("metadata", {})
        annotations = dict(metadata.get("annotations") or {})
        record = tracked.model_copy() if tracked else NamespaceRecord(name=metadata["name"])
        record.phase = (item.get("status") or {}).get("phase")
        record.labels = dict(metadata.get("labels") or {})
        record.annotations = annotations
        record.description = annotations.get(DESCRIPTION_ANNOTATION, record.description)
        if metadata.get("creationTimestamp"):
            record.created_at = _DATETIME.validate_python(metadata["creationTimestamp"])
        return record

    async def list_namespaces(self) -> List[NamespaceRecord]:
        """Managed namespaces present on the cluster."""
        tracked = await self._tracked_namespaces()
        items = await self.kube.list(NAMESPACE, label_selector=MANAGED_BY_SELECTOR)
        records = []
        for item in items:
            name = item.get("metadata", {}).get("name", "")
            if not name or is_system_namespace(name):
                continue
            records.append(self._from_live(item, tracked.get(name)))
        return records

    async def get_namespace(self, name: str) -> NamespaceRecord:
        """A managed namespace, or its last accepted request when it is not on the cluster.

        Raises:
            RecordNotFoundError: If idpflow neither manages nor tracks ``name``.
        """
        tracked = (await self._tracked_namespaces()).get(name)
        try:
            item = await self.kube.get(NAMESPACE, name)
        except KubeApiError as e:
            if not e.is_not_found:
                raise
            if tracked is None:
                raise RecordNotFoundError("Namespace", name) from None
            return tracked
        labels = item.get("metadata", {}).get("labels") or {}
        if tracked is None and labels.get("app.kubernetes.io/managed-by") != MANAGED_BY:
            raise RecordNotFoundError("Namespace", name)
        return self._from_live(item, tracked)

    async def get_namespace_status(self, name: str) -> NamespaceStatus:
        record = await self.get_namespace(name)
        limit_range = await self._resource_status(LIMIT_RANGE, LIMIT_RANGE_NAME, name)
        policy = await self._resource_status(NETWORK_POLICY, NETWORK_POLICY_NAME, name)

        limit_state = "Active" if limit_range.exists else "Missing"
        if policy.exists:
            policy_state = "Active"
        elif record.network_isolated:
            policy_state = "Missing"
        else:
            policy_state = "Not Applied"

        if record.phase is None:
            health = "NotFound"
        elif record.phase == "Active" and "Missing" not in (limit_state, policy_state):
            health = "Healthy"
        else:
            health = "Degraded"
        return NamespaceStatus(
            name=name,
            phase=record.phase,
            limit_range=limit_state,
            network_policy=policy_state,
            health=health,
        )

    async def preview_namespace_manifests(self, name: str) -> Dict[str, Optional[Dict[str, Any]]]:
        """Manifests idpflow would apply for the namespace as it is recorded now."""
        record = await self.get_namespace(name)
        limits = record.resource_limits or ResourceLimits()
        return {
            "namespace": namespace_manifest(name, record.description),
            "limit_range": limit_range_manifest(name, limits.model_dump()),
            "network_policy": network_policy_manifest(name) if record.network_isolated else None,
        }
