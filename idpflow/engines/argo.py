"""Delegate workflows to Argo Workflows by submitting a ``Workflow`` object."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..cancellation import CancellationToken
from ..contracts import LogLevel, Workflow, WorkflowType
from ..errors import KubeApiError, WorkflowAbortedError
from ..kube import manifests
from ..kube.manifests import ARGO_WORKFLOW
from ..nodepools import SYSTEM_POOL_VM_SIZE, get_node_pool_config
from ..params import (
    ClusterDeletionParams,
    ClusterProvisioningParams,
    NamespaceProvisioningParams,
)
from ..steps import (
    ARGO_CLUSTER_DELETION_PLAN,
    DIRECT_PLANS,
    KARPENTER_CLUSTER_PLAN,
    KRO_CLUSTER_PLAN,
    is_network_isolated,
    namespace_plan,
)
from .base import ProvisioningEngine

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = frozenset(
    {
        WorkflowType.CLUSTER_PROVISIONING,
        WorkflowType.CLUSTER_DELETION,
        WorkflowType.NAMESPACE_PROVISIONING,
    }
)


class ArgoEngine(ProvisioningEngine):
    """Submit one remote workflow per request and let the mirror track it."""

    name = "argo"

    @property
    def argo_namespace(self) -> str:
        return self.config.argo.namespace

    @property
    def use_karpenter(self) -> bool:
        return self.config.argo.use_karpenter

    def supports(self, workflow_type: WorkflowType) -> bool:
        return workflow_type in SUPPORTED_TYPES

    def plan(self, workflow: Workflow) -> Tuple[str, ...]:
        if workflow.type == WorkflowType.CLUSTER_PROVISIONING:
            return KARPENTER_CLUSTER_PLAN if self.use_karpenter else KRO_CLUSTER_PLAN
        if workflow.type == WorkflowType.CLUSTER_DELETION:
            return ARGO_CLUSTER_DELETION_PLAN
        if workflow.type == WorkflowType.NAMESPACE_PROVISIONING:
            return namespace_plan(
                DIRECT_PLANS[workflow.type],
                is_network_isolated(workflow.parameters),
            )
        raise ValueError(f"No Argo template for {workflow.type.value} workflows")

    # ------------------------------------------------------------------
    # Manifest
    @staticmethod
    def remote_name(workflow: Workflow) -> str:
        return f"{workflow.type.value}-{workflow.subject}-{workflow.id[:8]}"

    def template_for(self, workflow: Workflow) -> str:
        argo = self.config.argo
        if workflow.type == WorkflowType.CLUSTER_PROVISIONING:
            return argo.karpenter_cluster_template if self.use_karpenter else argo.cluster_template
        if workflow.type == WorkflowType.CLUSTER_DELETION:
            return argo.cluster_deletion_template
        return argo.namespace_template

    def parameters_for(self, workflow: Workflow) -> List[Tuple[str, Any]]:
        params = self.params_for(workflow)
        if isinstance(params, ClusterProvisioningParams):
            advanced = params.advanced_config
            values: List[Tuple[str, Any]] = [
                ("cluster-name", params.cluster_name),
                ("location", params.location),
                ("node-pool-type", params.node_pool_type),
                ("enable-nap", params.enable_nap),
                ("dry-run", params.dry_run),
                ("kubernetes-version", advanced.kubernetes_version),
            ]
            if not self.use_karpenter:
                values += [
                    ("max-nodes", advanced.max_nodes),
                    ("enable-spot", advanced.enable_spot),
                ]
                return values
            pool = get_node_pool_config(params.node_pool_type)
            values += [
                ("primary-vm-size", pool.primary_vm_size),
                ("secondary-vm-size", pool.secondary_vm_size),
                ("sku-family", pool.sku_family),
                ("max-cpu", pool.max_cpu),
                ("max-memory", pool.max_memory),
                ("system-vm-size", SYSTEM_POOL_VM_SIZE),
            ]
            return values
        if isinstance(params, ClusterDeletionParams):
            return [
                ("cluster-name", params.cluster_name),
                ("force", params.force),
                ("dry-run", params.dry_run),
            ]
        if isinstance(params, NamespaceProvisioningParams):
            limits = params.resource_limits
            return [
                ("namespace-name", params.namespace_name),
                ("resource-limits-cpu", limits.cpu.limit),
                ("resource-limits-memory", limits.memory.limit),
                ("network-isolated", params.network_isolated),
            ]
        raise ValueError(f"No Argo template for {workflow.type.value} workflows")

    def labels_for(self, workflow: Workflow) -> Dict[str, str]:
        labels = {
            manifests.LABEL_WORKFLOW_ID: workflow.id,
            manifests.LABEL_WORKFLOW_TYPE: workflow.type.value,
        }
        if workflow.type == WorkflowType.NAMESPACE_PROVISIONING:
            labels[manifests.LABEL_NAMESPACE_NAME] = workflow.subject
        else:
            labels[manifests.LABEL_CLUSTER_ID] = (
                workflow.parameters.get("cluster_id") or workflow.subject
            )
            if workflow.type == WorkflowType.CLUSTER_PROVISIONING and self.use_karpenter:
                labels[manifests.LABEL_WORKFLOW_ENGINE] = "karpenter"
        return labels

    def build_manifest(self, workflow: Workflow, name: str) -> Dict[str, Any]:
        return manifests.argo_workflow_manifest(
            name=name,
            namespace=self.argo_namespace,
            template=self.template_for(workflow),
            parameters=self.parameters_for(workflow),
            labels=self.labels_for(workflow),
            service_account=self.config.argo.service_account,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    async def run(self, workflow_id: str, token: CancellationToken) -> None:
        workflow = await self.registry.get(workflow_id)
        name = workflow.remote_ref or self.remote_name(workflow)
        try:
            manifest = self.build_manifest(workflow, name)
        except (KeyError, ValueError) as e:
            await self.fail_workflow(workflow_id, f"Could not build Argo workflow: {e}")
            return

        if workflow.dry_run:
            self.log_manifest(workflow_id, "create", ARGO_WORKFLOW, manifest)
            await self.skip_all_steps(workflow_id)
            await self.complete_workflow(workflow_id)
            return

        try:
            token.raise_if_cancelled()
            await self.registry.set_remote_ref(workflow_id, name)
            await self.kube.create(ARGO_WORKFLOW, manifest, self.argo_namespace)
        except WorkflowAbortedError:
            self.log(workflow_id, "Aborted before the Argo workflow was submitted", LogLevel.WARNING)
            return
        except KubeApiError as e:
            if not e.is_conflict:
                await self.fail_workflow(workflow_id, f"Failed to submit Argo workflow {name}: {e}")
                return
            self.log(workflow_id, f"Argo Workflow {name} already exists", LogLevel.WARNING)

        if token.cancelled:
            # Submission raced an abort; take the new object down again.
            await self._delete_remote(workflow_id, name)
            return
        self.log(
            workflow_id,
            f"Submitted Argo Workflow {name} from template {self.template_for(workflow)}",
        )

    async def abort(self, workflow: Workflow) -> None:
        if workflow.remote_ref:
            await self._delete_remote(workflow.id, workflow.remote_ref)

    def prepare_retry(self, workflow: Workflow) -> Optional[str]:
        return f"{self.remote_name(workflow)}-retry-{workflow.retry_count + 1}"

    async def _delete_remote(self, workflow_id: str, name: str) -> None:
        try:
            await self.kube.delete(ARGO_WORKFLOW, name, self.argo_namespace)
        except KubeApiError as e:
            if e.is_not_found:
                self.log(workflow_id, f"Argo Workflow {name} was already gone", LogLevel.WARNING)
            else:
                logger.error(f"Failed to delete Argo Workflow {name}: {e}")
            return
        self.log(workflow_id, f"Argo Workflow {name} deleted")
