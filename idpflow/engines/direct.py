"""Run workflows in-process, one step at a time, against the Kubernetes API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Tuple

from ..cancellation import CancellationToken
from ..contracts import LogLevel, Step, StepStatus, Workflow, WorkflowType
from ..errors import InvalidTransitionError, KubeApiError, WorkflowAbortedError
from ..kube import manifests
from ..kube.manifests import (
    GIT_REPOSITORY,
    KUSTOMIZATION,
    LIMIT_RANGE,
    MANAGED_CLUSTER,
    NAMESPACE,
    NETWORK_POLICY,
    RESOURCE_GROUP,
    ResourceRef,
)
from ..nodepools import get_node_pool_config
from ..params import (
    ClusterDeletionParams,
    ClusterProvisioningParams,
    NamespaceDeletionParams,
    NamespaceProvisioningParams,
    NamespaceUpdateParams,
    RequestParams,
)
from ..steps import DIRECT_PLANS, is_network_isolated, namespace_plan
from .base import ProvisioningEngine

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """What a step handler gets to work with."""

    workflow: Workflow
    params: RequestParams
    token: CancellationToken


# A handler returns True when its external effect was skipped.
StepHandler = Callable[[StepContext], Awaitable[bool]]


class DirectEngine(ProvisioningEngine):
    """Sequential step runner that applies manifests itself."""

    name = "direct"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._handlers: Dict[WorkflowType, Dict[str, StepHandler]] = {
            WorkflowType.CLUSTER_PROVISIONING: {
                "validate-inputs": self._validate_cluster,
                "create-resource-group": self._create_resource_group,
                "create-managed-cluster": self._create_managed_cluster,
                "wait-for-cluster-ready": self._wait_for_cluster_ready,
                "configure-gitops": self._configure_gitops,
            },
            WorkflowType.CLUSTER_DELETION: {
                "validate-deletion": self._validate_cluster_deletion,
                "delete-managed-cluster": self._delete_managed_cluster,
                "delete-resource-group": self._delete_resource_group,
                "verify-deletion": self._verify_cluster_deletion,
            },
            WorkflowType.NAMESPACE_PROVISIONING: {
                "validate-namespace": self._validate_namespace,
                "create-namespace": self._create_namespace,
                "apply-limit-range": self._apply_limit_range,
                "apply-network-policy": self._apply_network_policy,
                "verify-resources": self._verify_namespace,
            },
            WorkflowType.NAMESPACE_UPDATE: {
                "validate-updates": self._validate_updates,
                "update-limit-range": self._update_limit_range,
                "update-annotations": self._update_annotations,
                "verify-changes": self._verify_namespace,
            },
            WorkflowType.NAMESPACE_DELETION: {
                "validate-deletion": self._validate_namespace_deletion,
                "cleanup-resources": self._cleanup_namespace_resources,
                "delete-namespace": self._delete_namespace,
                "verify-deletion": self._verify_namespace_deletion,
            },
        }

    def supports(self, workflow_type: WorkflowType) -> bool:
        return workflow_type in self._handlers

    def plan(self, workflow: Workflow) -> Tuple[str, ...]:
        plan = DIRECT_PLANS[workflow.type]
        if workflow.type == WorkflowType.NAMESPACE_PROVISIONING:
            return namespace_plan(plan, is_network_isolated(workflow.parameters))
        return plan

    @property
    def infra_namespace(self) -> str:
        return self.config.infrastructure_namespace

    # ------------------------------------------------------------------
    # Sequencer
    async def run(self, workflow_id: str, token: CancellationToken) -> None:
        workflow = await self.registry.get(workflow_id)
        handlers = self._handlers[workflow.type]
        context = StepContext(workflow=workflow, params=self.params_for(workflow), token=token)
        mode = " (dry run)" if workflow.dry_run else ""
        self.log(workflow_id, f"Starting {workflow.type.value} for {workflow.subject}{mode}")

        for step in await self.registry.steps(workflow_id):
            try:
                token.raise_if_cancelled()
                await self.registry.start_step(workflow_id, step.id)
                self.log(workflow_id, f"Starting step: {step.name}")
                skipped = await handlers[step.name](context)
                token.raise_if_cancelled()
                await self.registry.finish_step(
                    workflow_id, step.id, StepStatus.SUCCEEDED, skipped=skipped
                )
                self.log(workflow_id, f"Step completed: {step.name}")
            except WorkflowAbortedError as e:
                self.log(workflow_id, f"Stopping before {step.name}: {e}", LogLevel.WARNING)
                return
            except InvalidTransitionError as e:
                # The workflow went terminal underneath us, usually an abort.
                logger.info(f"Workflow {workflow_id} stopped at {step.name}: {e}")
                return
            except Exception as e:
                await self._fail_step(workflow_id, step, e)
                return

        await self.complete_workflow(workflow_id)

    async def _fail_step(self, workflow_id: str, step: Step, error: Exception) -> None:
        message = str(error) or type(error).__name__
        self.log(workflow_id, f"Step failed: {step.name}: {message}", LogLevel.ERROR)
        try:
            await self.registry.finish_step(
                workflow_id, step.id, StepStatus.FAILED, error=message
            )
        except InvalidTransitionError:
            return
        await self.fail_workflow(workflow_id, f"Step {step.name} failed: {message}")

    async def _wait_for(
        self,
        context: StepContext,
        description: str,
        check: Callable[[], Awaitable[bool]],
    ) -> None:
        """Poll ``check`` until it passes or ``ready_timeout`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ready_timeout
        while True:
            context.token.raise_if_cancelled()
            if await check():
                return
            if loop.time() >= deadline:
                raise TimeoutError(
                    f"Timed out after {self.config.ready_timeout:.0f}s waiting for {description}"
                )
            self.log(context.workflow.id, f"Waiting for {description}")
            await asyncio.sleep(self.config.ready_poll_interval)

    async def _wait_until_gone(
        self, context: StepContext, ref: ResourceRef, name: str, namespace: str | None = None
    ) -> bool:
        workflow = context.workflow
        if workflow.dry_run:
            self.log(workflow.id, f"[dry-run] Would verify {ref.kind}: {name} is deleted")
            return True

        async def gone() -> bool:
            try:
                await self.kube.get(ref, name, namespace)
            except KubeApiError as e:
                if e.is_not_found:
                    return True
                raise
            return False

        await self._wait_for(context, f"{ref.kind} {name} to be deleted", gone)
        self.log(workflow.id, f"Confirmed {ref.kind}: {name} is deleted")
        return False

    # ------------------------------------------------------------------
    # Cluster provisioning
    async def _validate_cluster(self, context: StepContext) -> bool:
        params: ClusterProvisioningParams = context.params  # type: ignore[assignment]
        pool = get_node_pool_config(params.node_pool_type)
        self.log(
            context.workflow.id,
            f"Validated cluster {params.cluster_name} in {params.location} "
            f"with {params.node_pool_type} nodes ({pool.primary_vm_size})",
        )
        return False

    async def _create_resource_group(self, context: StepContext) -> bool:
        params: ClusterProvisioningParams = context.params  # type: ignore[assignment]
        manifest = manifests.resource_group_manifest(
            params.cluster_name, params.location, self.infra_namespace
        )
        return await self.create_resource(
            context.workflow, context.token, RESOURCE_GROUP, manifest, self.infra_namespace
        )

    async def _create_managed_cluster(self, context: StepContext) -> bool:
        params: ClusterProvisioningParams = context.params  # type: ignore[assignment]
        advanced = params.advanced_config
        manifest = manifests.managed_cluster_manifest(
            cluster_name=params.cluster_name,
            location=params.location,
            namespace=self.infra_namespace,
            node_pool_type=params.node_pool_type,
            node_pool=get_node_pool_config(params.node_pool_type),
            kubernetes_version=advanced.kubernetes_version,
            max_nodes=advanced.max_nodes,
            enable_spot=advanced.enable_spot,
            enable_nap=params.enable_nap,
        )
        return await self.create_resource(
            context.workflow, context.token, MANAGED_CLUSTER, manifest, self.infra_namespace
        )

    async def _wait_for_cluster_ready(self, context: StepContext) -> bool:
        params: ClusterProvisioningParams = context.params  # type: ignore[assignment]
        workflow = context.workflow
        if workflow.dry_run:
            self.log(
                workflow.id,
                f"[dry-run] Would wait for ManagedCluster: {params.cluster_name} to become Ready",
            )
            return True

        async def ready() -> bool:
            cluster = await self.kube.get(
                MANAGED_CLUSTER, params.cluster_name, self.infra_namespace
            )
            is_ready, message = manifests.is_ready(cluster)
            if not is_ready and message:
                logger.debug(f"ManagedCluster {params.cluster_name} not ready: {message}")
            return is_ready

        await self._wait_for(context, f"ManagedCluster {params.cluster_name} to become Ready", ready)
        self.log(workflow.id, f"ManagedCluster: {params.cluster_name} is Ready")
        return False

    async def _configure_gitops(self, context: StepContext) -> bool:
        params: ClusterProvisioningParams = context.params  # type: ignore[assignment]
        gitops = self.config.gitops
        if not gitops.repository_url:
            self.log(
                context.workflow.id,
                "No GitOps repository configured, skipping Flux setup",
            )
            return context.workflow.dry_run

        name = params.cluster_name
        source = manifests.git_repository_manifest(
            name, gitops.namespace, gitops.repository_url, gitops.branch
        )
        kustomization = manifests.kustomization_manifest(
            name, gitops.namespace, name, gitops.path_template.format(cluster_name=name)
        )
        skipped = await self.create_resource(
            context.workflow, context.token, GIT_REPOSITORY, source, gitops.namespace
        )
        await self.create_resource(
            context.workflow, context.token, KUSTOMIZATION, kustomization, gitops.namespace
        )
        return skipped

    # ------------------------------------------------------------------
    # Cluster deletion
    async def _validate_cluster_deletion(self, context: StepContext) -> bool:
        params: ClusterDeletionParams = context.params  # type: ignore[assignment]
        mode = "forced" if params.force else "graceful"
        self.log(context.workflow.id, f"Validated {mode} deletion of cluster {params.cluster_name}")
        return False

    async def _delete_managed_cluster(self, context: StepContext) -> bool:
        params: ClusterDeletionParams = context.params  # type: ignore[assignment]
        return await self.delete_resource(
            context.workflow, context.token, MANAGED_CLUSTER, params.cluster_name, self.infra_namespace
        )

    async def _delete_resource_group(self, context: StepContext) -> bool:
        params: ClusterDeletionParams = context.params  # type: ignore[assignment]
        return await self.delete_resource(
            context.workflow,
            context.token,
            RESOURCE_GROUP,
            manifests.resource_group_name(params.cluster_name),
            self.infra_namespace,
        )

    async def _verify_cluster_deletion(self, context: StepContext) -> bool:
        params: ClusterDeletionParams = context.params  # type: ignore[assignment]
        return await self._wait_until_gone(
            context, MANAGED_CLUSTER, params.cluster_name, self.infra_namespace
        )

    # ------------------------------------------------------------------
    # Namespaces
    async def _validate_namespace(self, context: StepContext) -> bool:
        params: NamespaceProvisioningParams = context.params  # type: ignore[assignment]
        limits = params.resource_limits
        isolation = "isolated" if params.network_isolated else "open"
        self.log(
            context.workflow.id,
            f"Validated namespace {params.namespace_name}: cpu {limits.cpu.request}/{limits.cpu.limit}, "
            f"memory {limits.memory.request}/{limits.memory.limit}, network {isolation}",
        )
        return False

    async def _create_namespace(self, context: StepContext) -> bool:
        params: NamespaceProvisioningParams = context.params  # type: ignore[assignment]
        manifest = manifests.namespace_manifest(params.namespace_name, params.description)
        return await self.create_resource(context.workflow, context.token, NAMESPACE, manifest)

    async def _apply_limit_range(self, context: StepContext) -> bool:
        params: NamespaceProvisioningParams = context.params  # type: ignore[assignment]
        manifest = manifests.limit_range_manifest(
            params.namespace_name, params.resource_limits.model_dump()
        )
        return await self.create_resource(
            context.workflow, context.token, LIMIT_RANGE, manifest, params.namespace_name
        )

    async def _apply_network_policy(self, context: StepContext) -> bool:
        params: NamespaceProvisioningParams = context.params  # type: ignore[assignment]
        manifest = manifests.network_policy_manifest(params.namespace_name)
        return await self.create_resource(
            context.workflow, context.token, NETWORK_POLICY, manifest, params.namespace_name
        )

    async def _verify_namespace(self, context: StepContext) -> bool:
        workflow = context.workflow
        name = context.params.namespace_name  # type: ignore[attr-defined]
        if workflow.dry_run:
            self.log(workflow.id, f"[dry-run] Would verify Namespace: {name}")
            return True
        context.token.raise_if_cancelled()
        namespace = await self.kube.get(NAMESPACE, name)
        phase = namespace.get("status", {}).get("phase", "Unknown")
        self.log(workflow.id, f"Namespace {name} is {phase}")
        return False

    async def _validate_updates(self, context: StepContext) -> bool:
        params: NamespaceUpdateParams = context.params  # type: ignore[assignment]
        changes = []
        if params.resource_limits is not None:
            changes.append("resource limits")
        if params.annotations:
            changes.append(f"{len(params.annotations)} annotation(s)")
        self.log(
            context.workflow.id,
            f"Validated update of namespace {params.namespace_name}: {', '.join(changes)}",
        )
        return False

    async def _update_limit_range(self, context: StepContext) -> bool:
        params: NamespaceUpdateParams = context.params  # type: ignore[assignment]
        workflow = context.workflow
        if params.resource_limits is None:
            self.log(workflow.id, "No resource limit changes requested")
            return False
        manifest = manifests.limit_range_manifest(
            params.namespace_name, params.resource_limits.model_dump()
        )
        if workflow.dry_run:
            self.log_manifest(workflow.id, "patch", LIMIT_RANGE, manifest)
            return True
        context.token.raise_if_cancelled()
        try:
            await self.kube.patch(
                LIMIT_RANGE, manifests.LIMIT_RANGE_NAME, manifest, params.namespace_name
            )
        except KubeApiError as e:
            if not e.is_not_found:
                raise
            self.log(workflow.id, "LimitRange missing, creating it", LogLevel.WARNING)
            return await self.create_resource(
                workflow, context.token, LIMIT_RANGE, manifest, params.namespace_name
            )
        self.log(workflow.id, f"Updated LimitRange: {manifests.LIMIT_RANGE_NAME}")
        return False

    async def _update_annotations(self, context: StepContext) -> bool:
        params: NamespaceUpdateParams = context.params  # type: ignore[assignment]
        workflow = context.workflow
        if not params.annotations:
            self.log(workflow.id, "No annotation changes requested")
            return False
        body = {"metadata": {"annotations": dict(params.annotations)}}
        if workflow.dry_run:
            self.log_manifest(
                workflow.id, "patch", NAMESPACE, {"metadata": {"name": params.namespace_name}, **body}
            )
            return True
        context.token.raise_if_cancelled()
        await self.kube.patch(NAMESPACE, params.namespace_name, body)
        self.log(workflow.id, f"Updated annotations on Namespace: {params.namespace_name}")
        return False

    async def _validate_namespace_deletion(self, context: StepContext) -> bool:
        params: NamespaceDeletionParams = context.params  # type: ignore[assignment]
        mode = "forced" if params.force else "graceful"
        self.log(context.workflow.id, f"Validated {mode} deletion of namespace {params.namespace_name}")
        return False

    async def _cleanup_namespace_resources(self, context: StepContext) -> bool:
        params: NamespaceDeletionParams = context.params  # type: ignore[assignment]
        skipped = await self.delete_resource(
            context.workflow,
            context.token,
            NETWORK_POLICY,
            manifests.NETWORK_POLICY_NAME,
            params.namespace_name,
        )
        await self.delete_resource(
            context.workflow,
            context.token,
            LIMIT_RANGE,
            manifests.LIMIT_RANGE_NAME,
            params.namespace_name,
        )
        return skipped

    async def _delete_namespace(self, context: StepContext) -> bool:
        params: NamespaceDeletionParams = context.params  # type: ignore[assignment]
        return await self.delete_resource(
            context.workflow, context.token, NAMESPACE, params.namespace_name
        )

    async def _verify_namespace_deletion(self, context: StepContext) -> bool:
        params: NamespaceDeletionParams = context.params  # type: ignore[assignment]
        return await self._wait_until_gone(context, NAMESPACE, params.namespace_name)
