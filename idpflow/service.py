"""High level entry point used by the CLI and any front door."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .cancellation import CancellationToken
from .catalog import (
    LocationInfo,
    NodePoolRecommendation,
    available_locations,
    node_pool_recommendations,
)
from .config import IdpFlowConfig, load_config
from .contracts import (
    LogEntry,
    LogLevel,
    Step,
    Workflow,
    WorkflowDetails,
    WorkflowStatus,
    WorkflowType,
)
from .engines import DirectEngine, ProvisioningEngine, get_engine
from .errors import InvalidTransitionError, ParameterValidationError
from .events import EventPublisher, get_publisher
from .inventory import (
    ClusterDetails,
    ClusterRecord,
    Inventory,
    NamespaceRecord,
    NamespaceStatus,
    ResourceStatus,
)
from .kube import KubeApi, KubeClient
from .logsink import LogSink
from .mirror import SyncReport, WorkflowMirror
from .nodepools import NODE_POOL_CONFIGURATIONS, NodePoolConfig
from .params import PARAMS_MODELS, validate_params
from .persistence import WorkflowStore, get_store
from .registry import WorkflowRegistry
from .steps import build_steps

logger = logging.getLogger(__name__)

_SUBJECT_KEYS = {
    WorkflowType.CLUSTER_PROVISIONING: ("cluster_name", "clusterName"),
    WorkflowType.CLUSTER_DELETION: ("cluster_name", "clusterName"),
    WorkflowType.NAMESPACE_PROVISIONING: ("namespace_name", "namespaceName"),
    WorkflowType.NAMESPACE_UPDATE: ("namespace_name", "namespaceName"),
    WorkflowType.NAMESPACE_DELETION: ("namespace_name", "namespaceName"),
}


def _subject_of(workflow_type: WorkflowType, params: Dict[str, Any]) -> str:
    for key in _SUBJECT_KEYS[workflow_type]:
        value = params.get(key)
        if value:
            return str(value)
    return "unknown"


class WorkflowService:
    """Start, inspect, abort and retry provisioning workflows.

    Creation calls return as soon as the workflow is registered; the chosen
    engine then carries it forward in a background task. Workflow types the
    configured engine cannot handle run on the fallback engine.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        engine: ProvisioningEngine,
        fallback: ProvisioningEngine | None = None,
        mirror: WorkflowMirror | None = None,
        kube: KubeApi | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.mirror = mirror
        self._kube = kube
        self._publisher = publisher
        self._engines: Dict[str, ProvisioningEngine] = {engine.name: engine}
        if fallback is not None:
            self._engines.setdefault(fallback.name, fallback)
        self.inventory = Inventory(registry, engine.kube, engine.config.infrastructure_namespace)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    @classmethod
    def from_config(
        cls,
        config: IdpFlowConfig | None = None,
        *,
        kube: KubeApi | None = None,
        store: WorkflowStore | None = None,
        publisher: EventPublisher | None = None,
    ) -> "WorkflowService":
        """Wire a service from configuration, with optional overrides for tests."""
        config = config or load_config()
        store = store or get_store(config=config)
        publisher = publisher or get_publisher(config=config)
        registry = WorkflowRegistry(
            store, LogSink(config.max_log_entries), publisher=publisher
        )
        kube = kube or KubeClient(config.kube)
        engine = get_engine(config, registry, kube)
        fallback = None if isinstance(engine, DirectEngine) else DirectEngine(registry, kube, config)
        mirror = WorkflowMirror.from_config(registry, kube, config)
        logger.info(f"Workflow service using the {engine.name} engine")
        return cls(registry, engine, fallback, mirror=mirror, kube=kube, publisher=publisher)

    # ------------------------------------------------------------------
    # Starting workflows
    async def start_cluster_provisioning(self, params: Dict[str, Any]) -> Workflow:
        return await self._start(WorkflowType.CLUSTER_PROVISIONING, params)

    async def start_cluster_deletion(self, params: Dict[str, Any]) -> Workflow:
        return await self._start(WorkflowType.CLUSTER_DELETION, params)

    async def start_namespace_provisioning(self, params: Dict[str, Any]) -> Workflow:
        return await self._start(WorkflowType.NAMESPACE_PROVISIONING, params)

    async def start_namespace_update(self, params: Dict[str, Any]) -> Workflow:
        return await self._start(WorkflowType.NAMESPACE_UPDATE, params)

    async def start_namespace_deletion(self, params: Dict[str, Any]) -> Workflow:
        return await self._start(WorkflowType.NAMESPACE_DELETION, params)

    def engine_for(self, workflow_type: WorkflowType) -> ProvisioningEngine:
        if self.engine.supports(workflow_type):
            return self.engine
        for engine in self._engines.values():
            if engine.supports(workflow_type):
                return engine
        raise ValueError(f"No engine can run {workflow_type.value} workflows")

    def _engine_of(self, workflow: Workflow) -> ProvisioningEngine:
        return self._engines.get(workflow.engine) or self.engine_for(workflow.type)

    async def _start(self, workflow_type: WorkflowType, raw: Optional[Dict[str, Any]]) -> Workflow:
        raw = dict(raw or {})
        engine = self.engine_for(workflow_type)
        try:
            params = validate_params(PARAMS_MODELS[workflow_type], raw)
        except ParameterValidationError as e:
            return await self._reject(workflow_type, engine, raw, e)

        parameters = params.to_parameters()
        subject = _subject_of(workflow_type, parameters)
        workflow = Workflow(
            name=f"{workflow_type.value}-{subject}",
            type=workflow_type,
            engine=engine.name,
            subject=subject,
            parameters=parameters,
        )
        await self.registry.create(workflow, build_steps(engine.plan(workflow)))
        self.registry.log(workflow.id, f"Workflow created: {workflow.name} ({engine.name} engine)")
        workflow = await self.registry.set_status(workflow.id, WorkflowStatus.RUNNING) or workflow
        self._launch(workflow.id, engine)
        return workflow

    async def _reject(
        self,
        workflow_type: WorkflowType,
        engine: ProvisioningEngine,
        raw: Dict[str, Any],
        error: ParameterValidationError,
    ) -> Workflow:
        """Register a workflow that failed validation without running any step."""
        subject = _subject_of(workflow_type, raw)
        workflow = Workflow(
            name=f"{workflow_type.value}-{subject}",
            type=workflow_type,
            engine=engine.name,
            subject=subject,
            parameters=raw,
        )
        await self.registry.create(workflow, build_steps(engine.plan(workflow)))
        self.registry.log(workflow.id, f"Validation failed: {error}", LogLevel.ERROR)
        failed = await self.registry.set_status(
            workflow.id, WorkflowStatus.FAILED, error=str(error)
        )
        return failed or workflow

    def _launch(self, workflow_id: str, engine: ProvisioningEngine) -> None:
        token = CancellationToken()
        self._tokens[workflow_id] = token
        task = asyncio.create_task(self._execute(workflow_id, engine, token))
        self._tasks[workflow_id] = task

        def _done(finished: asyncio.Task) -> None:
            if self._tasks.get(workflow_id) is finished:
                self._tasks.pop(workflow_id, None)
                self._tokens.pop(workflow_id, None)

        task.add_done_callback(_done)

    async def _execute(
        self, workflow_id: str, engine: ProvisioningEngine, token: CancellationToken
    ) -> None:
        try:
            await engine.run(workflow_id, token)
        except Exception as e:
            logger.exception(f"Engine {engine.name} crashed on workflow {workflow_id}")
            await engine.fail_workflow(workflow_id, f"Workflow execution failed: {e}")

    # ------------------------------------------------------------------
    # Queries
    async def get_workflow(self, workflow_id: str) -> Workflow:
        return await self.registry.get(workflow_id)

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None, limit: Optional[int] = None
    ) -> List[Workflow]:
        return await self.registry.list(status=status, limit=limit)

    async def get_steps(self, workflow_id: str) -> List[Step]:
        await self.registry.get(workflow_id)
        return await self.registry.steps(workflow_id)

    async def get_logs(self, workflow_id: str) -> List[LogEntry]:
        await self.registry.get(workflow_id)
        return self.registry.read_logs(workflow_id)

    async def get_details(self, workflow_id: str) -> WorkflowDetails:
        workflow = await self.registry.get(workflow_id)
        return WorkflowDetails(
            workflow=workflow,
            steps=await self.registry.steps(workflow_id),
            logs=self.registry.read_logs(workflow_id),
        )

    def node_pool_configurations(self) -> Dict[str, NodePoolConfig]:
        return dict(NODE_POOL_CONFIGURATIONS)

    def node_pool_recommendations(self) -> List[NodePoolRecommendation]:
        return node_pool_recommendations()

    def available_locations(self) -> List[LocationInfo]:
        return available_locations()

    # ------------------------------------------------------------------
    # Clusters and namespaces
    async def list_clusters(self) -> List[ClusterRecord]:
        return await self.inventory.list_clusters()

    async def get_cluster(self, name: str) -> ClusterDetails:
        """A cluster record with its latest workflow and backing resources.

        Raises:
            RecordNotFoundError: If no accepted request ever named the cluster,
                or it was deleted since.
        """
        return await self.inventory.get_cluster_details(name)

    async def get_cluster_resources(self, name: str) -> List[ResourceStatus]:
        return await self.inventory.get_cluster_resources(name)

    async def list_namespaces(self) -> List[NamespaceRecord]:
        return await self.inventory.list_namespaces()

    async def get_namespace(self, name: str) -> NamespaceRecord:
        return await self.inventory.get_namespace(name)

    async def get_namespace_status(self, name: str) -> NamespaceStatus:
        return await self.inventory.get_namespace_status(name)

    async def preview_namespace_manifests(self, name: str) -> Dict[str, Optional[Dict[str, Any]]]:
        return await self.inventory.preview_namespace_manifests(name)

    # ------------------------------------------------------------------
    # Control
    async def abort_workflow(self, workflow_id: str, reason: str = "Aborted by user") -> Workflow:
        """Stop a workflow and mark it aborted.

        The remote object, if any, is deleted first; a failed delete is logged
        and the workflow is aborted anyway.

        Raises:
            WorkflowNotFoundError: If the id is unknown.
            InvalidTransitionError: If the workflow already finished, including
                when it finished while its remote object was being deleted.
        """
        workflow = await self.registry.get(workflow_id)
        if workflow.is_terminal:
            raise InvalidTransitionError(
                f"Workflow {workflow_id} is already {workflow.status.value}"
            )
        token = self._tokens.get(workflow_id)
        if token is not None:
            token.cancel(reason)
        try:
            await self._engine_of(workflow).abort(workflow)
        except Exception as e:
            logger.error(f"Failed to release remote work for workflow {workflow_id}: {e}")
        try:
            workflow = await self.registry.abort(workflow_id, reason)
        except InvalidTransitionError:
            # The mirror can finish the workflow while the remote delete is in flight.
            current = await self.registry.get(workflow_id)
            message = (
                f"Workflow {workflow_id} finished as {current.status.value} "
                "before the abort was recorded"
            )
            if current.remote_ref:
                message += f"; remote workflow {current.remote_ref} was already deleted"
            self.registry.log(workflow_id, message, LogLevel.WARNING)
            raise InvalidTransitionError(message) from None
        self.registry.log(workflow_id, f"Workflow aborted: {reason}", LogLevel.WARNING)
        return workflow

    async def retry_workflow(self, workflow_id: str) -> Workflow:
        """Run a failed workflow again under the same id.

        Raises:
            WorkflowNotFoundError: If the id is unknown.
            InvalidTransitionError: If the workflow is not failed.
            ParameterValidationError: If its parameters never validated.
        """
        workflow = await self.registry.get(workflow_id)
        if workflow.status != WorkflowStatus.FAILED:
            raise InvalidTransitionError(
                f"Only failed workflows can be retried; {workflow_id} is {workflow.status.value}"
            )
        validate_params(PARAMS_MODELS[workflow.type], workflow.parameters)
        engine = self._engine_of(workflow)
        remote_ref = engine.prepare_retry(workflow)
        workflow = await self.registry.begin_retry(
            workflow_id, remote_ref, build_steps(engine.plan(workflow))
        )
        self.registry.log(workflow_id, f"Retrying workflow, attempt {workflow.retry_count + 1}")
        self._launch(workflow_id, engine)
        return workflow

    async def sync_remote(self) -> SyncReport:
        """Run one mirror pass over remotely executed workflows."""
        if self.mirror is None:
            return SyncReport()
        return await self.mirror.sync_once()

    async def wait_for(self, workflow_id: str, timeout: Optional[float] = None) -> Workflow:
        """Wait for the local execution task of a workflow, then return it."""
        task = self._tasks.get(workflow_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.registry.get(workflow_id)

    async def close(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        if self.mirror is not None:
            await self.mirror.stop()
        if isinstance(self._kube, KubeClient):
            await self._kube.aclose()
        if self._publisher is not None:
            await self._publisher.disconnect()
