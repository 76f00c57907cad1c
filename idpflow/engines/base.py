"""Common interface for the ways a workflow can be carried out."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import yaml

from ..cancellation import CancellationToken
from ..config import IdpFlowConfig
from ..contracts import LogLevel, StepStatus, Workflow, WorkflowStatus, WorkflowType
from ..errors import InvalidTransitionError, KubeApiError
from ..kube import KubeApi, ResourceRef
from ..params import PARAMS_MODELS, RequestParams
from ..registry import WorkflowRegistry

logger = logging.getLogger(__name__)


class ProvisioningEngine(ABC):
    """Strategy that turns a registered workflow into infrastructure changes."""

    name: str = "base"

    def __init__(
        self, registry: WorkflowRegistry, kube: KubeApi, config: IdpFlowConfig
    ) -> None:
        self.registry = registry
        self.kube = kube
        self.config = config

    @abstractmethod
    def supports(self, workflow_type: WorkflowType) -> bool:
        """Return whether this engine can run workflows of ``workflow_type``."""

    @abstractmethod
    def plan(self, workflow: Workflow) -> Tuple[str, ...]:
        """Ordered step names for ``workflow``."""

    @abstractmethod
    async def run(self, workflow_id: str, token: CancellationToken) -> None:
        """Carry the workflow forward until it is terminal or handed off."""

    async def abort(self, workflow: Workflow) -> None:
        """Release anything running outside the process for ``workflow``."""

    def prepare_retry(self, workflow: Workflow) -> Optional[str]:
        """Return the remote reference the next attempt should use."""
        return None

    # ------------------------------------------------------------------
    # Helpers shared by the engines
    @staticmethod
    def params_for(workflow: Workflow) -> RequestParams:
        return PARAMS_MODELS[workflow.type].model_validate(workflow.parameters)

    def log(
        self, workflow_id: str, message: str, level: LogLevel | str = LogLevel.INFO
    ) -> None:
        self.registry.log(workflow_id, message, level)

    def log_manifest(
        self, workflow_id: str, verb: str, ref: ResourceRef, manifest: Dict[str, Any]
    ) -> None:
        """Record the manifest a dry run would have submitted."""
        metadata = manifest.get("metadata", {})
        where = f" in {metadata['namespace']}" if metadata.get("namespace") else ""
        rendered = yaml.safe_dump(manifest, sort_keys=False, default_flow_style=False)
        self.log(
            workflow_id,
            f"[dry-run] Would {verb} {ref.kind}: {metadata.get('name')}{where}\n{rendered}",
        )

    async def create_resource(
        self,
        workflow: Workflow,
        token: CancellationToken,
        ref: ResourceRef,
        manifest: Dict[str, Any],
        namespace: Optional[str] = None,
    ) -> bool:
        """Submit ``manifest``; returns ``True`` when a dry run skipped it.

        An ``AlreadyExists`` conflict is logged as a warning and treated as
        success.
        """
        label = f"{ref.kind}: {manifest['metadata']['name']}"
        if workflow.dry_run:
            self.log_manifest(workflow.id, "create", ref, manifest)
            return True
        token.raise_if_cancelled()
        try:
            await self.kube.create(ref, manifest, namespace)
        except KubeApiError as e:
            if not e.is_conflict:
                raise
            self.log(workflow.id, f"{label} already exists, continuing", LogLevel.WARNING)
            return False
        token.raise_if_cancelled()
        self.log(workflow.id, f"Created {label}")
        return False

    async def delete_resource(
        self,
        workflow: Workflow,
        token: CancellationToken,
        ref: ResourceRef,
        name: str,
        namespace: Optional[str] = None,
    ) -> bool:
        """Delete an object; a missing object is logged as a warning."""
        label = f"{ref.kind}: {name}"
        if workflow.dry_run:
            where = f" in {namespace}" if namespace else ""
            self.log(workflow.id, f"[dry-run] Would delete {label}{where}")
            return True
        token.raise_if_cancelled()
        try:
            await self.kube.delete(ref, name, namespace)
        except KubeApiError as e:
            if not e.is_not_found:
                raise
            self.log(workflow.id, f"{label} not found, nothing to delete", LogLevel.WARNING)
            return False
        token.raise_if_cancelled()
        self.log(workflow.id, f"Deleted {label}")
        return False

    async def fail_workflow(self, workflow_id: str, message: str) -> None:
        """Record a failure unless the workflow already reached a terminal state."""
        self.log(workflow_id, message, LogLevel.ERROR)
        try:
            await self.registry.set_status(workflow_id, WorkflowStatus.FAILED, error=message)
        except InvalidTransitionError as e:
            logger.info(f"Not marking workflow {workflow_id} failed: {e}")

    async def complete_workflow(self, workflow_id: str) -> None:
        try:
            await self.registry.set_status(workflow_id, WorkflowStatus.SUCCEEDED)
        except InvalidTransitionError as e:
            logger.info(f"Not marking workflow {workflow_id} succeeded: {e}")
            return
        self.log(workflow_id, "Workflow completed successfully")

    async def skip_all_steps(self, workflow_id: str) -> None:
        """Mark every step of a dry run as succeeded without side effects."""
        for step in await self.registry.steps(workflow_id):
            await self.registry.start_step(workflow_id, step.id)
            self.log(workflow_id, f"[dry-run] Skipping step: {step.name}")
            await self.registry.finish_step(
                workflow_id, step.id, StepStatus.SUCCEEDED, skipped=True
            )
