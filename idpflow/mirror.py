"""Reflect the state of remote Argo workflows onto local records."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

from .config import IdpFlowConfig
from .contracts import LogLevel, StepStatus, Workflow, WorkflowStatus, utcnow
from .errors import KubeApiError
from .kube import KubeApi
from .kube.manifests import ARGO_WORKFLOW
from .registry import StepUpdate, WorkflowRegistry
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)


def map_phase(phase: Optional[str]) -> WorkflowStatus:
    """Translate an Argo workflow phase to a local workflow status."""
    if phase == "Succeeded":
        return WorkflowStatus.SUCCEEDED
    if phase in ("Failed", "Error"):
        return WorkflowStatus.FAILED
    return WorkflowStatus.RUNNING


def map_node_phase(phase: Optional[str]) -> Optional[StepStatus]:
    """Translate an Argo node phase; ``None`` leaves the step as it is."""
    if phase == "Succeeded":
        return StepStatus.SUCCEEDED
    if phase in ("Failed", "Error"):
        return StepStatus.FAILED
    if phase == "Running":
        return StepStatus.RUNNING
    return None


def parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _DATETIME.validate_python(value)
    except ValidationError:
        logger.debug(f"Ignoring unparseable timestamp {value!r}")
        return None


def step_updates(nodes: Dict[str, Dict[str, Any]]) -> Dict[str, StepUpdate]:
    """Build step updates from ``status.nodes``, keyed by template name."""
    updates: Dict[str, StepUpdate] = {}
    for node in nodes.values():
        template = node.get("templateName")
        if node.get("type") != "Pod" and not template:
            continue
        status = map_node_phase(node.get("phase"))
        if status is None:
            continue
        update = StepUpdate(
            status=status,
            start_time=parse_time(node.get("startedAt")),
            end_time=parse_time(node.get("finishedAt")) if status.is_terminal else None,
            error=node.get("message") if status == StepStatus.FAILED else None,
        )
        for key in (template, node.get("displayName")):
            if key:
                updates.setdefault(key, update)
    return updates


@dataclass
class SyncReport:
    """Outcome of one reconciliation pass."""

    checked: int = 0
    changed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class WorkflowMirror:
    """Poll remote workflows and reconcile local workflow and step state."""

    def __init__(
        self,
        registry: WorkflowRegistry,
        kube: KubeApi,
        namespace: str = "argo",
        interval: float = 5.0,
        max_concurrent_fetches: int = 10,
        max_backoff: float = 60.0,
    ) -> None:
        self.registry = registry
        self.kube = kube
        self.namespace = namespace
        self.interval = interval
        self.max_backoff = max_backoff
        self._max_concurrent = max_concurrent_fetches
        self._observed_versions: Dict[str, str] = {}
        self._failed_ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @classmethod
    def from_config(
        cls, registry: WorkflowRegistry, kube: KubeApi, config: IdpFlowConfig
    ) -> "WorkflowMirror":
        return cls(
            registry,
            kube,
            namespace=config.argo.namespace,
            interval=config.mirror.poll_interval,
            max_concurrent_fetches=config.mirror.max_concurrent_fetches,
            max_backoff=config.mirror.max_backoff,
        )

    # ------------------------------------------------------------------
    async def sync_once(self) -> SyncReport:
        """Reconcile every non-terminal workflow that has a remote reference."""
        report = SyncReport()
        workflows = await self.registry.remote_tracked()
        report.checked = len(workflows)
        tracked_refs = {w.remote_ref for w in workflows}
        for remote_ref in [r for r in self._observed_versions if r not in tracked_refs]:
            del self._observed_versions[remote_ref]
        if not workflows:
            return report

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def sync(workflow: Workflow) -> None:
            async with semaphore:
                try:
                    if await self._sync_workflow(workflow):
                        report.changed.append(workflow.id)
                except Exception as e:
                    logger.warning(
                        f"Failed to sync workflow {workflow.id} ({workflow.remote_ref}): {e}"
                    )
                    report.errors[workflow.id] = str(e)

        await asyncio.gather(*(sync(w) for w in workflows))
        return report

    async def _sync_workflow(self, workflow: Workflow) -> bool:
        remote_ref = workflow.remote_ref
        try:
            remote = await self.kube.get(ARGO_WORKFLOW, remote_ref, self.namespace)
        except KubeApiError as e:
            if e.is_not_found:
                return False
            raise

        version = remote.get("metadata", {}).get("resourceVersion")
        if version and self._observed_versions.get(remote_ref) == version:
            return False
        changed = await self.apply_remote_state(workflow.id, remote)
        if (await self.registry.get(workflow.id)).is_terminal:
            self._observed_versions.pop(remote_ref, None)
        elif version:
            self._observed_versions[remote_ref] = version
        return changed

    async def apply_remote_state(self, workflow_id: str, remote: Dict[str, Any]) -> bool:
        """Apply one remote workflow object; returns whether anything changed."""
        status = remote.get("status") or {}
        changed_steps = await self.registry.apply_step_updates(
            workflow_id, step_updates(status.get("nodes") or {})
        )
        for name in changed_steps:
            logger.debug(f"Workflow {workflow_id} step {name} updated from remote state")

        workflow = await self.registry.get(workflow_id)
        if workflow.is_terminal:
            return bool(changed_steps)

        phase = status.get("phase")
        mapped = map_phase(phase)
        if mapped == workflow.status:
            return bool(changed_steps)

        end_time = None
        error = None
        if mapped.is_terminal:
            end_time = parse_time(status.get("finishedAt")) or utcnow()
        if mapped == WorkflowStatus.FAILED:
            error = status.get("message") or "Workflow failed"

        await self.registry.set_status(workflow_id, mapped, error=error, end_time=end_time)
        level = LogLevel.ERROR if mapped == WorkflowStatus.FAILED else LogLevel.INFO
        detail = f": {error}" if error else ""
        self.registry.log(
            workflow_id,
            f"Argo Workflow {workflow.remote_ref} is {phase or 'Pending'}, workflow {mapped.value}{detail}",
            level,
        )
        return True

    # ------------------------------------------------------------------
    def next_delay(self) -> float:
        if not self._failed_ticks:
            return self.interval
        return min(self.interval + compute_backoff(self._failed_ticks), self.max_backoff)

    async def run(self) -> None:
        """Poll until :meth:`stop` is called."""
        logger.info(f"Mirroring Argo workflows in {self.namespace} every {self.interval}s")
        self._stopped.clear()
        while not self._stopped.is_set():
            try:
                report = await self.sync_once()
                failed = bool(report.errors)
            except Exception as e:
                logger.error(f"Workflow mirror tick failed: {e}")
                failed = True
            self._failed_ticks = self._failed_ticks + 1 if failed else 0
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is not None:
            await self._task
            self._task = None
