"""Workflow registry: the single owner of workflow and step records."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Set

from pydantic import BaseModel

from .contracts import (
    LogEntry,
    LogLevel,
    Step,
    StepStatus,
    Workflow,
    WorkflowEvent,
    WorkflowStatus,
    utcnow,
)
from .errors import InvalidTransitionError, WorkflowNotFoundError
from .events import EventPublisher
from .logsink import LogSink
from .persistence import WorkflowStore

logger = logging.getLogger(__name__)


class StepUpdate(BaseModel):
    """Observed state of a step reported by a remote engine."""

    status: StepStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None


class WorkflowRegistry:
    """Serialise reads and writes of workflow state.

    All mutations of a workflow and its steps happen while holding that
    workflow's lock, so a read-modify-write never interleaves with another
    one for the same workflow. Once a workflow is terminal its steps are
    frozen.
    """

    def __init__(
        self,
        store: WorkflowStore,
        log_sink: LogSink | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.store = store
        self.logs = log_sink or LogSink()
        self._publisher = publisher
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_users: Dict[str, int] = defaultdict(int)
        # Terminal or unknown workflows; their locks are dropped once unused.
        self._finished: Set[str] = set()

    # ------------------------------------------------------------------
    # Reads
    async def find(self, workflow_id: str) -> Workflow | None:
        return await self.store.get_workflow(workflow_id)

    async def get(self, workflow_id: str) -> Workflow:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list(
        self, status: Optional[WorkflowStatus] = None, limit: Optional[int] = None
    ) -> List[Workflow]:
        return await self.store.list_workflows(status=status, limit=limit)

    async def steps(self, workflow_id: str) -> List[Step]:
        return await self.store.get_steps(workflow_id)

    async def remote_tracked(self) -> List[Workflow]:
        return await self.store.list_remote_tracked()

    def read_logs(self, workflow_id: str) -> List[LogEntry]:
        return self.logs.read(workflow_id)

    def log(
        self, workflow_id: str, message: str, level: LogLevel | str = LogLevel.INFO
    ) -> None:
        self.logs.append(workflow_id, message, level)

    # ------------------------------------------------------------------
    # Workflow mutations
    async def create(self, workflow: Workflow, steps: List[Step]) -> Workflow:
        async with self._guard(workflow.id):
            await self.store.create_workflow(workflow, steps)
        await self._publish(workflow.id, "workflow", workflow.status.value)
        return workflow

    async def set_status(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        *,
        error: Optional[str] = None,
        end_time: Optional[datetime] = None,
    ) -> Optional[Workflow]:
        """Transition a workflow; returns ``None`` when nothing changed."""
        async with self._guard(workflow_id):
            workflow = await self._load(workflow_id)
            if workflow.status == status:
                return None
            if workflow.status == WorkflowStatus.FAILED:
                raise InvalidTransitionError(
                    f"Workflow {workflow_id} failed; only a retry can restart it"
                )
            if status.is_terminal and end_time is not None:
                workflow.end_time = end_time
            workflow.transition_to(status)
            self._track(workflow)
            if error is not None:
                workflow.error = error
            await self.store.save_workflow(workflow)
        await self._publish(workflow_id, "workflow", status.value, message=error)
        return workflow

    async def begin_retry(
        self, workflow_id: str, remote_ref: Optional[str], steps: List[Step]
    ) -> Workflow:
        """Move a failed workflow back to running under a fresh step list."""
        async with self._guard(workflow_id):
            workflow = await self._load(workflow_id)
            if workflow.status != WorkflowStatus.FAILED:
                raise InvalidTransitionError(
                    f"Only failed workflows can be retried; {workflow_id} is {workflow.status.value}"
                )
            workflow.transition_to(WorkflowStatus.RUNNING)
            self._track(workflow)
            workflow.retry_count += 1
            workflow.start_time = utcnow()
            workflow.end_time = None
            workflow.error = None
            workflow.remote_ref = remote_ref
            await self.store.replace_steps(workflow_id, steps)
            await self.store.save_workflow(workflow)
        await self._publish(workflow_id, "workflow", workflow.status.value)
        return workflow

    async def abort(self, workflow_id: str, reason: str) -> Workflow:
        """Mark a workflow aborted, failing any step still running."""
        async with self._guard(workflow_id):
            workflow = await self._load(workflow_id)
            workflow.transition_to(WorkflowStatus.ABORTED)
            self._track(workflow)
            workflow.abort_reason = reason
            for step in await self.store.get_steps(workflow_id):
                if step.status == StepStatus.RUNNING:
                    step.status = StepStatus.FAILED
                    step.end_time = utcnow()
                    step.error = f"Workflow aborted: {reason}"
                    await self.store.save_step(workflow_id, step)
            await self.store.save_workflow(workflow)
        await self._publish(workflow_id, "workflow", workflow.status.value, message=reason)
        return workflow

    async def set_remote_ref(self, workflow_id: str, remote_ref: Optional[str]) -> None:
        async with self._guard(workflow_id):
            workflow = await self._load(workflow_id)
            workflow.remote_ref = remote_ref
            await self.store.save_workflow(workflow)

    # ------------------------------------------------------------------
    # Step mutations
    async def start_step(self, workflow_id: str, step_id: str) -> Step:
        """Move a pending step to running.

        Raises:
            InvalidTransitionError: If the workflow is terminal or an earlier
                step has not finished.
        """
        async with self._guard(workflow_id):
            workflow = await self._load(workflow_id)
            self._ensure_mutable(workflow)
            steps = await self.store.get_steps(workflow_id)
            index = self._index_of(steps, step_id)
            for previous in steps[:index]:
                if not previous.status.is_terminal:
                    raise InvalidTransitionError(
                        f"Step {steps[index].name} cannot start before {previous.name} finishes"
                    )
            step = steps[index]
            step.status = StepStatus.RUNNING
            step.start_time = utcnow()
            await self.store.save_step(workflow_id, step)
        await self._publish(workflow_id, "step", step.status.value, step_name=step.name)
        return step

    async def finish_step(
        self,
        workflow_id: str,
        step_id: str,
        status: StepStatus,
        *,
        error: Optional[str] = None,
        skipped: bool = False,
    ) -> Step:
        async with self._guard(workflow_id):
            workflow = await self._load(workflow_id)
            self._ensure_mutable(workflow)
            steps = await self.store.get_steps(workflow_id)
            step = steps[self._index_of(steps, step_id)]
            step.status = status
            step.end_time = utcnow()
            step.error = error
            step.skipped = skipped
            await self.store.save_step(workflow_id, step)
        await self._publish(
            workflow_id, "step", step.status.value, step_name=step.name, message=error
        )
        return step

    async def apply_step_updates(
        self, workflow_id: str, updates: Dict[str, StepUpdate]
    ) -> List[str]:
        """Apply remotely observed step states keyed by step name.

        Returns the names of steps that changed. Terminal workflows are left
        untouched.
        """
        changed: List[Step] = []
        async with self._guard(workflow_id):
            workflow = await self._load(workflow_id)
            if workflow.is_terminal:
                return []
            for step in await self.store.get_steps(workflow_id):
                update = updates.get(step.name)
                if update is None or update.status == step.status:
                    continue
                step.status = update.status
                if update.start_time is not None:
                    step.start_time = update.start_time
                if update.status.is_terminal:
                    step.end_time = update.end_time or utcnow()
                    step.start_time = step.start_time or step.end_time
                if update.error is not None:
                    step.error = update.error
                await self.store.save_step(workflow_id, step)
                changed.append(step)
        for step in changed:
            await self._publish(workflow_id, "step", step.status.value, step_name=step.name)
        return [step.name for step in changed]

    @asynccontextmanager
    async def _guard(self, workflow_id: str) -> AsyncIterator[None]:
        lock = self._locks[workflow_id]
        self._lock_users[workflow_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workflow_id] -= 1
            if not self._lock_users[workflow_id]:
                del self._lock_users[workflow_id]
                if workflow_id in self._finished:
                    self._finished.discard(workflow_id)
                    del self._locks[workflow_id]

    async def _load(self, workflow_id: str) -> Workflow:
        try:
            workflow = await self.get(workflow_id)
        except WorkflowNotFoundError:
            self._finished.add(workflow_id)
            raise
        self._track(workflow)
        return workflow

    def _track(self, workflow: Workflow) -> None:
        if workflow.is_terminal:
            self._finished.add(workflow.id)
        else:
            self._finished.discard(workflow.id)

    # ------------------------------------------------------------------
    @staticmethod
    def _ensure_mutable(workflow: Workflow) -> None:
        if workflow.is_terminal:
            raise InvalidTransitionError(
                f"Workflow {workflow.id} is {workflow.status.value}; its steps are final"
            )

    @staticmethod
    def _index_of(steps: List[Step], step_id: str) -> int:
        for index, step in enumerate(steps):
            if step.id == step_id:
                return index
        raise KeyError(f"Unknown step id: {step_id}")

    async def _publish(
        self,
        workflow_id: str,
        kind: str,
        status: str,
        step_name: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        if self._publisher is None:
            return
        event = WorkflowEvent(
            workflow_id=workflow_id,
            kind=kind,
            status=status,
            step_name=step_name,
            message=message,
        )
        try:
            await self._publisher.publish(event)
        except Exception as e:
            logger.warning(f"Failed to publish {kind} event for workflow {workflow_id}: {e}")
