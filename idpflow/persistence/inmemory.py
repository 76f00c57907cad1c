"""In-memory implementation of the workflow store."""

from __future__ import annotations

from typing import Dict, List, Optional

from ..contracts import Step, Workflow, WorkflowStatus
from .store import WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._steps: Dict[str, List[Step]] = {}

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        self._steps[workflow.id] = [s.model_copy(deep=True) for s in steps]

    async def save_workflow(self, workflow: Workflow) -> None:
        if workflow.id in self._workflows:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None, limit: Optional[int] = None
    ) -> list[Workflow]:
        workflows = [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if status is None or wf.status == status
        ]
        return workflows[:limit] if limit is not None else workflows

    async def get_steps(self, workflow_id: str) -> list[Step]:
        return [s.model_copy(deep=True) for s in self._steps.get(workflow_id, [])]

    async def save_step(self, workflow_id: str, step: Step) -> None:
        steps = self._steps.get(workflow_id)
        if not steps:
            return
        for index, existing in enumerate(steps):
            if existing.id == step.id:
                steps[index] = step.model_copy(deep=True)
                break

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        if workflow_id in self._workflows:
            self._steps[workflow_id] = [s.model_copy(deep=True) for s in steps]

    async def list_remote_tracked(self) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if wf.remote_ref and not wf.is_terminal
        ]
