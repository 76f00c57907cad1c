"""Store abstraction for workflow and step records."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import Step, Workflow, WorkflowStatus


class WorkflowStore(Protocol):
    """Protocol for workflow state persistence backends.

    Writes are visible to subsequent reads from the same process. Callers
    that need read-modify-write atomicity go through
    :class:`idpflow.registry.WorkflowRegistry`, which serialises updates per
    workflow.
    """

    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        """Persist a new workflow together with its ordered steps."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Overwrite the stored workflow record."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve the workflow by id."""

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None, limit: Optional[int] = None
    ) -> list[Workflow]:
        """Return workflows in creation order, optionally filtered."""

    async def get_steps(self, workflow_id: str) -> list[Step]:
        """Return the ordered steps of a workflow."""

    async def save_step(self, workflow_id: str, step: Step) -> None:
        """Overwrite one step, matched by step id."""

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        """Replace the full step list of a workflow."""

    async def list_remote_tracked(self) -> list[Workflow]:
        """Return non-terminal workflows that reference a remote object."""
