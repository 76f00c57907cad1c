"""Core records tracked by idpflow: workflows, steps, log entries and events."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowType(str, Enum):
    CLUSTER_PROVISIONING = "cluster-provisioning"
    CLUSTER_DELETION = "cluster-deletion"
    NAMESPACE_PROVISIONING = "namespace-provisioning"
    NAMESPACE_UPDATE = "namespace-update"
    NAMESPACE_DELETION = "namespace-deletion"


class WorkflowStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED)


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.SUCCEEDED, WorkflowStatus.FAILED, WorkflowStatus.ABORTED}
)

# failed -> running is only reachable through an explicit retry.
ALLOWED_TRANSITIONS: Dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.CREATED: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.FAILED, WorkflowStatus.ABORTED}
    ),
    WorkflowStatus.RUNNING: TERMINAL_STATUSES,
    WorkflowStatus.FAILED: frozenset({WorkflowStatus.RUNNING}),
    WorkflowStatus.SUCCEEDED: frozenset(),
    WorkflowStatus.ABORTED: frozenset(),
}


class Step(BaseModel):
    """One ordered unit of work within a workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    skipped: bool = False


class Workflow(BaseModel):
    """A tracked provisioning, update or deletion operation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    type: WorkflowType
    status: WorkflowStatus = WorkflowStatus.CREATED
    engine: str = "direct"
    subject: str = ""
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    abort_reason: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    remote_ref: Optional[str] = None
    retry_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def dry_run(self) -> bool:
        return bool(self.parameters.get("dry_run", False))

    def transition_to(self, status: WorkflowStatus) -> bool:
        """Move to ``status``.

        Returns ``False`` when the workflow already has that status and
        raises :class:`InvalidTransitionError` for disallowed moves.
        """
        if status == self.status:
            return False
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Workflow {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status.is_terminal:
            self.end_time = self.end_time or utcnow()
        return True


class LogEntry(BaseModel):
    """A single human-readable progress message."""

    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str


class WorkflowEvent(BaseModel):
    """Status change notification pushed to subscribers."""

    workflow_id: str
    kind: str = "workflow"  # workflow or step
    status: str
    step_name: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowEvent":
        return cls.model_validate_json(data)


class WorkflowDetails(BaseModel):
    """Workflow together with its steps and logs."""

    workflow: Workflow
    steps: List[Step] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)
