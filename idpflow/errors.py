"""Exception types raised by idpflow."""

from __future__ import annotations

from typing import Any, Optional


class IdpFlowError(Exception):
    """Base class for all idpflow errors."""


class ParameterValidationError(IdpFlowError):
    """Request parameters are missing or malformed."""

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.details = details or []


class WorkflowNotFoundError(IdpFlowError):
    """No workflow is registered under the given id."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class RecordNotFoundError(IdpFlowError):
    """No cluster or namespace with the given name is known."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} not found: {name}")
        self.kind = kind
        self.name = name


class InvalidTransitionError(IdpFlowError):
    """A workflow or step status change is not allowed."""


class WorkflowAbortedError(IdpFlowError):
    """Raised inside a running sequencer once its workflow was aborted."""


class KubeApiError(IdpFlowError):
    """Error response from the Kubernetes API server."""

    def __init__(self, status_code: int, reason: str = "", message: str = ""):
        self.status_code = status_code
        self.reason = reason
        self.message = message or reason or f"HTTP {status_code}"
        super().__init__(f"Kubernetes API error {status_code} ({reason}): {self.message}")

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404
