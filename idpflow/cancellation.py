"""Cooperative cancellation for running workflows."""

from __future__ import annotations

from typing import Optional

from .errors import WorkflowAbortedError


class CancellationToken:
    """Flag checked by step handlers before each external call."""

    def __init__(self) -> None:
        self._reason: Optional[str] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise WorkflowAbortedError(self._reason or "Workflow aborted")
