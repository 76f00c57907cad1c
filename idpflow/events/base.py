"""Base publisher interface for workflow status events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..contracts import WorkflowEvent


class EventPublisher(metaclass=abc.ABCMeta):
    """Abstract publisher for workflow and step status changes."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: WorkflowEvent) -> None:
        """Deliver an event to current subscribers."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, workflow_id: Optional[str] = None, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowEvent]:
        """Yield events, optionally only those of one workflow.

        Args:
            workflow_id: Only yield events for this workflow when given.
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError
