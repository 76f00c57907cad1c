"""In-process event fan-out."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Deque, List, Optional

from ..contracts import WorkflowEvent
from .base import EventPublisher

DEFAULT_HISTORY = 1000


class InMemoryEventPublisher(EventPublisher):
    """Deliver events to subscribers within the same process.

    The most recent ``history`` events are kept in ``published``.
    """

    def __init__(self, history: int = DEFAULT_HISTORY) -> None:
        self._subscribers: List[asyncio.Queue[WorkflowEvent]] = []
        self.published: Deque[WorkflowEvent] = deque(maxlen=history)

    async def publish(self, event: WorkflowEvent) -> None:
        self.published.append(event)
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    async def subscribe(
        self, workflow_id: Optional[str] = None, lifespan: Optional[float] = None
    ) -> AsyncIterator[WorkflowEvent]:
        queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                if workflow_id is None or event.workflow_id == workflow_id:
                    yield event
        finally:
            self._subscribers.remove(queue)
