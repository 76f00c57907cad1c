"""Publisher factory for workflow status events."""

from __future__ import annotations

import os
from typing import Optional

from ..config import IdpFlowConfig, load_config
from .base import EventPublisher
from .inmemory import InMemoryEventPublisher


def get_publisher(
    backend: Optional[str] = None, config: Optional[IdpFlowConfig] = None
) -> EventPublisher:
    """Factory function to get the configured event publisher."""

    config = config or load_config()
    backend = (backend or os.getenv("IDPFLOW_EVENTS") or config.events.backend).lower()

    if backend == "inmemory":
        return InMemoryEventPublisher(history=config.events.history)
    elif backend == "redis":
        from .redis import RedisEventPublisher

        redis_conf = config.events.redis
        return RedisEventPublisher(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel=redis_conf.channel,
        )
    else:
        raise ValueError(f"Unsupported events backend: {backend}")


__all__ = ["EventPublisher", "InMemoryEventPublisher", "get_publisher"]
