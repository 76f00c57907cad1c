"""Provisioning engines."""

from __future__ import annotations

from ..config import IdpFlowConfig
from ..kube import KubeApi
from ..registry import WorkflowRegistry
from .argo import ArgoEngine
from .base import ProvisioningEngine
from .direct import DirectEngine

ENGINES = {
    DirectEngine.name: DirectEngine,
    ArgoEngine.name: ArgoEngine,
}


def get_engine(
    config: IdpFlowConfig, registry: WorkflowRegistry, kube: KubeApi
) -> ProvisioningEngine:
    """Instantiate the engine named by ``config.engine``."""
    try:
        engine_cls = ENGINES[config.engine]
    except KeyError:
        raise ValueError(f"Unsupported engine: {config.engine}") from None
    return engine_cls(registry, kube, config)


__all__ = ["ProvisioningEngine", "DirectEngine", "ArgoEngine", "get_engine"]
