"""Node pool profiles mapping a workload type to VM sizing."""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

SYSTEM_POOL_VM_SIZE = "Standard_B2s"


class NodePoolConfig(BaseModel):
    """VM sizes and limits for one node pool type."""

    model_config = ConfigDict(frozen=True)

    primary_vm_size: str
    secondary_vm_size: str
    sku_family: str
    max_cpu: str
    max_memory: str
    node_class_type: str
    description: str
    recommended_for: List[str] = Field(default_factory=list)


NODE_POOL_CONFIGURATIONS: Dict[str, NodePoolConfig] = {
    "standard": NodePoolConfig(
        primary_vm_size="Standard_DS2_v2",
        secondary_vm_size="Standard_DS3_v2",
        sku_family="D",
        max_cpu="1000",
        max_memory="1000Gi",
        node_class_type="default-nodeclass",
        description="General purpose nodes for standard workloads",
        recommended_for=["web-apps", "microservices", "general-workloads"],
    ),
    "memory-optimized": NodePoolConfig(
        primary_vm_size="Standard_E2s_v3",
        secondary_vm_size="Standard_E4s_v3",
        sku_family="E",
        max_cpu="1000",
        max_memory="2000Gi",
        node_class_type="memory-optimized-nodeclass",
        description="High-memory nodes for memory-intensive workloads",
        recommended_for=["databases", "caches", "analytics", "in-memory-processing"],
    ),
    "compute-optimized": NodePoolConfig(
        primary_vm_size="Standard_F2s_v2",
        secondary_vm_size="Standard_F4s_v2",
        sku_family="F",
        max_cpu="2000",
        max_memory="1000Gi",
        node_class_type="compute-optimized-nodeclass",
        description="High-CPU nodes for compute-intensive workloads",
        recommended_for=[
            "batch-processing",
            "scientific-computing",
            "video-encoding",
            "compilation",
        ],
    ),
    "spot-optimized": NodePoolConfig(
        primary_vm_size="Standard_DS2_v2",
        secondary_vm_size="Standard_DS3_v2",
        sku_family="D",
        max_cpu="500",
        max_memory="500Gi",
        node_class_type="default-nodeclass",
        description="Cost-optimized nodes using spot instances",
        recommended_for=["development", "testing", "batch-jobs", "fault-tolerant-apps"],
    ),
}


def get_node_pool_config(node_pool_type: str) -> NodePoolConfig:
    """Return the profile for ``node_pool_type``.

    Raises:
        KeyError: If the type is not a known profile.
    """
    try:
        return NODE_POOL_CONFIGURATIONS[node_pool_type]
    except KeyError:
        raise KeyError(f"Unknown node pool type: {node_pool_type}") from None
