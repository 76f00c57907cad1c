"""Static Azure catalogue: supported regions and node pool recommendations."""

from __future__ import annotations

from typing import Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .nodepools import NODE_POOL_CONFIGURATIONS, NodePoolConfig


class LocationInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    region: str
    recommended: bool = False
    description: str = ""


class NodePoolRecommendation(BaseModel):
    """Trade-offs of one node pool profile, for picking a ``node_pool_type``."""

    node_pool_type: str
    display_name: str
    cost_tier: str
    use_case: str
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    recommended_for: List[str] = Field(default_factory=list)
    karpenter_features: Dict[str, str] = Field(default_factory=dict)


LOCATIONS: Tuple[LocationInfo, ...] = (
    LocationInfo(
        name="eastus",
        display_name="East US",
        region="us",
        recommended=True,
        description="Primary US East region",
    ),
    LocationInfo(
        name="westus2",
        display_name="West US 2",
        region="us",
        recommended=True,
        description="Primary US West region",
    ),
    LocationInfo(name="uksouth", display_name="UK South", region="uk", description="Primary UK region"),
    LocationInfo(
        name="westeurope", display_name="West Europe", region="eu", description="Primary Europe region"
    ),
    LocationInfo(name="centralus", display_name="Central US", region="us", description="Central US region"),
)

_COST_TIERS = {
    "standard": "low",
    "memory-optimized": "medium",
    "compute-optimized": "medium",
    "spot-optimized": "very-low",
}

_USE_CASES = {
    "standard": "Web applications, microservices, development environments, general-purpose workloads",
    "memory-optimized": "In-memory databases, caches, big data analytics, memory-intensive applications",
    "compute-optimized": "CPU-intensive applications, batch processing, scientific computing, compilation tasks",
    "spot-optimized": "Development environments, testing, fault-tolerant batch jobs, cost-sensitive workloads",
}

_PROS = {
    "standard": [
        "Cost-effective for most workloads",
        "Balanced CPU and memory ratio",
        "Good performance for general use cases",
    ],
    "memory-optimized": [
        "High memory-to-CPU ratio",
        "Suitable for in-memory processing",
    ],
    "compute-optimized": [
        "High CPU performance per core",
        "Excellent for compute-bound tasks",
    ],
    "spot-optimized": [
        "Significant cost savings (up to 90%)",
        "Good for fault-tolerant workloads",
        "Automatic fallback to on-demand",
    ],
}

_CONS = {
    "standard": [
        "May not excel at specialized workloads",
        "Not optimized for high-memory or high-CPU tasks",
    ],
    "memory-optimized": [
        "Higher cost per hour",
        "Overkill for CPU-bound tasks",
    ],
    "compute-optimized": [
        "Limited memory per core",
        "Higher cost for memory-intensive tasks",
    ],
    "spot-optimized": [
        "Potential for instance interruptions",
        "Not suitable for mission-critical workloads",
    ],
}


def display_name(node_pool_type: str) -> str:
    """``"memory-optimized"`` -> ``"Memory Optimized"``."""
    return " ".join(word.capitalize() for word in node_pool_type.split("-"))


def _karpenter_features(node_pool_type: str, pool: NodePoolConfig) -> Dict[str, str]:
    return {
        "spot_support": (
            "Optimized for spot instances"
            if node_pool_type == "spot-optimized"
            else "Spot instance capable"
        ),
        "instance_types": f"Supports {pool.primary_vm_size} and {pool.secondary_vm_size}",
        "resource_limits": f"Max {pool.max_cpu} CPU, {pool.max_memory} memory",
        "node_class": pool.node_class_type,
    }


def available_locations() -> List[LocationInfo]:
    return list(LOCATIONS)


def node_pool_recommendations() -> List[NodePoolRecommendation]:
    recommendations = []
    for node_pool_type, pool in NODE_POOL_CONFIGURATIONS.items():
        recommendations.append(
            NodePoolRecommendation(
                node_pool_type=node_pool_type,
                display_name=display_name(node_pool_type),
                cost_tier=_COST_TIERS.get(node_pool_type, "medium"),
                use_case=_USE_CASES.get(
                    node_pool_type, f"Workloads optimized for {node_pool_type} requirements"
                ),
                pros=list(_PROS.get(node_pool_type, [])),
                cons=list(_CONS.get(node_pool_type, [])),
                recommended_for=list(pool.recommended_for),
                karpenter_features=_karpenter_features(node_pool_type, pool),
            )
        )
    return recommendations
