"""Canonical ordered step plans per engine and workflow type."""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

from .contracts import Step, WorkflowType

DIRECT_PLANS: Dict[WorkflowType, Tuple[str, ...]] = {
    WorkflowType.CLUSTER_PROVISIONING: (
        "validate-inputs",
        "create-resource-group",
        "create-managed-cluster",
        "wait-for-cluster-ready",
        "configure-gitops",
    ),
    WorkflowType.CLUSTER_DELETION: (
        "validate-deletion",
        "delete-managed-cluster",
        "delete-resource-group",
        "verify-deletion",
    ),
    WorkflowType.NAMESPACE_PROVISIONING: (
        "validate-namespace",
        "create-namespace",
        "apply-limit-range",
        "apply-network-policy",
        "verify-resources",
    ),
    WorkflowType.NAMESPACE_UPDATE: (
        "validate-updates",
        "update-limit-range",
        "update-annotations",
        "verify-changes",
    ),
    WorkflowType.NAMESPACE_DELETION: (
        "validate-deletion",
        "cleanup-resources",
        "delete-namespace",
        "verify-deletion",
    ),
}

KRO_CLUSTER_PLAN: Tuple[str, ...] = (
    "validate-cluster-config",
    "create-kro-cluster",
    "wait-for-kro-ready",
    "wait-cluster-ready",
    "setup-flux-gitops",
)

KARPENTER_CLUSTER_PLAN: Tuple[str, ...] = (
    "validate-inputs",
    "create-resource-group",
    "create-managed-cluster",
    "create-karpenter-nodeclass",
    "create-karpenter-nodepool",
    "wait-for-cluster-ready",
    "configure-cluster-addons",
    "configure-gitops",
)

ARGO_CLUSTER_DELETION_PLAN: Tuple[str, ...] = (
    "validate-deletion",
    "delete-aso-resources",
    "delete-kro-instance",
    "cleanup-resources",
)

# Omitted from namespace plans when network isolation is off.
NETWORK_POLICY_STEP = "apply-network-policy"


def is_network_isolated(parameters: Dict[str, Any]) -> bool:
    """Read the isolation flag from validated or raw (camelCase) parameters."""
    for key in ("network_isolated", "networkIsolated"):
        if key in parameters:
            return bool(parameters[key])
    return True


def namespace_plan(plan: Tuple[str, ...], network_isolated: bool) -> Tuple[str, ...]:
    if network_isolated:
        return plan
    return tuple(name for name in plan if name != NETWORK_POLICY_STEP)


def build_steps(names: Tuple[str, ...] | List[str]) -> List[Step]:
    """Create a fresh pending step for each name, preserving order."""
    return [Step(name=name) for name in names]
