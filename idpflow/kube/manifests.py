"""Resource references and manifest builders for the objects idpflow submits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..nodepools import SYSTEM_POOL_VM_SIZE, NodePoolConfig
from ..params import scale_quantity

MANAGED_BY = "idp-platform"
LABEL_WORKFLOW_ID = "idp.platform/workflow-id"
LABEL_WORKFLOW_TYPE = "idp.platform/workflow-type"
LABEL_CLUSTER_ID = "idp.platform/cluster-id"
LABEL_NAMESPACE_NAME = "idp.platform/namespace-name"
LABEL_WORKFLOW_ENGINE = "idp.platform/workflow-engine"
MANAGED_BY_SELECTOR = f"app.kubernetes.io/managed-by={MANAGED_BY}"


@dataclass(frozen=True)
class ResourceRef:
    """Group, version and plural of a Kubernetes resource type."""

    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


RESOURCE_GROUP = ResourceRef("resources.azure.com", "v1api20200601", "resourcegroups", "ResourceGroup")
MANAGED_CLUSTER = ResourceRef(
    "containerservice.azure.com", "v1api20240402preview", "managedclusters", "ManagedCluster"
)
ARGO_WORKFLOW = ResourceRef("argoproj.io", "v1alpha1", "workflows", "Workflow")
NAMESPACE = ResourceRef("", "v1", "namespaces", "Namespace", namespaced=False)
LIMIT_RANGE = ResourceRef("", "v1", "limitranges", "LimitRange")
NETWORK_POLICY = ResourceRef("networking.k8s.io", "v1", "networkpolicies", "NetworkPolicy")
GIT_REPOSITORY = ResourceRef("source.toolkit.fluxcd.io", "v1", "gitrepositories", "GitRepository")
KUSTOMIZATION = ResourceRef("kustomize.toolkit.fluxcd.io", "v1", "kustomizations", "Kustomization")

LIMIT_RANGE_NAME = "resource-limits"
NETWORK_POLICY_NAME = "namespace-isolation"


def resource_group_name(cluster_name: str) -> str:
    return f"rg-{cluster_name}"


def _metadata(
    name: str, namespace: Optional[str] = None, labels: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "name": name,
        "labels": {"app.kubernetes.io/managed-by": MANAGED_BY, **(labels or {})},
    }
    if namespace:
        metadata["namespace"] = namespace
    return metadata


# ----------------------------------------------------------------------
# Azure Service Operator
def resource_group_manifest(
    cluster_name: str, location: str, namespace: str, labels: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    return {
        "apiVersion": RESOURCE_GROUP.api_version,
        "kind": RESOURCE_GROUP.kind,
        "metadata": _metadata(resource_group_name(cluster_name), namespace, labels),
        "spec": {"location": location},
    }


def managed_cluster_manifest(
    cluster_name: str,
    location: str,
    namespace: str,
    node_pool_type: str,
    node_pool: NodePoolConfig,
    kubernetes_version: str,
    max_nodes: int = 10,
    enable_spot: bool = False,
    enable_nap: bool = True,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """AKS cluster with a small system pool and a user pool sized by ``node_pool``."""
    user_pool: Dict[str, Any] = {
        "name": "user",
        "mode": "User",
        "osType": "Linux",
        "vmSize": node_pool.primary_vm_size,
        "enableAutoScaling": True,
        "count": 1,
        "minCount": 1,
        "maxCount": max_nodes,
    }
    if enable_spot or node_pool_type == "spot-optimized":
        user_pool["scaleSetPriority"] = "Spot"
        user_pool["scaleSetEvictionPolicy"] = "Delete"

    spec: Dict[str, Any] = {
        "location": location,
        "owner": {"name": resource_group_name(cluster_name)},
        "dnsPrefix": cluster_name,
        "kubernetesVersion": kubernetes_version,
        "identity": {"type": "SystemAssigned"},
        "agentPoolProfiles": [
            {
                "name": "system",
                "mode": "System",
                "osType": "Linux",
                "vmSize": SYSTEM_POOL_VM_SIZE,
                "count": 1,
            },
            user_pool,
        ],
        "tags": {
            "idp-platform/node-pool-type": node_pool_type,
            "idp-platform/sku-family": node_pool.sku_family,
            "idp-platform/max-cpu": node_pool.max_cpu,
            "idp-platform/max-memory": node_pool.max_memory,
        },
    }
    if enable_nap:
        spec["nodeProvisioningProfile"] = {"mode": "Auto"}

    return {
        "apiVersion": MANAGED_CLUSTER.api_version,
        "kind": MANAGED_CLUSTER.kind,
        "metadata": _metadata(cluster_name, namespace, labels),
        "spec": spec,
    }


def is_ready(resource: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Read the ``Ready`` condition ASO sets on its resources."""
    for condition in resource.get("status", {}).get("conditions", []) or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True", condition.get("message")
    return False, None


# ----------------------------------------------------------------------
# Argo Workflows
def argo_workflow_manifest(
    name: str,
    namespace: str,
    template: str,
    parameters: Sequence[Tuple[str, Any]],
    labels: Dict[str, str],
    service_account: Optional[str] = None,
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "workflowTemplateRef": {"name": template},
        "arguments": {
            "parameters": [
                {"name": key, "value": _argo_value(value)} for key, value in parameters
            ]
        },
    }
    if service_account:
        spec["serviceAccountName"] = service_account
    return {
        "apiVersion": ARGO_WORKFLOW.api_version,
        "kind": ARGO_WORKFLOW.kind,
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "spec": spec,
    }


def _argo_value(value: Any) -> str:
    # Argo parameters are strings; booleans follow the lowercase convention.
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ----------------------------------------------------------------------
# Namespaces
def namespace_manifest(
    name: str,
    description: str = "",
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    metadata = _metadata(
        name,
        labels={
            "idp-platform/created-by": "namespace-onboarding",
            "idp-platform/resource-managed": "true",
        },
    )
    metadata["annotations"] = {
        "idp-platform/description": description,
        "idp-platform/created-at": datetime.now(timezone.utc).isoformat(),
        **(annotations or {}),
    }
    return {"apiVersion": NAMESPACE.api_version, "kind": NAMESPACE.kind, "metadata": metadata}


def limit_range_manifest(namespace: str, limits: Dict[str, Dict[str, str]]) -> Dict[str, Any]:
    """LimitRange from ``{"cpu": {"request", "limit"}, "memory": {...}}``."""
    cpu, memory = limits["cpu"], limits["memory"]
    return {
        "apiVersion": LIMIT_RANGE.api_version,
        "kind": LIMIT_RANGE.kind,
        "metadata": _metadata(LIMIT_RANGE_NAME, namespace),
        "spec": {
            "limits": [
                {
                    "type": "Container",
                    "default": {"cpu": cpu["limit"], "memory": memory["limit"]},
                    "defaultRequest": {"cpu": cpu["request"], "memory": memory["request"]},
                    "max": {
                        "cpu": scale_quantity(cpu["limit"], 2),
                        "memory": scale_quantity(memory["limit"], 2),
                    },
                    "min": {"cpu": "10m", "memory": "64Mi"},
                },
                {
                    "type": "PersistentVolumeClaim",
                    "max": {"storage": "10Gi"},
                    "min": {"storage": "1Gi"},
                },
            ]
        },
    }


def network_policy_manifest(namespace: str) -> Dict[str, Any]:
    """Allow traffic within the namespace plus DNS to kube-system."""
    dns_ports: List[Dict[str, Any]] = [
        {"protocol": "UDP", "port": 53},
        {"protocol": "TCP", "port": 53},
    ]
    return {
        "apiVersion": NETWORK_POLICY.api_version,
        "kind": NETWORK_POLICY.kind,
        "metadata": _metadata(NETWORK_POLICY_NAME, namespace),
        "spec": {
            "podSelector": {},
            "policyTypes": ["Ingress", "Egress"],
            "ingress": [{"from": [{"podSelector": {}}]}],
            "egress": [
                {"to": [{"podSelector": {}}]},
                {
                    "to": [{"namespaceSelector": {"matchLabels": {"name": "kube-system"}}}],
                    "ports": dns_ports,
                },
            ],
        },
    }


# ----------------------------------------------------------------------
# Flux
def git_repository_manifest(
    name: str, namespace: str, url: str, branch: str
) -> Dict[str, Any]:
    return {
        "apiVersion": GIT_REPOSITORY.api_version,
        "kind": GIT_REPOSITORY.kind,
        "metadata": _metadata(name, namespace),
        "spec": {"interval": "1m", "url": url, "ref": {"branch": branch}},
    }


def kustomization_manifest(
    name: str, namespace: str, source_name: str, path: str
) -> Dict[str, Any]:
    return {
        "apiVersion": KUSTOMIZATION.api_version,
        "kind": KUSTOMIZATION.kind,
        "metadata": _metadata(name, namespace),
        "spec": {
            "interval": "10m",
            "path": path,
            "prune": True,
            "sourceRef": {"kind": GIT_REPOSITORY.kind, "name": source_name},
        },
    }
