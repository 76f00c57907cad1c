"""Kubernetes API access and manifest builders."""

from .client import KubeApi, KubeClient
from .manifests import (
    ARGO_WORKFLOW,
    GIT_REPOSITORY,
    KUSTOMIZATION,
    LIMIT_RANGE,
    MANAGED_CLUSTER,
    NAMESPACE,
    NETWORK_POLICY,
    RESOURCE_GROUP,
    ResourceRef,
)

__all__ = [
    "KubeApi",
    "KubeClient",
    "ResourceRef",
    "ARGO_WORKFLOW",
    "GIT_REPOSITORY",
    "KUSTOMIZATION",
    "LIMIT_RANGE",
    "MANAGED_CLUSTER",
    "NAMESPACE",
    "NETWORK_POLICY",
    "RESOURCE_GROUP",
]
