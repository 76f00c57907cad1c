from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for the Redis event backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    channel: str = "idpflow:workflow-events"


class EventsConfig(BaseModel):
    """Where workflow status changes are published."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    history: int = 1000
    redis: RedisConfig = RedisConfig()


class KubeConfig(BaseModel):
    """Connection settings for the Kubernetes API server."""

    api_server: str = "https://kubernetes.default.svc"
    token: Optional[str] = None
    token_path: str = "/var/run/secrets/kubernetes.io/serviceaccount/token"
    ca_path: Optional[str] = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    verify_ssl: bool = True
    timeout: float = 30.0


class ArgoConfig(BaseModel):
    """Settings for delegating workflows to Argo Workflows."""

    namespace: str = "argo"
    service_account: str = "idp-backend-sa"
    use_karpenter: bool = False
    cluster_template: str = "aks-cluster-provisioning"
    karpenter_cluster_template: str = "aks-cluster-provisioning-aso-karpenter"
    cluster_deletion_template: str = "aks-cluster-deletion"
    namespace_template: str = "namespace-provisioning"


class GitOpsConfig(BaseModel):
    """Flux repository cluster configuration is synced from."""

    repository_url: Optional[str] = None
    branch: str = "main"
    namespace: str = "flux-system"
    path_template: str = "./clusters/{cluster_name}"


class MirrorConfig(BaseModel):
    poll_interval: float = 5.0
    max_concurrent_fetches: int = 10
    max_backoff: float = 60.0


class IdpFlowConfig(BaseModel):
    """Top-level configuration model."""

    engine: Literal["argo", "direct"] = "argo"
    infrastructure_namespace: str = "azure-system"
    database_url: Optional[str] = None
    log_level: str = "INFO"
    max_log_entries: int = 1000
    ready_poll_interval: float = 15.0
    ready_timeout: float = 1800.0
    kube: KubeConfig = KubeConfig()
    argo: ArgoConfig = ArgoConfig()
    gitops: GitOpsConfig = GitOpsConfig()
    mirror: MirrorConfig = MirrorConfig()
    events: EventsConfig = EventsConfig()


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: Optional[str] = None) -> IdpFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to IDPFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("IDPFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = IdpFlowConfig(**data)
    else:
        config = IdpFlowConfig()

    if engine := os.getenv("IDPFLOW_ENGINE"):
        config.engine = engine.lower()
    if karpenter := os.getenv("USE_KARPENTER_WORKFLOW"):
        config.argo.use_karpenter = _env_flag(karpenter)
    if argo_ns := os.getenv("ARGO_NAMESPACE"):
        config.argo.namespace = argo_ns
    if events := os.getenv("IDPFLOW_EVENTS"):
        config.events.backend = events.lower()
    if api_server := os.getenv("KUBE_API_SERVER"):
        config.kube.api_server = api_server
    if token := os.getenv("KUBE_TOKEN"):
        config.kube.token = token

    env_db_url = os.getenv("IDPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
