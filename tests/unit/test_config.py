"""Tests for configuration loading."""

from idpflow.config import load_config
from idpflow.events import get_publisher
from idpflow.events.redis import RedisEventPublisher

_ENV = (
    "IDPFLOW_ENGINE",
    "USE_KARPENTER_WORKFLOW",
    "ARGO_NAMESPACE",
    "IDPFLOW_EVENTS",
    "IDPFLOW_DATABASE_URL",
    "DATABASE_URL",
    "KUBE_API_SERVER",
    "KUBE_TOKEN",
)


def _clear_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_load_config_from_file(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
engine: direct
infrastructure_namespace: infra
argo:
  namespace: workflows
  use_karpenter: true
gitops:
  repository_url: https://example.com/fleet.git
events:
  backend: redis
  redis:
    host: testhost
    port: 1234
"""
    )
    monkeypatch.setenv("IDPFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.engine == "direct"
    assert config.infrastructure_namespace == "infra"
    assert config.argo.namespace == "workflows"
    assert config.argo.use_karpenter is True
    assert config.gitops.repository_url == "https://example.com/fleet.git"
    assert config.events.redis.host == "testhost"
    assert config.events.redis.port == 1234


def test_defaults_without_file(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.engine == "argo"
    assert config.argo.namespace == "argo"
    assert config.infrastructure_namespace == "azure-system"
    assert config.mirror.poll_interval == 5.0
    assert config.max_log_entries == 1000
    assert config.database_url is None


def test_env_overrides(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("IDPFLOW_ENGINE", "DIRECT")
    monkeypatch.setenv("USE_KARPENTER_WORKFLOW", "true")
    monkeypatch.setenv("ARGO_NAMESPACE", "argo-ci")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/idp.db")
    monkeypatch.setenv("KUBE_API_SERVER", "https://k8s.example.com")
    monkeypatch.setenv("KUBE_TOKEN", "secret")

    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.engine == "direct"
    assert config.argo.use_karpenter is True
    assert config.argo.namespace == "argo-ci"
    assert config.database_url == "sqlite:///tmp/idp.db"
    assert config.kube.api_server == "https://k8s.example.com"
    assert config.kube.token == "secret"


def test_get_publisher_uses_config(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
events:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("IDPFLOW_CONFIG", str(config_path))

    publisher = get_publisher()
    assert isinstance(publisher, RedisEventPublisher)
    assert publisher.host == "confighost"
    assert publisher.port == 6380
    assert publisher.channel == "idpflow:workflow-events"
