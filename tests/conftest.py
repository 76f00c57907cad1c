"""Shared fixtures: a recording Kubernetes API stand-in and service factories."""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from idpflow.config import IdpFlowConfig
from idpflow.errors import KubeApiError
from idpflow.events import InMemoryEventPublisher
from idpflow.kube import ResourceRef
from idpflow.persistence import InMemoryWorkflowStore
from idpflow.service import WorkflowService


def _merge(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeKube:
    """Records every call and keeps created objects in a dict."""

    def __init__(self, ready_kinds: Tuple[str, ...] = ("ManagedCluster",)) -> None:
        self.calls: List[Tuple[str, str, str, Optional[str]]] = []
        self.objects: Dict[Tuple[str, Optional[str], str], Dict[str, Any]] = {}
        self.errors: Dict[Tuple[str, str], Exception] = {}
        self.ready_kinds = set(ready_kinds)

    def fail(self, verb: str, kind: str, error: Exception) -> None:
        self.errors[(verb, kind)] = error

    def add(self, ref: ResourceRef, body: Dict[str, Any], namespace: Optional[str] = None) -> None:
        self.objects[(ref.plural, namespace, body["metadata"]["name"])] = copy.deepcopy(body)

    def calls_for(self, verb: str) -> List[Tuple[str, str, str, Optional[str]]]:
        return [call for call in self.calls if call[0] == verb]

    def _check(self, verb: str, ref: ResourceRef, name: str, namespace: Optional[str]) -> None:
        self.calls.append((verb, ref.kind, name, namespace))
        error = self.errors.get((verb, ref.kind))
        if error is not None:
            raise error

    async def create(self, ref, body, namespace=None):
        name = body["metadata"]["name"]
        self._check("create", ref, name, namespace)
        await asyncio.sleep(0)
        key = (ref.plural, namespace, name)
        if key in self.objects:
            raise KubeApiError(409, "AlreadyExists", f'{ref.plural} "{name}" already exists')
        stored = copy.deepcopy(body)
        stored.setdefault("metadata", {})["resourceVersion"] = "1"
        if ref.kind in self.ready_kinds:
            stored["status"] = {"conditions": [{"type": "Ready", "status": "True"}]}
        if ref.kind == "Namespace":
            stored["status"] = {"phase": "Active"}
        self.objects[key] = stored
        return copy.deepcopy(stored)

    async def get(self, ref, name, namespace=None):
        self._check("get", ref, name, namespace)
        await asyncio.sleep(0)
        try:
            return copy.deepcopy(self.objects[(ref.plural, namespace, name)])
        except KeyError:
            raise KubeApiError(404, "NotFound", f'{ref.plural} "{name}" not found') from None

    async def patch(self, ref, name, body, namespace=None):
        self._check("patch", ref, name, namespace)
        await asyncio.sleep(0)
        key = (ref.plural, namespace, name)
        if key not in self.objects:
            raise KubeApiError(404, "NotFound", f'{ref.plural} "{name}" not found')
        _merge(self.objects[key], body)
        return copy.deepcopy(self.objects[key])

    async def delete(self, ref, name, namespace=None):
        self._check("delete", ref, name, namespace)
        await asyncio.sleep(0)
        try:
            return self.objects.pop((ref.plural, namespace, name))
        except KeyError:
            raise KubeApiError(404, "NotFound", f'{ref.plural} "{name}" not found') from None

    async def list(self, ref, namespace=None, label_selector=None):
        self._check("list", ref, "", namespace)
        await asyncio.sleep(0)
        wanted = dict(
            term.split("=", 1) for term in (label_selector or "").split(",") if term
        )
        items = []
        for (plural, ns, _), body in self.objects.items():
            if plural != ref.plural or (namespace is not None and ns != namespace):
                continue
            labels = body.get("metadata", {}).get("labels", {})
            if all(labels.get(key) == value for key, value in wanted.items()):
                items.append(copy.deepcopy(body))
        return items


@pytest.fixture
def fake_kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def make_service(fake_kube):
    """Build a service over in-memory state and the fake API server."""

    def factory(engine: str = "direct", **overrides: Any) -> WorkflowService:
        settings: Dict[str, Any] = {
            "engine": engine,
            "ready_poll_interval": 0.01,
            "ready_timeout": 1.0,
        }
        settings.update(overrides)
        return WorkflowService.from_config(
            IdpFlowConfig(**settings),
            kube=fake_kube,
            store=InMemoryWorkflowStore(),
            publisher=InMemoryEventPublisher(),
        )

    return factory
