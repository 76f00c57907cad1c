"""Minimal async Kubernetes API client for typed and custom resources."""

from __future__ import annotations

import logging
import os
import ssl
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..config import KubeConfig
from ..errors import KubeApiError
from .manifests import ResourceRef

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


class KubeApi(Protocol):
    """Operations idpflow needs from the API server."""

    async def create(
        self, ref: ResourceRef, body: Dict[str, Any], namespace: Optional[str] = None
    ) -> Dict[str, Any]: ...

    async def get(
        self, ref: ResourceRef, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]: ...

    async def patch(
        self,
        ref: ResourceRef,
        name: str,
        body: Dict[str, Any],
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    async def delete(
        self, ref: ResourceRef, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]: ...

    async def list(
        self,
        ref: ResourceRef,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]: ...


class KubeClient:
    """Talk to the Kubernetes REST API over ``httpx``."""

    def __init__(
        self,
        config: KubeConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or KubeConfig()
        verify: bool | ssl.SSLContext = self.config.verify_ssl
        if verify and self.config.ca_path and os.path.exists(self.config.ca_path):
            verify = ssl.create_default_context(cafile=self.config.ca_path)
        self._client = httpx.AsyncClient(
            base_url=self.config.api_server.rstrip("/"),
            headers=self._auth_headers(),
            timeout=self.config.timeout,
            verify=verify,
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        token = self.config.token
        if not token and os.path.exists(self.config.token_path):
            with open(self.config.token_path) as f:
                token = f.read().strip()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def __aenter__(self) -> "KubeClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    @staticmethod
    def resource_path(
        ref: ResourceRef, namespace: Optional[str] = None, name: Optional[str] = None
    ) -> str:
        """Build the REST path of a collection or a single object."""
        base = f"/api/{ref.version}" if not ref.group else f"/apis/{ref.group}/{ref.version}"
        if ref.namespaced:
            if not namespace:
                raise ValueError(f"{ref.kind} is namespaced; a namespace is required")
            base += f"/namespaces/{namespace}"
        path = f"{base}/{ref.plural}"
        return f"{path}/{name}" if name else path

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        content_type: str = "application/json",
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if params:
            kwargs["params"] = params
        if body is not None:
            kwargs["json"] = body
            kwargs["headers"] = {"Content-Type": content_type}
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise KubeApiError(0, "TransportError", str(e)) from e

        if response.status_code >= 400:
            reason, message = "", response.text
            try:
                status = response.json()
                reason = status.get("reason", "")
                message = status.get("message", message)
            except ValueError:
                pass
            raise KubeApiError(response.status_code, reason, message)
        if not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    async def create(
        self, ref: ResourceRef, body: Dict[str, Any], namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        path = self.resource_path(ref, namespace)
        logger.debug(f"POST {path}")
        return await self._request("POST", path, body)

    async def get(
        self, ref: ResourceRef, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self._request("GET", self.resource_path(ref, namespace, name))

    async def patch(
        self,
        ref: ResourceRef,
        name: str,
        body: Dict[str, Any],
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        path = self.resource_path(ref, namespace, name)
        logger.debug(f"PATCH {path}")
        return await self._request("PATCH", path, body, content_type=MERGE_PATCH)

    async def delete(
        self, ref: ResourceRef, name: str, namespace: Optional[str] = None
    ) -> Dict[str, Any]:
        path = self.resource_path(ref, namespace, name)
        logger.debug(f"DELETE {path}")
        return await self._request("DELETE", path)

    async def list(
        self,
        ref: ResourceRef,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return the ``items`` of a collection, optionally filtered by labels."""
        params = {"labelSelector": label_selector} if label_selector else None
        result = await self._request("GET", self.resource_path(ref, namespace), params=params)
        return result.get("items", []) or []
