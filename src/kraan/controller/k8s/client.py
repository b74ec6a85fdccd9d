"""
Cluster API client.

Talks to the Kubernetes REST API for AddonsLayer and GitRepository
resources using an async httpx client.
"""

import os
from pathlib import Path
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from kraan.controller.api.models import AddonsLayer, GitRepository
from kraan.controller.exceptions import ClusterAPIError, LayerNotFoundError, StartupError
from kraan.controller.settings import Settings

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

ADDONS_LAYER_PLURAL = "addonslayers"
GIT_REPOSITORY_PLURAL = "gitrepositories"


def _parse_items(model: type[M], body: dict[str, Any]) -> list[M]:
    """Parse a list response, skipping items that do not validate."""
    items = []
    for item in body.get("items", []):
        try:
            items.append(model.model_validate(item))
        except ValidationError as e:
            name = (item.get("metadata") or {}).get("name") if isinstance(item, dict) else None
            logger.error(
                "skipping malformed resource", kind=model.__name__, name=name, error=str(e)
            )
    return items


class KubeClient:
    """Kubernetes API client for the resources the controller manages."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        verify: bool | str = True,
        timeout: float = 30.0,
        group: str = "kraan.io",
        version: str = "v1alpha1",
        source_group: str = "source.toolkit.fluxcd.io",
        source_version: str = "v1alpha1",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: API server URL (e.g., https://10.0.0.1:443)
            token: Bearer token for authentication
            verify: Certificate verification flag or CA bundle path
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.verify = verify
        self.timeout = timeout
        self.layers_path = f"/apis/{group}/{version}/{ADDONS_LAYER_PLURAL}"
        self.repositories_path = f"/apis/{source_group}/{source_version}/{GIT_REPOSITORY_PLURAL}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, config: Settings) -> "KubeClient":
        """Build a client from settings, falling back to in-cluster discovery.

        Raises:
            StartupError: if no API server address can be determined.
        """
        kube = config.kube
        base_url = kube.api_url
        if not base_url:
            host = os.getenv("KUBERNETES_SERVICE_HOST")
            port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
            if not host:
                raise StartupError(
                    "cluster api server not configured: set KUBE__API_URL or run in-cluster"
                )
            if ":" in host:
                host = f"[{host}]"
            base_url = f"https://{host}:{port}"

        token = kube.token
        token_file = Path(kube.token_path)
        if token is None and token_file.is_file():
            try:
                token = token_file.read_text().strip()
            except OSError as e:
                raise StartupError(f"failed to read service account token: {e}") from e

        verify: bool | str = kube.verify_ssl
        if kube.verify_ssl and Path(kube.ca_path).is_file():
            verify = kube.ca_path

        return cls(
            base_url=base_url,
            token=token,
            verify=verify,
            timeout=kube.timeout,
            group=kube.group,
            version=kube.version,
            source_group=kube.source_group,
            source_version=kube.source_version,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"

            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                verify=self.verify,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make a request to the API server.

        Raises:
            ClusterAPIError: on transport failure or a non-2xx response
        """
        client = await self._get_client()

        try:
            response = await client.request(method=method, url=path, json=data)
        except httpx.TimeoutException as e:
            logger.error("cluster api request timeout", path=path, error=str(e))
            raise ClusterAPIError(f"Request timeout: {path}") from e
        except httpx.RequestError as e:
            logger.error("cluster api request error", path=path, error=str(e))
            raise ClusterAPIError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            detail = response.text
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                detail = payload.get("message", detail)
            raise ClusterAPIError(
                f"{method} {path} failed: {detail}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ClusterAPIError(f"{method} {path} returned invalid JSON") from e

    async def get_layer(self, name: str) -> AddonsLayer:
        try:
            body = await self._request("GET", f"{self.layers_path}/{name}")
        except ClusterAPIError as e:
            if e.status_code == 404:
                raise LayerNotFoundError(name) from e
            raise
        return AddonsLayer.model_validate(body)

    async def list_layers(self) -> list[AddonsLayer]:
        body = await self._request("GET", self.layers_path)
        return _parse_items(AddonsLayer, body)

    async def update_layer_status(self, layer: AddonsLayer) -> AddonsLayer:
        """Write the status subresource.

        The object's resourceVersion is sent as-is, so a concurrent
        modification is rejected by the server with a conflict.
        """
        body = await self._request(
            "PUT", f"{self.layers_path}/{layer.name}/status", data=layer.to_wire()
        )
        updated = AddonsLayer.model_validate(body)
        layer.metadata.resource_version = updated.metadata.resource_version
        return updated

    async def server_version(self) -> str:
        body = await self._request("GET", "/version")
        version = body.get("gitVersion")
        if not version:
            raise ClusterAPIError("server version response has no gitVersion")
        return str(version)

    async def list_git_repositories(self) -> list[GitRepository]:
        body = await self._request("GET", self.repositories_path)
        return _parse_items(GitRepository, body)

    async def list_objects(self, path: str) -> list[dict[str, Any]]:
        """List the raw objects of a collection such as ``/apis/<group>/<version>/<plural>``."""
        body = await self._request("GET", path)
        return [item for item in body.get("items", []) if isinstance(item, dict)]
