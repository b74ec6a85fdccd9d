"""Cluster API client interface."""

from typing import Any, Protocol

from kraan.controller.api.models import AddonsLayer, GitRepository


class ClusterClient(Protocol):
    """Cluster operations the controller depends on."""

    async def get_layer(self, name: str) -> AddonsLayer: ...  # pragma: no cover

    async def list_layers(self) -> list[AddonsLayer]: ...  # pragma: no cover

    async def update_layer_status(self, layer: AddonsLayer) -> AddonsLayer: ...  # pragma: no cover

    async def server_version(self) -> str: ...  # pragma: no cover

    async def list_git_repositories(self) -> list[GitRepository]: ...  # pragma: no cover

    async def list_objects(self, path: str) -> list[dict[str, Any]]: ...  # pragma: no cover
