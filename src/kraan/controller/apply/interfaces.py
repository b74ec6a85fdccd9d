"""Executor interface consumed by the reconciler."""

from abc import ABC, abstractmethod
from typing import Any

from kraan.controller.layers.layer import KraanLayer


class LayerApplier(ABC):
    """Creates, upgrades and deletes the objects managed by a layer.

    Implementations own the desired-versus-deployed diff. Every method may
    block for a long time and must be safe to retry after cancellation.
    Failures are raised as exceptions.
    """

    @abstractmethod
    async def prune_is_required(self, layer: KraanLayer) -> tuple[bool, list[Any]]:
        """Return whether objects owned by the layer are no longer declared, and which."""
        pass

    @abstractmethod
    async def prune(self, layer: KraanLayer, objects: list[Any]) -> None:
        """Delete the given obsolete objects."""
        pass

    @abstractmethod
    async def apply_is_required(self, layer: KraanLayer) -> bool:
        """Return whether declared content differs from deployed content."""
        pass

    @abstractmethod
    async def apply(self, layer: KraanLayer) -> None:
        """Apply the layer's declared objects to the cluster."""
        pass

    @abstractmethod
    async def apply_was_successful(self, layer: KraanLayer) -> bool:
        """Return whether the last apply is complete and ready."""
        pass
