"""
AddonsLayer API types.

Resource models for the layer descriptor, its status, and the
repository artifacts that feed the shared source tree.
"""

__all__ = [
    "AddonsLayer",
    "AddonsLayerSpec",
    "AddonsLayerStatus",
    "Artifact",
    "Condition",
    "GitRepository",
    "LayerState",
    "ObjectMeta",
    "SourceSpec",
]

from kraan.controller.api.models import (
    AddonsLayer,
    AddonsLayerSpec,
    AddonsLayerStatus,
    Artifact,
    Condition,
    GitRepository,
    LayerState,
    ObjectMeta,
    SourceSpec,
)
