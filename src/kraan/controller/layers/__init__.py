"""
Layer domain objects.

The per-pass state holder, dependency resolution and version gating
used by the AddonsLayer reconciler.
"""

__all__ = [
    "DependencyCheck",
    "DependencyResolver",
    "KraanLayer",
    "validate_dependencies",
    "version_satisfies",
]

from kraan.controller.layers.dependencies import (
    DependencyCheck,
    DependencyResolver,
    validate_dependencies,
)
from kraan.controller.layers.layer import KraanLayer
from kraan.controller.layers.versions import version_satisfies
