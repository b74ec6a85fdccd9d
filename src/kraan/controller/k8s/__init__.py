"""
Cluster API access.

Provides the client protocol the controller depends on and its
Kubernetes REST implementation.
"""

__all__ = ["ClusterClient", "KubeClient"]

from kraan.controller.k8s.client import KubeClient
from kraan.controller.k8s.interfaces import ClusterClient
