"""
Global pytest configuration and fixtures for the Kraan controller tests.
"""

import io
import os
import sys
import tarfile
from typing import Any

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from kraan.controller.api.models import (  # noqa: E402
    AddonsLayer,
    Artifact,
    GitRepository,
    LayerState,
)
from kraan.controller.apply.interfaces import LayerApplier  # noqa: E402
from kraan.controller.exceptions import ClusterAPIError, LayerNotFoundError  # noqa: E402


def make_layer(
    name: str = "base",
    depends_on: list[str] | None = None,
    state: LayerState = LayerState.APPLY_PENDING,
    hold: bool = False,
    k8s_version: str = "",
    version: str = "0.1.01",
    interval: str = "1m",
    repo: str = "addons-config",
    namespace: str = "gitops-system",
    path: str = "./addons/base",
) -> AddonsLayer:
    """Build an AddonsLayer the way it arrives from the cluster API."""
    return AddonsLayer.model_validate(
        {
            "apiVersion": "kraan.io/v1alpha1",
            "kind": "AddonsLayer",
            "metadata": {"name": name, "resourceVersion": "1"},
            "spec": {
                "source": {"nameSpace": namespace, "name": repo, "path": path},
                "version": version,
                "hold": hold,
                "prereqs": {"k8sVersion": k8s_version},
                "interval": interval,
                "dependsOn": depends_on or [],
            },
            "status": {"state": state.value, "conditions": []},
        }
    )


def make_repository(
    name: str = "addons-config",
    namespace: str = "gitops-system",
    revision: str = "master/abc123",
    url: str | None = "http://source-controller.gitops-system/gitrepository/addons.tar.gz",
) -> GitRepository:
    status: dict[str, Any] = {}
    if url is not None:
        status["artifact"] = Artifact(url=url, revision=revision).to_wire()
    return GitRepository.model_validate(
        {
            "apiVersion": "source.toolkit.fluxcd.io/v1alpha1",
            "kind": "GitRepository",
            "metadata": {"name": name, "namespace": namespace},
            "status": status,
        }
    )


def make_tarball(files: dict[str, str]) -> bytes:
    """Build an in-memory tar.gz holding ``files``."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for path, text in files.items():
            data = text.encode()
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class FakeClusterClient:
    """In-memory cluster API with call recording and failure injection."""

    def __init__(self, layers: list[AddonsLayer] | None = None, version: str = "v1.20.2"):
        self.layers = {layer.name: layer for layer in layers or []}
        self.repositories: list[GitRepository] = []
        self.objects: dict[str, list[dict[str, Any]]] = {}
        self.version = version
        self.status_updates: list[AddonsLayer] = []
        self.list_calls = 0
        self.fail_list = False
        self.fail_version = False
        self.fail_update = False

    async def get_layer(self, name: str) -> AddonsLayer:
        if name not in self.layers:
            raise LayerNotFoundError(name)
        return self.layers[name].model_copy(deep=True)

    async def list_layers(self) -> list[AddonsLayer]:
        self.list_calls += 1
        if self.fail_list:
            raise ClusterAPIError("connection refused")
        return [layer.model_copy(deep=True) for layer in self.layers.values()]

    async def update_layer_status(self, layer: AddonsLayer) -> AddonsLayer:
        if self.fail_update:
            raise ClusterAPIError("conflict", status_code=409)
        stored = layer.model_copy(deep=True)
        self.layers[layer.name] = stored
        self.status_updates.append(stored)
        return stored

    async def server_version(self) -> str:
        if self.fail_version:
            raise ClusterAPIError("connection refused")
        return self.version

    async def list_git_repositories(self) -> list[GitRepository]:
        return list(self.repositories)

    async def list_objects(self, path: str) -> list[dict[str, Any]]:
        if self.fail_list:
            raise ClusterAPIError("connection refused")
        return list(self.objects.get(path, []))


class FakeApplier(LayerApplier):
    """Executor double recording every call made by the reconciler."""

    def __init__(self) -> None:
        self.prune_required = False
        self.prune_objects: list[Any] = []
        self.apply_required = False
        self.ready = True
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    async def prune_is_required(self, layer):
        self._record("prune_is_required")
        return self.prune_required, self.prune_objects

    async def prune(self, layer, objects):
        self._record("prune")

    async def apply_is_required(self, layer):
        self._record("apply_is_required")
        return self.apply_required

    async def apply(self, layer):
        self._record("apply")

    async def apply_was_successful(self, layer):
        self._record("apply_was_successful")
        return self.ready

    @property
    def mutations(self) -> list[str]:
        return [call for call in self.calls if call in ("prune", "apply")]


@pytest.fixture
def cluster() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture
def applier() -> FakeApplier:
    return FakeApplier()


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit test")
    config.addinivalue_line("markers", "integration: Integration test")
    config.addinivalue_line("markers", "asyncio: Async test")
    config.addinivalue_line("markers", "slow: Slow test")
