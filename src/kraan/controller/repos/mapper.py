"""
Repository to layer mapping.

Turns a repository artifact notification into the set of AddonsLayer
reconcile requests, publishing the new content for each referencing
layer on the way. Nothing raised while handling one notification escapes
this module: failures are logged and yield fewer (or zero) requests.

Layers of one repository may declare nested paths (``./addons`` and
``./addons/base``). The outermost path is published first and a nested
layer is then served from its enclosing snapshot, so the outcome does not
depend on the order layers are listed in. A path under a link published in
an earlier pass refreshes that enclosing link instead.
"""

import asyncio
import tempfile
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from kraan.controller.api.models import GIT_REPOSITORY_KIND, AddonsLayer, GitRepository
from kraan.controller.exceptions import ArtifactFetchError, ClusterAPIError, PublishError
from kraan.controller.k8s.interfaces import ClusterClient
from kraan.controller.repos.fetch import ArtifactFetcher
from kraan.controller.repos.source_tree import SourceTree, relative_source_path

logger = structlog.get_logger(__name__)


@dataclass
class SyncResult:
    """Layers whose content is now published, and layers that could not be."""

    requests: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RepositoryMapper:
    """Maps repository artifact changes to layer reconcile requests."""

    def __init__(
        self,
        client: ClusterClient,
        fetcher: ArtifactFetcher,
        source_tree: SourceTree,
        work_root: str | None = None,
    ) -> None:
        self.client = client
        self.fetcher = fetcher
        self.source_tree = source_tree
        self.work_root = work_root

    def _as_repository(self, obj: Any) -> GitRepository | None:
        if isinstance(obj, GitRepository):
            return obj
        if not isinstance(obj, Mapping):
            logger.error("unable to cast object to GitRepository", type=type(obj).__name__)
            return None
        kind = obj.get("kind")
        if kind != GIT_REPOSITORY_KIND:
            logger.error(
                "unexpected object kind, only GitRepository supported",
                kind=kind,
            )
            return None
        try:
            return GitRepository.model_validate(obj)
        except ValidationError as e:
            logger.error("malformed GitRepository", error=str(e))
            return None

    async def map(self, obj: Any) -> list[str]:
        """Sync the repository's artifact and return the layers to reconcile."""
        return (await self.sync(obj)).requests

    async def sync(self, obj: Any, exclude: Collection[str] = ()) -> SyncResult:
        """Sync the repository's artifact for every referencing layer not in ``exclude``.

        Requests are returned in the order the layers were listed.
        """
        result = SyncResult()
        repository = self._as_repository(obj)
        if repository is None:
            return result
        if repository.status.artifact is None:
            logger.warning(
                "repository has no artifact, skipping",
                repository=f"{repository.namespace}/{repository.name}",
            )
            return result

        log = logger.bind(
            repository=f"{repository.namespace}/{repository.name}",
            revision=repository.status.artifact.revision,
        )

        try:
            layers = await self.client.list_layers()
        except ClusterAPIError as e:
            log.error("unable to list AddonsLayers", error=str(e))
            return result

        referencing = [
            layer
            for layer in layers
            if layer.spec.source.namespace == repository.namespace
            and layer.spec.source.name == repository.name
            and layer.name not in exclude
        ]
        if not referencing:
            log.debug("no layers reference repository")
            return result

        try:
            workdir = tempfile.TemporaryDirectory(
                prefix=f"{repository.name}-", dir=self.work_root, ignore_cleanup_errors=True
            )
        except OSError as e:
            log.error("unable to create work directory", error=str(e))
            result.failed = [layer.name for layer in referencing]
            return result

        with workdir as path:
            try:
                content = await self.fetcher.fetch(repository, Path(path))
            except ArtifactFetchError as e:
                log.error("unable to sync repository", error=str(e), status_code=e.status_code)
                result.failed = [layer.name for layer in referencing]
                return result

            published = await self._publish(repository, referencing, content, log)

        for layer in referencing:
            if layer.name in published:
                log.info("adding layer to list", layer=layer.name)
                result.requests.append(layer.name)
            else:
                result.failed.append(layer.name)
        return result

    async def _publish(
        self,
        repository: GitRepository,
        layers: list[AddonsLayer],
        content: Path,
        log: structlog.stdlib.BoundLogger,
    ) -> set[str]:
        """Publish each distinct source path once, outermost first."""
        by_path: list[tuple[tuple[str, ...], AddonsLayer]] = []
        for layer in layers:
            try:
                parts = relative_source_path(layer.spec.source.path).parts
            except PublishError as e:
                log.error("unable to link new data for layer", layer=layer.name, error=str(e))
                continue
            by_path.append((parts, layer))
        by_path.sort(key=lambda item: len(item[0]))

        revision = repository.status.artifact.revision if repository.status.artifact else ""
        roots: list[tuple[str, ...]] = []
        published: set[str] = set()
        for parts, layer in by_path:
            enclosing = next((root for root in roots if parts[: len(root)] == root), None)
            if enclosing is not None:
                log.debug(
                    "layer served by enclosing path",
                    layer=layer.name,
                    path="/".join(enclosing),
                )
                published.add(layer.name)
                continue
            # A link published in an earlier pass may already enclose this path.
            link = self.source_tree.enclosing_link(
                repository.namespace, repository.name, "/".join(parts)
            )
            if link is not None:
                repo_root = self.source_tree.layer_path(repository.namespace, repository.name, "")
                parts = link.relative_to(repo_root).parts
            try:
                await asyncio.to_thread(
                    self.source_tree.publish,
                    repository.namespace,
                    repository.name,
                    "/".join(parts),
                    content,
                    revision,
                )
            except PublishError as e:
                log.error("unable to link new data for layer", layer=layer.name, error=str(e))
                continue
            roots.append(parts)
            published.add(layer.name)
        return published
