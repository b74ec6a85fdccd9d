"""
AddonsLayer controller.

Feeds reconcile requests into the work queue from layer events, events on
resources a layer controls, repository artifact changes and periodic
resyncs, and runs a bounded pool of workers over the queue.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

from kraan.controller.api.models import ADDONS_LAYER_KIND, GROUP_VERSION, AddonsLayer
from kraan.controller.controllers.reconciler import AddonsLayerReconciler
from kraan.controller.controllers.workqueue import RateLimitingQueue
from kraan.controller.exceptions import ClusterAPIError
from kraan.controller.k8s.interfaces import ClusterClient
from kraan.controller.repos.mapper import RepositoryMapper

logger = structlog.get_logger(__name__)


def _metadata(obj: Any) -> Mapping[str, Any]:
    if isinstance(obj, AddonsLayer):
        return obj.metadata.model_dump(by_alias=True)
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata")
        if isinstance(metadata, Mapping):
            return metadata
    return {}


def layer_owner(obj: Any) -> str | None:
    """Name of the AddonsLayer controlling ``obj``, if any."""
    for ref in _metadata(obj).get("ownerReferences") or []:
        if (
            ref.get("controller")
            and ref.get("apiVersion") == GROUP_VERSION
            and ref.get("kind") == ADDONS_LAYER_KIND
        ):
            return ref.get("name")
    return None


class LayerController:
    """Runs AddonsLayer reconcile passes from a rate limiting work queue."""

    def __init__(
        self,
        client: ClusterClient,
        reconciler: AddonsLayerReconciler,
        mapper: RepositoryMapper | None = None,
        queue: RateLimitingQueue | None = None,
        workers: int = 4,
        reconcile_timeout: float = 900.0,
        resync_period: float = 600.0,
        repository_poll_interval: float = 30.0,
        layer_poll_interval: float = 10.0,
        owned_resource_paths: list[str] | None = None,
    ) -> None:
        self.client = client
        self.reconciler = reconciler
        self.mapper = mapper
        self.queue = queue or RateLimitingQueue()
        self.workers = workers
        self.reconcile_timeout = reconcile_timeout
        self.resync_period = resync_period
        self.repository_poll_interval = repository_poll_interval
        self.layer_poll_interval = layer_poll_interval
        self.owned_resource_paths = list(owned_resource_paths or [])
        # (namespace, name) -> (artifact revision, layers synced at that revision)
        self._synced: dict[tuple[str, str], tuple[str, set[str]]] = {}
        self._layer_versions: dict[str, str] = {}
        self._owned_versions: dict[tuple[str, str, str], str] = {}

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def on_layer_event(self, obj: Any) -> None:
        """An AddonsLayer was created, updated or deleted."""
        name = _metadata(obj).get("name")
        if not name:
            logger.error("layer event without a name, dropping")
            return
        self.queue.add(name)

    def on_owned_resource_event(self, obj: Any) -> None:
        """A resource changed; requeue the layer that controls it."""
        owner = layer_owner(obj)
        if owner:
            logger.debug("owned resource changed", layer=owner)
            self.queue.add(owner)

    async def on_repository_event(self, obj: Any) -> list[str]:
        """A repository artifact changed; sync it and requeue referencing layers."""
        if self.mapper is None:
            return []
        names = await self.mapper.map(obj)
        for name in names:
            self.queue.add(name)
        return names

    async def resync(self) -> int:
        """Queue every layer."""
        layers = await self.client.list_layers()
        for layer in layers:
            self.queue.add(layer.name)
        logger.debug("resync queued layers", count=len(layers))
        return len(layers)

    async def poll_repositories(self) -> None:
        """Sync repositories whose layers have not yet been published at the current revision.

        Layers are remembered per artifact revision once their content is
        published, so a layer whose publish failed is retried on the next
        poll and a new artifact revision syncs every layer again.
        """
        if self.mapper is None:
            return
        for repository in await self.client.list_git_repositories():
            artifact = repository.status.artifact
            if artifact is None:
                continue
            key = (repository.namespace, repository.name)
            revision, synced = self._synced.get(key, ("", set()))
            if revision != artifact.revision:
                synced = set()
            result = await self.mapper.sync(repository, exclude=frozenset(synced))
            for name in result.requests:
                self.queue.add(name)
            synced.update(result.requests)
            self._synced[key] = (artifact.revision, synced)

    async def poll_layers(self) -> None:
        """Queue layers created, changed or deleted since the last poll.

        A layer counts as changed when its ``metadata.generation`` moves,
        so the controller's own status writes do not retrigger it.
        """
        seen: dict[str, str] = {}
        for layer in await self.client.list_layers():
            metadata = layer.metadata
            version = str(
                metadata.generation
                if metadata.generation is not None
                else metadata.resource_version
            )
            seen[layer.name] = version
            if self._layer_versions.get(layer.name) != version:
                self.on_layer_event(layer)
        for name in self._layer_versions.keys() - seen.keys():
            self.on_layer_event({"metadata": {"name": name}})
        self._layer_versions = seen

    async def poll_owned_resources(self) -> None:
        """Queue the controlling layer of every owned resource that changed since the last poll."""
        seen: dict[tuple[str, str, str], str] = {}
        for path in self.owned_resource_paths:
            for obj in await self.client.list_objects(path):
                metadata = _metadata(obj)
                key = (path, metadata.get("namespace") or "", metadata.get("name") or "")
                seen[key] = str(metadata.get("resourceVersion") or "")
                if self._owned_versions.get(key) != seen[key]:
                    self.on_owned_resource_event(obj)
        self._owned_versions = seen

    async def poll_cluster(self) -> None:
        """Poll layers, then the resources they control."""
        await self.poll_layers()
        await self.poll_owned_resources()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def process_next_work_item(self) -> bool:
        """Run one pass for the next queued layer; False once the queue shuts down."""
        name = await self.queue.get()
        if name is None:
            return False

        log = logger.bind(layer=name)
        try:
            result = await asyncio.wait_for(
                self.reconciler.reconcile(name), timeout=self.reconcile_timeout
            )
        except TimeoutError:
            log.error("reconcile timed out", timeout=self.reconcile_timeout)
            self.queue.add_rate_limited(name)
        except Exception as e:
            log.error("reconcile failed", error=str(e), exc_info=True)
            self.queue.add_rate_limited(name)
        else:
            if result.requeue_after > 0:
                self.queue.forget(name)
                self.queue.add_after(name, result.requeue_after)
            elif result.requeue:
                self.queue.add_rate_limited(name)
            else:
                self.queue.forget(name)
        finally:
            self.queue.done(name)
        return True

    async def _worker(self) -> None:
        while await self.process_next_work_item():
            pass

    async def _every(self, period: float, func: Callable[[], Awaitable[Any]], what: str) -> None:
        while True:
            try:
                await func()
            except ClusterAPIError as e:
                logger.warning(f"{what} failed", error=str(e))
            except Exception as e:
                logger.error(f"{what} failed unexpectedly", error=str(e), exc_info=True)
            if period <= 0:
                return
            await asyncio.sleep(period)

    async def run(self) -> None:
        """Run workers and periodic sources until cancelled."""
        logger.info("starting controller", workers=self.workers)
        tasks = [asyncio.create_task(self._worker()) for _ in range(self.workers)]
        tasks.append(asyncio.create_task(self._every(self.resync_period, self.resync, "resync")))
        if self.mapper is not None and self.repository_poll_interval > 0:
            tasks.append(
                asyncio.create_task(
                    self._every(
                        self.repository_poll_interval, self.poll_repositories, "repository poll"
                    )
                )
            )
        if self.layer_poll_interval > 0:
            tasks.append(
                asyncio.create_task(
                    self._every(self.layer_poll_interval, self.poll_cluster, "cluster poll")
                )
            )
        try:
            await asyncio.gather(*tasks)
        finally:
            self.queue.shutdown()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("controller stopped")
