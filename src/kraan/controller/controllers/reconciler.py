"""
AddonsLayer reconciler.

One call to ``reconcile`` is one evaluation pass for one layer. The pass
evaluates, in order, hold, the cluster version gate, pruning, applying and
readiness, and stops at the first step that takes an action. At most one
executor mutation (prune or apply) is issued per pass.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from kraan.controller.api.models import (
    CLUSTER_VERSION_UNAVAILABLE_REASON,
    DEPENDENCY_CHECK_FAILED_REASON,
    DEPENDENCY_CYCLE_REASON,
    DEPENDENCY_NOT_FOUND_REASON,
    INVALID_K8S_VERSION_REASON,
)
from kraan.controller.apply.interfaces import LayerApplier
from kraan.controller.exceptions import (
    ApplierError,
    ClusterAPIError,
    InvalidVersionError,
    LayerNotFoundError,
)
from kraan.controller.k8s.interfaces import ClusterClient
from kraan.controller.layers.dependencies import DependencyResolver
from kraan.controller.layers.layer import MAX_CONDITIONS, ROOT_PATH, KraanLayer
from kraan.controller.layers.versions import version_satisfies

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ReconcileResult:
    """Scheduling decision for a finished pass."""

    requeue: bool = False
    requeue_after: float = 0.0


class AddonsLayerReconciler:
    """Runs reconcile passes for AddonsLayers."""

    def __init__(
        self,
        client: ClusterClient,
        applier: LayerApplier,
        resolver: DependencyResolver | None = None,
        max_conditions: int = MAX_CONDITIONS,
        root_path: str = ROOT_PATH,
    ) -> None:
        self.client = client
        self.applier = applier
        self.resolver = resolver or DependencyResolver(client)
        self.max_conditions = max_conditions
        self.root_path = root_path

    async def reconcile(self, name: str) -> ReconcileResult:
        """Run one pass for the named layer.

        A layer that no longer exists is a no-op. Errors loading the layer
        or persisting its status are raised to the caller.
        """
        try:
            addons_layer = await self.client.get_layer(name)
        except LayerNotFoundError:
            logger.debug("layer not found, nothing to do", layer=name)
            return ReconcileResult()

        log = logger.bind(layer=name)
        layer = KraanLayer(
            addons_layer,
            logger=log,
            max_conditions=self.max_conditions,
            root_path=self.root_path,
        )

        try:
            await self.process_addons_layer(layer)
        except ApplierError as e:
            log.error("executor call failed", operation=e.operation, error=str(e))
            layer.set_status_failed(str(e))
            layer.set_requeue()

        return await self.update_requeue(layer)

    async def process_addons_layer(self, layer: KraanLayer) -> None:
        layer.log.debug("processing", state=layer.state.value)

        if layer.is_hold():
            layer.set_hold()
            return

        if not await self.check_k8s_version(layer):
            layer.set_delayed_requeue()
            return

        if await self.process_prune(layer):
            return

        if await self.process_apply(layer):
            return

        await self.check_success(layer)

    async def check_k8s_version(self, layer: KraanLayer) -> bool:
        """Return True if the cluster meets the layer's version prerequisite.

        Records why not on the layer otherwise.
        """
        required = layer.required_k8s_version
        if not required:
            return True

        try:
            current = await self.client.server_version()
        except ClusterAPIError as e:
            layer.log.warning("failed to get server version", error=str(e))
            layer.record_condition(
                CLUSTER_VERSION_UNAVAILABLE_REASON,
                f"failed to obtain cluster api server version: {e}",
            )
            return False

        try:
            satisfied = version_satisfies(current, required)
        except InvalidVersionError as e:
            layer.set_status_k8s_version(INVALID_K8S_VERSION_REASON, str(e))
            return False

        if not satisfied:
            layer.log.info("cluster version below prerequisite", current=current, required=required)
            layer.set_status_k8s_version()
        return satisfied

    async def process_prune(self, layer: KraanLayer) -> bool:
        """Prune obsolete objects; True if the pass took an action."""
        prune_is_required, objects = await self._call(
            "PruneIsRequired", self.applier.prune_is_required, layer
        )
        if not prune_is_required:
            layer.set_status_pruning_to_pruned()
            return False

        layer.set_status_pruning()
        await self._call("Prune", self.applier.prune, layer, objects)
        layer.set_delayed_requeue()
        return True

    async def process_apply(self, layer: KraanLayer) -> bool:
        """Apply pending changes once dependencies are deployed; True if the pass stopped here."""
        apply_is_required = await self._call(
            "ApplyIsRequired", self.applier.apply_is_required, layer
        )
        if not apply_is_required:
            return False

        layer.log.info("apply required", version=layer.spec.version)
        if not await self.dependencies_deployed(layer):
            layer.set_delayed_requeue()
            return True

        layer.set_status_applying()
        await self._call("Apply", self.applier.apply, layer)
        layer.set_delayed_requeue()
        return True

    async def dependencies_deployed(self, layer: KraanLayer) -> bool:
        try:
            check = await self.resolver.check(layer.addons_layer)
        except ClusterAPIError as e:
            layer.log.warning("failed to list layers for dependency check", error=str(e))
            layer.record_condition(
                DEPENDENCY_CHECK_FAILED_REASON, f"unable to check dependencies: {e}"
            )
            return False

        if check.cycle:
            layer.record_condition(
                DEPENDENCY_CYCLE_REASON, "dependency cycle: " + " -> ".join(check.cycle)
            )
        elif check.missing:
            layer.record_condition(
                DEPENDENCY_NOT_FOUND_REASON,
                "dependencies not found: " + ", ".join(sorted(check.missing)),
            )
        elif check.pending:
            layer.log.info("waiting for dependencies", pending=check.pending)
        return check.satisfied

    async def check_success(self, layer: KraanLayer) -> None:
        ready = await self._call("ApplyWasSuccessful", self.applier.apply_was_successful, layer)
        if not ready:
            layer.set_delayed_requeue()
            return
        layer.set_status_deployed()

    async def update_requeue(self, layer: KraanLayer) -> ReconcileResult:
        """Persist status changes, then turn the pass flags into a scheduling decision."""
        if layer.is_updated():
            try:
                await self.client.update_layer_status(layer.addons_layer)
            except ClusterAPIError as e:
                layer.log.error("unable to update AddonsLayer status", error=str(e))
                raise

        if layer.needs_requeue():
            if layer.is_delayed():
                return ReconcileResult(requeue=True, requeue_after=layer.get_delay())
            return ReconcileResult(requeue=True)
        return ReconcileResult()

    async def _call(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        """Run an executor call, wrapping any failure in ApplierError."""
        try:
            return await func(*args)
        except Exception as e:
            raise ApplierError(operation, e) from e
