"""
AddonsLayer domain object.

Wraps one layer's descriptor and status for the duration of a single
reconcile pass. Status transitions append a bounded condition history;
pass-scoped flags record whether the status must be persisted and how the
layer should be requeued.
"""

from datetime import UTC, datetime

import structlog

from kraan.controller.api.models import (
    APPLYING_MSG,
    APPLYING_REASON,
    DEPLOYED_REASON,
    FAILED_REASON,
    HOLD_MSG,
    HOLD_REASON,
    K8S_VERSION_MSG,
    K8S_VERSION_REASON,
    PRUNED_MSG,
    PRUNED_REASON,
    PRUNING_MSG,
    PRUNING_REASON,
    AddonsLayer,
    AddonsLayerSpec,
    AddonsLayerStatus,
    Condition,
    LayerState,
)
from kraan.controller.repos.source_tree import convention_path

# Maximum number of conditions retained on a layer status.
MAX_CONDITIONS = 10
ROOT_PATH = "/repos"


class KraanLayer:
    """State holder for a single AddonsLayer reconcile pass."""

    def __init__(
        self,
        addons_layer: AddonsLayer,
        logger: structlog.stdlib.BoundLogger | None = None,
        max_conditions: int = MAX_CONDITIONS,
        root_path: str = ROOT_PATH,
    ) -> None:
        self.addons_layer = addons_layer
        self.log = logger or structlog.get_logger(__name__).bind(layer=addons_layer.name)
        self.max_conditions = max_conditions
        self.root_path = root_path

        self._updated = False
        self._requeue = False
        self._delayed = False
        self._delay = addons_layer.spec.interval

    # ------------------------------------------------------------------
    # Descriptor accessors
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.addons_layer.name

    @property
    def spec(self) -> AddonsLayerSpec:
        return self.addons_layer.spec

    @property
    def full_status(self) -> AddonsLayerStatus:
        return self.addons_layer.status

    @property
    def state(self) -> LayerState:
        return self.addons_layer.status.state

    @property
    def required_k8s_version(self) -> str:
        return self.spec.prereqs.k8s_version

    def is_hold(self) -> bool:
        return self.spec.hold

    def get_source_path(self) -> str:
        """Path to the layer's top directory in the shared source tree."""
        source = self.spec.source
        return str(convention_path(self.root_path, source.namespace, source.name, source.path))

    # ------------------------------------------------------------------
    # Pass-scoped flags
    # ------------------------------------------------------------------

    def set_requeue(self) -> None:
        """Request an immediate requeue."""
        self._requeue = True

    def set_delayed_requeue(self) -> None:
        """Request a requeue after the layer's interval."""
        self._requeue = True
        self._delayed = True

    def is_updated(self) -> bool:
        return self._updated

    def needs_requeue(self) -> bool:
        return self._requeue

    def is_delayed(self) -> bool:
        return self._delayed

    def get_delay(self) -> float:
        return self._delay

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _set_status(self, state: LayerState, reason: str, message: str) -> None:
        status = self.addons_layer.status
        status.conditions.append(
            Condition(
                type=state,
                version=self.spec.version,
                last_transition_time=datetime.now(UTC),
                reason=reason,
                message=message,
            )
        )
        self._trim_conditions()
        status.state = state
        status.version = self.spec.version
        self._updated = True
        self.log.info("layer status changed", state=state.value, reason=reason)

    def _trim_conditions(self) -> None:
        conditions = self.addons_layer.status.conditions
        excess = len(conditions) - self.max_conditions
        if excess > 0:
            del conditions[:excess]

    def status_update(self, state: LayerState, reason: str, message: str = "") -> None:
        self._set_status(state, reason, message)

    def record_condition(self, reason: str, message: str) -> None:
        """Re-assert the current state with a new reason and message.

        Skipped when the latest condition already carries the same reason
        and message, so a stuck layer does not rewrite its status every pass.
        """
        self.record_condition_for(self.state, reason, message)

    def set_hold(self) -> None:
        if self.is_hold() and self.state != LayerState.HOLD:
            self._set_status(LayerState.HOLD, HOLD_REASON, HOLD_MSG)

    def set_status_k8s_version(
        self, reason: str = K8S_VERSION_REASON, message: str = K8S_VERSION_MSG
    ) -> None:
        self.record_condition_for(LayerState.WAITING_FOR_CLUSTER_VERSION, reason, message)

    def set_status_pruning(self) -> None:
        self._set_status(LayerState.PRUNING, PRUNING_REASON, PRUNING_MSG)

    def set_status_pruned(self) -> None:
        self._set_status(LayerState.PRUNED, PRUNED_REASON, PRUNED_MSG)

    def set_status_pruning_to_pruned(self) -> None:
        """Move to Pruned if a prune was in progress or pending."""
        if self.state in (LayerState.PRUNING, LayerState.PRUNE_PENDING):
            self.set_status_pruned()

    def set_status_applying(self) -> None:
        self._set_status(LayerState.APPLYING, APPLYING_REASON, APPLYING_MSG)

    def set_status_deployed(self) -> None:
        if self.state != LayerState.DEPLOYED:
            self._set_status(LayerState.DEPLOYED, DEPLOYED_REASON, "")

    def set_status_failed(self, message: str) -> None:
        self._set_status(LayerState.FAILED, FAILED_REASON, message)

    def record_condition_for(self, state: LayerState, reason: str, message: str) -> None:
        """Transition to ``state`` unless the same condition is already the latest."""
        conditions = self.addons_layer.status.conditions
        if conditions:
            last = conditions[-1]
            if last.type == state and last.reason == reason and last.message == message:
                return
        self._set_status(state, reason, message)
