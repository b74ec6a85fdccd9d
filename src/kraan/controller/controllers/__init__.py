"""
AddonsLayer control loop.

Reconciler, work queue and the controller that drives them.
"""

__all__ = [
    "AddonsLayerReconciler",
    "LayerController",
    "RateLimitingQueue",
    "ReconcileResult",
]

from kraan.controller.controllers.manager import LayerController
from kraan.controller.controllers.reconciler import AddonsLayerReconciler, ReconcileResult
from kraan.controller.controllers.workqueue import RateLimitingQueue
