"""
Executor integration.

The reconciler never creates or deletes layer objects itself; it drives
a LayerApplier through this narrow contract.
"""

__all__ = ["LayerApplier", "load_applier"]

from kraan.controller.apply.interfaces import LayerApplier
from kraan.controller.apply.loader import load_applier
