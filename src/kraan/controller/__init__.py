"""
Kraan layer controller.

Deploys AddonsLayers in dependency order:
- Per-layer reconcile state machine (hold, version gate, prune, apply, ready)
- Dependency gating between layers
- Repository artifact sync into a shared source tree
"""

__version__ = "0.1.0"
