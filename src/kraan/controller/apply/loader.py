"""Load the configured LayerApplier implementation."""

import importlib
from typing import Any

import structlog

from kraan.controller.apply.interfaces import LayerApplier
from kraan.controller.exceptions import StartupError

logger = structlog.get_logger(__name__)


def load_applier(entrypoint: str | None, **kwargs: Any) -> LayerApplier:
    """Import ``module:attribute`` and build the applier.

    The attribute may be a LayerApplier instance, or a class or factory
    that is called with ``kwargs``.

    Raises:
        StartupError: if the entrypoint is missing, cannot be imported,
            or does not produce a LayerApplier.
    """
    if not entrypoint:
        raise StartupError("no executor configured: set EXECUTOR__ENTRYPOINT=module:attribute")

    module_name, _, attribute = entrypoint.partition(":")
    if not module_name or not attribute:
        raise StartupError(f"invalid executor entrypoint {entrypoint!r}, expected module:attribute")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise StartupError(f"cannot import executor module {module_name}: {e}") from e

    target = getattr(module, attribute, None)
    if target is None:
        raise StartupError(f"executor module {module_name} has no attribute {attribute}")

    applier = target if isinstance(target, LayerApplier) else target(**kwargs)
    if not isinstance(applier, LayerApplier):
        raise StartupError(f"executor entrypoint {entrypoint} did not produce a LayerApplier")

    logger.info("executor loaded", entrypoint=entrypoint)
    return applier
