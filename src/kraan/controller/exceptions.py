"""Controller exceptions.

Transient infrastructure errors, executor failures, configuration errors
and fatal startup errors are kept apart so the reconciler can route each
to its own recovery path.
"""


class KraanError(Exception):
    """Base exception for the layer controller."""


class ClusterAPIError(KraanError):
    """Cluster API request failed (connectivity, listing, persistence)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LayerNotFoundError(ClusterAPIError):
    """Requested AddonsLayer does not exist."""

    def __init__(self, name: str):
        super().__init__(f"AddonsLayer {name} not found", status_code=404)
        self.name = name


class ApplierError(KraanError):
    """An executor call raised an error."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(str(cause) or cause.__class__.__name__)
        self.operation = operation
        self.cause = cause


class ConfigurationError(KraanError):
    """Layer or controller configuration is invalid."""


class DependencyCycleError(ConfigurationError):
    """Layer dependency declarations form a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__("dependency cycle: " + " -> ".join(cycle))
        self.cycle = cycle


class InvalidVersionError(ConfigurationError):
    """Version string cannot be parsed."""


class ArtifactFetchError(KraanError):
    """Downloading or extracting a source artifact failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PublishError(KraanError):
    """Publishing extracted content into the source tree failed."""


class StartupError(KraanError):
    """The controller cannot start (no cluster client or executor)."""
