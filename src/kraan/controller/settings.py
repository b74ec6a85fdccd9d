from __future__ import annotations

"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: CONTROLLER__MAX_CONCURRENT_RECONCILES=8
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Controller settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("kraan-controller", description="Application name")
    app_version: str = Field("0.1.0", description="Application version")

    # Shared source tree and artifact host override (REPOS_PATH, SOURCE_HOST)
    repos_path: str = Field("/repos", description="Root of the shared source tree")
    source_host: str | None = Field(
        None, description="host:port used instead of the artifact URL (local runs)"
    )

    # ============================================================
    # Controller
    # ============================================================

    class ControllerSettings(BaseModel):
        """Reconcile loop configuration."""

        max_concurrent_reconciles: int = Field(4, ge=1, description="Worker pool size")
        reconcile_timeout: float = Field(
            900.0, gt=0, description="Deadline for a single reconcile pass in seconds"
        )
        resync_period: float = Field(
            600.0, ge=0, description="Seconds between full resyncs (0 disables)"
        )
        repository_poll_interval: float = Field(
            30.0, ge=0, description="Seconds between repository polls (0 disables)"
        )
        layer_poll_interval: float = Field(
            10.0, ge=0, description="Seconds between layer and owned resource polls (0 disables)"
        )
        base_backoff: float = Field(0.005, gt=0, description="First rate-limited retry delay")
        max_backoff: float = Field(1000.0, gt=0, description="Rate-limited retry ceiling")
        max_conditions: int = Field(10, ge=1, description="Conditions retained per layer")

    controller: ControllerSettings = ControllerSettings()  # type: ignore[call-arg]

    # ============================================================
    # Artifact Sync
    # ============================================================

    class SyncSettings(BaseModel):
        """Artifact download and publish configuration."""

        fetch_timeout: float = Field(15.0, gt=0, description="Artifact download bound in seconds")
        snapshot_retention: int = Field(
            2, ge=1, description="Published snapshots kept per layer source path"
        )

    sync: SyncSettings = SyncSettings()  # type: ignore[call-arg]

    # ============================================================
    # Cluster API
    # ============================================================

    class KubeSettings(BaseModel):
        """Cluster API client configuration."""

        api_url: str | None = Field(None, description="API server URL (in-cluster if unset)")
        token: str | None = Field(None, description="Bearer token")
        token_path: str = Field(
            "/var/run/secrets/kubernetes.io/serviceaccount/token",
            description="Service account token file",
        )
        ca_path: str = Field(
            "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt",
            description="Service account CA bundle",
        )
        verify_ssl: bool = Field(True, description="Verify API server certificate")
        timeout: float = Field(30.0, gt=0, description="Request timeout in seconds")
        group: str = Field("kraan.io", description="AddonsLayer API group")
        version: str = Field("v1alpha1", description="AddonsLayer API version")
        source_group: str = Field(
            "source.toolkit.fluxcd.io", description="GitRepository API group"
        )
        source_version: str = Field("v1alpha1", description="GitRepository API version")
        owned_resources: list[str] = Field(
            default_factory=lambda: ["/apis/helm.toolkit.fluxcd.io/v2beta1/helmreleases"],
            description="Collections polled for objects controlled by an AddonsLayer",
        )

    kube: KubeSettings = KubeSettings()  # type: ignore[call-arg]

    # ============================================================
    # Executor
    # ============================================================

    class ExecutorSettings(BaseModel):
        """Apply/prune executor loading."""

        entrypoint: str | None = Field(
            None, description="module:attribute of the LayerApplier implementation"
        )

    executor: ExecutorSettings = ExecutorSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    @field_validator("repos_path")
    def validate_repos_path(cls, v: str) -> str:
        """Validate repos path."""
        if not v:
            raise ValueError("repos_path must not be empty")
        return v.rstrip("/") or "/"


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None

