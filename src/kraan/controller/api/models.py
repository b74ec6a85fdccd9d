"""AddonsLayer and GitRepository resource models.

Field names are snake_case in Python and camelCase on the wire, matching
the custom resource layout served by the cluster API.
"""

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

GROUP = "kraan.io"
VERSION = "v1alpha1"
GROUP_VERSION = f"{GROUP}/{VERSION}"
ADDONS_LAYER_KIND = "AddonsLayer"
GIT_REPOSITORY_KIND = "GitRepository"

DEFAULT_INTERVAL = 60.0


class LayerState(str, Enum):
    """AddonsLayer states, also used as condition types."""

    HOLD = "Hold"
    WAITING_FOR_CLUSTER_VERSION = "WaitingForClusterVersion"
    PRUNE_PENDING = "PrunePending"
    PRUNING = "Pruning"
    PRUNED = "Pruned"
    APPLY_PENDING = "ApplyPending"
    APPLYING = "Applying"
    DEPLOYED = "Deployed"
    FAILED = "Failed"


# Condition reasons and messages
HOLD_REASON = "AddonsLayerHold"
HOLD_MSG = "AddonsLayer is set to hold, no further processing until hold is removed"
K8S_VERSION_REASON = "AddonsLayerK8sVersion"
K8S_VERSION_MSG = "waiting for the cluster api server to reach the required version"
INVALID_K8S_VERSION_REASON = "InvalidK8sVersion"
CLUSTER_VERSION_UNAVAILABLE_REASON = "ClusterVersionUnavailable"
PRUNING_REASON = "AddonsLayerPruning"
PRUNING_MSG = "removing objects no longer defined in the layer"
PRUNED_REASON = "AddonsLayerPruned"
PRUNED_MSG = "obsolete objects removed"
APPLYING_REASON = "AddonsLayerApplying"
APPLYING_MSG = "applying layer objects to the cluster"
DEPLOYED_REASON = "AddonsLayerDeployed"
FAILED_REASON = "AddonsLayerFailed"
DEPENDENCY_NOT_FOUND_REASON = "DependencyNotFound"
DEPENDENCY_CYCLE_REASON = "DependencyCycle"
DEPENDENCY_CHECK_FAILED_REASON = "DependencyCheckFailed"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | int | float) -> float:
    """Parse a Go-style duration ("90s", "1m30s", "1h") into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return float(text)
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Format seconds as a compact Go-style duration string."""
    if seconds != int(seconds):
        return f"{seconds:g}s"
    remaining = int(seconds)
    hours, remaining = divmod(remaining, 3600)
    minutes, secs = divmod(remaining, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


class ResourceModel(BaseModel):
    """Base model for cluster resources."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with wire field names."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class OwnerReference(ResourceModel):
    api_version: str
    kind: str
    name: str
    uid: str | None = None
    controller: bool | None = None


class ObjectMeta(ResourceModel):
    name: str
    namespace: str | None = None
    uid: str | None = None
    resource_version: str | None = None
    generation: int | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    owner_references: list[OwnerReference] = Field(default_factory=list)


class SourceSpec(ResourceModel):
    """Reference to the repository holding a layer's deployable content."""

    namespace: str = Field(alias="nameSpace")
    name: str
    path: str


class PreReqs(ResourceModel):
    k8s_version: str = ""


class AddonsLayerSpec(ResourceModel):
    """Desired state of an AddonsLayer, mutated only by operators."""

    source: SourceSpec
    version: str = ""
    hold: bool = False
    prereqs: PreReqs = Field(default_factory=PreReqs)
    interval: float = DEFAULT_INTERVAL
    depends_on: list[str] = Field(default_factory=list)

    @field_validator("interval", mode="before")
    @classmethod
    def validate_interval(cls, v: Any) -> float:
        if v is None:
            return DEFAULT_INTERVAL
        seconds = parse_duration(v)
        if seconds <= 0:
            raise ValueError("interval must be positive")
        return seconds

    @field_serializer("interval")
    def serialize_interval(self, v: float) -> str:
        return format_duration(v)


class Condition(ResourceModel):
    """A single state transition recorded on the layer status."""

    type: LayerState
    version: str = ""
    status: str = "True"
    last_transition_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reason: str = ""
    message: str = ""


class AddonsLayerStatus(ResourceModel):
    """Observed state, owned by the controller."""

    state: LayerState = LayerState.APPLY_PENDING
    version: str = ""
    conditions: list[Condition] = Field(default_factory=list)


class AddonsLayer(ResourceModel):
    api_version: str = GROUP_VERSION
    kind: str = ADDONS_LAYER_KIND
    metadata: ObjectMeta
    spec: AddonsLayerSpec
    status: AddonsLayerStatus = Field(default_factory=AddonsLayerStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


class Artifact(ResourceModel):
    """Packaged snapshot published by the source tracking system."""

    url: str
    revision: str = ""
    path: str = ""
    checksum: str | None = None
    last_update_time: str | None = None


class GitRepositoryStatus(ResourceModel):
    artifact: Artifact | None = None


class GitRepository(ResourceModel):
    api_version: str = ""
    kind: str = GIT_REPOSITORY_KIND
    metadata: ObjectMeta
    status: GitRepositoryStatus = Field(default_factory=GitRepositoryStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""
