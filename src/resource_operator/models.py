"""Pydantic models for desired-state objects and their observed status.

These models provide:
1. Type-safe manifest parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A stable serialized form for the fields persisted in observed status
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field, field_validator, model_validator

API_VERSION = "azure.resource-operator.io/v1"

DEFAULT_NAMESPACE = "default"

# =============================================================================
# Identity and metadata
# =============================================================================


@dataclass(frozen=True, order=True)
class ObjectKey:
    """Composite identity of a desired-state object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ObjectMeta(BaseModel):
    """Store-owned metadata of a desired-state object."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")]
    namespace: Annotated[
        str, Field(min_length=1, max_length=63, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    ] = DEFAULT_NAMESPACE
    resource_version: int = Field(0, alias="resourceVersion")
    generation: int = 1
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    labels: dict[str, str] = Field(default_factory=dict)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)


# =============================================================================
# Observed status
# =============================================================================


class OperationKind(str, Enum):
    """Kinds of tracked remote mutations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationRecord(BaseModel):
    """Tracked handle to an asynchronous remote mutation.

    name, kind and done are part of the persisted contract and must
    round-trip unchanged.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    name: Annotated[str, Field(min_length=1)]
    kind: OperationKind = Field(alias="operationType")
    done: bool = False
    error: str | None = None


class ResourceStatus(BaseModel):
    """Observed status common to every kind."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    operations: list[OperationRecord] = Field(default_factory=list)
    observed_generation: int | None = Field(None, alias="observedGeneration")
    ready: bool = False
    reconciling: bool = False
    message: str | None = None


class ResourceSpec(BaseModel):
    """Spec fields shared by every kind."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_group_name: str | None = Field(None, alias="resourceGroupName")
    tags: dict[str, str] = Field(default_factory=dict)
    cleanup_on_delete: bool = Field(True, alias="cleanupOnDelete")


class ManagedObject(BaseModel):
    """Desired-state object: identity, user intent and observed status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    KIND: ClassVar[str] = ""

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = ""
    metadata: ObjectMeta
    spec: ResourceSpec
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @model_validator(mode="after")
    def check_kind(self) -> ManagedObject:
        if not self.kind:
            self.kind = self.KIND
        elif self.kind != self.KIND:
            raise ValueError(f"kind must be '{self.KIND}', got '{self.kind}'")
        return self

    @property
    def key(self) -> ObjectKey:
        return self.metadata.key

    @property
    def deletion_requested(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def remote_name(self) -> str:
        """Name of the remote resource owned by this object."""
        return f"{self.metadata.namespace}-{self.metadata.name}"

    def to_manifest(self) -> dict[str, Any]:
        """Serialize to the persisted manifest layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# DnsZone
# =============================================================================


class DnsSecSpec(BaseModel):
    """DNSSEC configuration of a zone."""

    model_config = {"extra": "ignore"}

    state: str = "On"

    @field_validator("state")
    @classmethod
    def validate_state(cls, v: str) -> str:
        # Compared case-insensitively against the remote state
        if v.lower() not in ("on", "off"):
            raise ValueError("state must be 'On' or 'Off'")
        return v


class DnsZoneSpec(ResourceSpec):
    """Desired state of an Azure DNS zone."""

    dns_name: Annotated[str, Field(min_length=1, max_length=253, alias="dnsName")]
    private_zone: bool = Field(False, alias="privateZone")
    dns_sec_spec: DnsSecSpec = Field(default_factory=DnsSecSpec, alias="dnsSecSpec")
    # Zones are kept on object deletion unless explicitly requested
    cleanup_on_delete: bool = Field(False, alias="cleanupOnDelete")

    @field_validator("dns_name")
    @classmethod
    def validate_dns_name(cls, v: str) -> str:
        name = v.rstrip(".").lower()
        labels = name.split(".")
        if len(labels) < 2:
            raise ValueError("dnsName must contain at least two labels")
        for label in labels:
            if not label or len(label) > 63:
                raise ValueError(f"dnsName has an invalid label: '{label}'")
            if label.startswith("-") or label.endswith("-"):
                raise ValueError(f"dnsName label must not start or end with '-': '{label}'")
        if labels[-1].isdigit():
            raise ValueError("dnsName must not end in a numeric label")
        return name


class DnsZoneStatus(ResourceStatus):
    """Observed state of an Azure DNS zone."""

    nameservers: list[str] = Field(default_factory=list)


class DnsZoneObject(ManagedObject):
    KIND: ClassVar[str] = "DnsZone"

    spec: DnsZoneSpec
    status: DnsZoneStatus = Field(default_factory=DnsZoneStatus)

    @property
    def remote_name(self) -> str:
        return self.spec.dns_name


# =============================================================================
# ContainerApp
# =============================================================================


class ProbeType(str, Enum):
    """Probe handlers supported by Azure Container Apps."""

    HTTP_GET = "HTTPGet"
    TCP_SOCKET = "TCPSocket"


class ProbeSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    probe_type: ProbeType = Field(alias="probeType")
    port: Annotated[int, Field(ge=1, le=65535)]
    path: str | None = None

    @model_validator(mode="after")
    def check_path(self) -> ProbeSpec:
        if self.probe_type == ProbeType.HTTP_GET and not self.path:
            raise ValueError("path is required for HTTPGet probes")
        return self


class ContainerProbe(BaseModel):
    """Liveness or startup probe of a container."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    probe_spec: ProbeSpec = Field(alias="probeSpec")
    initial_delay_seconds: Annotated[int, Field(ge=0, le=60, alias="initialDelaySeconds")] = 0
    timeout_seconds: Annotated[int, Field(ge=1, le=240, alias="timeoutSeconds")] = 5
    period_seconds: Annotated[int, Field(ge=1, le=240, alias="periodSeconds")] = 10
    failure_threshold: Annotated[int, Field(ge=1, le=10, alias="failureThreshold")] = 3


class ContainerSpec(BaseModel):
    """A container of the app's revision template."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    image: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(ge=1, le=65535)] | None = None
    liveness_probe: ContainerProbe | None = Field(None, alias="livenessProbe")
    startup_probe: ContainerProbe | None = Field(None, alias="startupProbe")


class TrafficSpec(BaseModel):
    """Traffic share routed to a revision."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    revision: str | None = None
    percent: Annotated[int, Field(ge=0, le=100)]
    latest_revision: bool = Field(False, alias="latestRevision")

    @model_validator(mode="after")
    def check_target(self) -> TrafficSpec:
        if not self.latest_revision and not self.revision:
            raise ValueError("traffic entry needs a revision unless latestRevision is set")
        return self


class ContainerAppSpec(ResourceSpec):
    """Desired state of an Azure Container App."""

    location: Annotated[str, Field(min_length=1)]
    environment_id: str | None = Field(None, alias="environmentId")
    containers: Annotated[list[ContainerSpec], Field(min_length=1)]
    traffic: list[TrafficSpec] = Field(default_factory=list)
    ingress_external: bool = Field(True, alias="ingressExternal")
    invoke_members: list[str] = Field(default_factory=list, alias="invokeMembers")

    @field_validator("traffic")
    @classmethod
    def validate_traffic(cls, v: list[TrafficSpec]) -> list[TrafficSpec]:
        if v and sum(t.percent for t in v) != 100:
            raise ValueError("traffic percentages must sum to 100")
        return v

    @field_validator("containers")
    @classmethod
    def validate_unique_names(cls, v: list[ContainerSpec]) -> list[ContainerSpec]:
        names = [c.name for c in v]
        if len(names) != len(set(names)):
            raise ValueError("container names must be unique")
        return v

    @model_validator(mode="after")
    def check_ingress(self) -> ContainerAppSpec:
        # Traffic splitting is configured on ingress, which needs a target port
        if self.traffic and self.target_port is None:
            raise ValueError("traffic requires a container with a port")
        return self

    @property
    def target_port(self) -> int | None:
        """Ingress target port: the first container port declared."""
        for container in self.containers:
            if container.port is not None:
                return container.port
        return None


class ContainerAppStatus(ResourceStatus):
    """Observed state of an Azure Container App."""

    uri: str | None = None
    latest_ready_revision: str | None = Field(None, alias="latestReadyRevision")
    revisions: list[str] = Field(default_factory=list)


class ContainerAppObject(ManagedObject):
    KIND: ClassVar[str] = "ContainerApp"

    spec: ContainerAppSpec
    status: ContainerAppStatus = Field(default_factory=ContainerAppStatus)


# =============================================================================
# Kind Registry
# =============================================================================

OBJECT_REGISTRY: dict[str, type[ManagedObject]] = {
    DnsZoneObject.KIND: DnsZoneObject,
    ContainerAppObject.KIND: ContainerAppObject,
}


def get_object_class(kind: str) -> type[ManagedObject]:
    """Get the object class for a kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    object_class = OBJECT_REGISTRY.get(kind)
    if object_class is None:
        valid_kinds = list(OBJECT_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return object_class
