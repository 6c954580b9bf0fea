"""Azure DNS zone adapter.

Zone creation is a synchronous PUT; DNSSEC is toggled through its own
long-running operations, and zone deletion is long-running as well. Only the
DNSSEC state is tracked for drift, mirroring what can be changed on a zone
after creation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from azure.mgmt.dns import DnsManagementClient
from azure.mgmt.dns.v2023_07_01_preview.models import Zone

from .config import KIND_DNS_ZONE, Config
from .diff_policy import Comparison, DiffPolicy, FieldPolicy
from .models import DnsZoneObject, OperationRecord
from .reconciler import ResourceKind
from .remote import (
    OperationHandle,
    PollResult,
    RemoteNotFound,
    RemoteResourceClient,
    azure_errors,
    operation_name,
    split_operation_name,
    wait_for_operation,
)

logger = logging.getLogger(__name__)

# First API version with the dnssec_configs operation group
DNS_API_VERSION = "2023-07-01-preview"

# DNS zones are global resources
ZONE_LOCATION = "global"

# Actions encoded into tracked operation names
ACTION_ZONE_CREATE = "zone-create"
ACTION_ZONE_DELETE = "zone-delete"
ACTION_DNSSEC_ENABLE = "dnssec-enable"
ACTION_DNSSEC_DISABLE = "dnssec-disable"

DNSSEC_ON = "On"
DNSSEC_OFF = "Off"


@dataclass(frozen=True)
class ObservedDnsZone:
    """Normalized view of a remote DNS zone."""

    name: str
    resource_id: str | None = None
    zone_type: str = "Public"
    name_servers: tuple[str, ...] = ()
    dnssec_state: str = DNSSEC_OFF
    tags: dict[str, str] = field(default_factory=dict)


def observe_zone(zone: Zone, dnssec_enabled: bool) -> ObservedDnsZone:
    zone_type = zone.zone_type
    return ObservedDnsZone(
        name=zone.name or "",
        resource_id=zone.id,
        zone_type=getattr(zone_type, "value", zone_type) or "Public",
        name_servers=tuple(zone.name_servers or ()),
        dnssec_state=DNSSEC_ON if dnssec_enabled else DNSSEC_OFF,
        tags=dict(zone.tags or {}),
    )


def build_zone(obj: DnsZoneObject) -> Zone:
    """Build the zone payload for a create."""
    return Zone(
        location=ZONE_LOCATION,
        tags=dict(obj.spec.tags),
        zone_type="Private" if obj.spec.private_zone else "Public",
    )


class AzureDnsZoneClient(RemoteResourceClient[DnsZoneObject, ObservedDnsZone]):
    """Remote API for DnsZone objects backed by azure-mgmt-dns."""

    def __init__(
        self,
        client: DnsManagementClient,
        resource_group_name: str,
        poll_wait_seconds: float = 1.0,
    ) -> None:
        self._client = client
        self._resource_group_name = resource_group_name
        self._poll_wait_seconds = poll_wait_seconds

    def _group(self, obj: DnsZoneObject) -> str:
        return obj.spec.resource_group_name or self._resource_group_name

    def get(self, obj: DnsZoneObject) -> ObservedDnsZone:
        group = self._group(obj)
        zone_name = obj.remote_name

        with azure_errors("get zone"):
            zone = self._client.zones.get(group, zone_name)

        try:
            with azure_errors("get dnssec config"):
                self._client.dnssec_configs.get(group, zone_name)
            dnssec_enabled = True
        except RemoteNotFound:
            dnssec_enabled = False

        return observe_zone(zone, dnssec_enabled)

    def create(self, obj: DnsZoneObject) -> OperationHandle:
        group = self._group(obj)
        zone_name = obj.remote_name

        # if_none_match makes a concurrent creation surface as a conflict
        with azure_errors("create zone"):
            zone = self._client.zones.create_or_update(
                group, zone_name, build_zone(obj), if_none_match="*"
            )

        logger.info(
            "DNS zone created",
            extra={"zone": zone_name, "resource_group": group, "zone_type": zone.zone_type},
        )
        return OperationHandle(
            name=operation_name(ACTION_ZONE_CREATE, zone.etag or zone.id or zone_name),
            done=True,
        )

    def update(self, obj: DnsZoneObject, resource: ObservedDnsZone) -> OperationHandle:
        group = self._group(obj)
        zone_name = obj.remote_name

        if obj.spec.dns_sec_spec.state.lower() == DNSSEC_ON.lower():
            with azure_errors("enable dnssec"):
                poller = self._client.dnssec_configs.begin_create_or_update(group, zone_name)
            action = ACTION_DNSSEC_ENABLE
        else:
            with azure_errors("disable dnssec"):
                poller = self._client.dnssec_configs.begin_delete(group, zone_name)
            action = ACTION_DNSSEC_DISABLE

        logger.info(
            "DNSSEC change started",
            extra={"zone": zone_name, "action": action, "from_state": resource.dnssec_state},
        )
        return OperationHandle(name=operation_name(action, poller.continuation_token()))

    def delete(self, obj: DnsZoneObject) -> OperationHandle:
        group = self._group(obj)
        zone_name = obj.remote_name

        with azure_errors("delete zone"):
            poller = self._client.zones.begin_delete(group, zone_name)

        logger.info("DNS zone deletion started", extra={"zone": zone_name, "resource_group": group})
        return OperationHandle(name=operation_name(ACTION_ZONE_DELETE, poller.continuation_token()))

    def poll(self, obj: DnsZoneObject, record: OperationRecord) -> PollResult:
        group = self._group(obj)
        zone_name = obj.remote_name
        action, token = split_operation_name(record.name, "poll")

        if action == ACTION_ZONE_CREATE:
            return PollResult(done=True)

        with azure_errors(f"resume {action}"):
            if action == ACTION_ZONE_DELETE:
                poller = self._client.zones.begin_delete(group, zone_name, continuation_token=token)
            elif action == ACTION_DNSSEC_ENABLE:
                poller = self._client.dnssec_configs.begin_create_or_update(
                    group, zone_name, continuation_token=token
                )
            elif action == ACTION_DNSSEC_DISABLE:
                poller = self._client.dnssec_configs.begin_delete(
                    group, zone_name, continuation_token=token
                )
            else:
                raise RemoteNotFound(f"Unknown DNS operation action '{action}'", operation="poll")

        result = wait_for_operation(poller, action, self._poll_wait_seconds)
        # Nameservers are published from the next read of the zone
        return PollResult(done=result.done, error=result.error)


def publish_dns_zone(obj: DnsZoneObject, resource: ObservedDnsZone) -> None:
    """Copy the zone's delegation nameservers into status."""
    obj.status.nameservers = list(resource.name_servers)


DNS_ZONE_DIFF_POLICY = DiffPolicy(
    (
        FieldPolicy(
            "dnssecState",
            desired=lambda spec: spec.dns_sec_spec.state,
            observed=lambda resource: resource.dnssec_state,
            comparison=Comparison.CASE_INSENSITIVE,
        ),
    )
)


def build_dns_zone_kind(config: Config, credential: Any, client: Any = None) -> ResourceKind:
    """Assemble the DnsZone kind.

    Args:
        config: Operator configuration.
        credential: Azure credential for the management client.
        client: Preconstructed DNS management client, mainly for tests.
    """
    if client is None:
        client = DnsManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
            api_version=DNS_API_VERSION,
        )

    return ResourceKind(
        name=KIND_DNS_ZONE,
        client=AzureDnsZoneClient(
            client,
            resource_group_name=config.resource_group_name,
            poll_wait_seconds=config.operation_poll_wait_seconds,
        ),
        diff_policy=DNS_ZONE_DIFF_POLICY.ignoring(config.ignored_fields_for(KIND_DNS_ZONE)),
        publish=publish_dns_zone,
    )
