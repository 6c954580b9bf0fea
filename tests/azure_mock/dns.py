"""Mock of azure.mgmt.dns.DnsManagementClient.

Zones are created synchronously; DNSSEC toggles and zone deletion are
long-running operations resumable from their continuation token.
"""

from __future__ import annotations

import copy
import uuid
from typing import Any

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.dns.v2023_07_01_preview.models import DnssecConfig, Zone

from .state import MockAzureState, make_http_error

NAME_SERVERS = ("ns1-01.azure-dns.com.", "ns2-01.azure-dns.net.")


class _MockZonesOperations:
    def __init__(self, state: MockAzureState) -> None:
        self._state = state

    def _zone_id(self, resource_group_name: str, zone_name: str) -> str:
        return (
            f"/subscriptions/{self._state.subscription_id}/resourceGroups/{resource_group_name}"
            f"/providers/Microsoft.Network/dnszones/{zone_name}"
        )

    def get(self, resource_group_name: str, zone_name: str, **kwargs: Any) -> Zone:
        self._state.record_call("zones.get")
        zone = self._state.zones.get((resource_group_name.lower(), zone_name))
        if zone is None:
            raise ResourceNotFoundError(message=f"DNS zone {zone_name} not found")
        return copy.deepcopy(zone)

    def create_or_update(
        self,
        resource_group_name: str,
        zone_name: str,
        parameters: Zone,
        if_match: str | None = None,
        if_none_match: str | None = None,
        **kwargs: Any,
    ) -> Zone:
        self._state.record_call("zones.create_or_update", mutating=True)
        key = (resource_group_name.lower(), zone_name)
        if if_none_match == "*" and key in self._state.zones:
            raise make_http_error(412, f"DNS zone {zone_name} already exists")

        zone = copy.deepcopy(parameters)
        zone.name = zone_name
        zone.id = self._zone_id(resource_group_name, zone_name)
        zone.etag = uuid.uuid4().hex
        zone.name_servers = list(NAME_SERVERS)
        self._state.zones[key] = zone
        return copy.deepcopy(zone)

    def begin_delete(
        self,
        resource_group_name: str,
        zone_name: str,
        if_match: str | None = None,
        **kwargs: Any,
    ) -> Any:
        token = kwargs.get("continuation_token")
        if token:
            self._state.record_call("zones.begin_delete(resume)")
            return self._state.resume(token)

        self._state.record_call("zones.begin_delete", mutating=True)
        key = (resource_group_name.lower(), zone_name)
        if key not in self._state.zones:
            # Deleting a missing zone succeeds without doing anything
            return self._state.finished_operation("zones.begin_delete")

        def apply() -> None:
            self._state.zones.pop(key, None)
            self._state.dnssec_zones.discard(key)

        return self._state.start_operation("zones.begin_delete", apply)


class _MockDnssecConfigsOperations:
    def __init__(self, state: MockAzureState) -> None:
        self._state = state

    def get(self, resource_group_name: str, zone_name: str, **kwargs: Any) -> DnssecConfig:
        self._state.record_call("dnssec_configs.get")
        key = (resource_group_name.lower(), zone_name)
        if key not in self._state.dnssec_zones:
            raise ResourceNotFoundError(message=f"DNSSEC is not configured for {zone_name}")
        return DnssecConfig()

    def begin_create_or_update(
        self, resource_group_name: str, zone_name: str, **kwargs: Any
    ) -> Any:
        token = kwargs.get("continuation_token")
        if token:
            self._state.record_call("dnssec_configs.begin_create_or_update(resume)")
            return self._state.resume(token)

        self._state.record_call("dnssec_configs.begin_create_or_update", mutating=True)
        key = (resource_group_name.lower(), zone_name)
        if key not in self._state.zones:
            raise ResourceNotFoundError(message=f"DNS zone {zone_name} not found")

        def apply() -> DnssecConfig:
            self._state.dnssec_zones.add(key)
            return DnssecConfig()

        return self._state.start_operation("dnssec_configs.begin_create_or_update", apply)

    def begin_delete(self, resource_group_name: str, zone_name: str, **kwargs: Any) -> Any:
        token = kwargs.get("continuation_token")
        if token:
            self._state.record_call("dnssec_configs.begin_delete(resume)")
            return self._state.resume(token)

        self._state.record_call("dnssec_configs.begin_delete", mutating=True)
        key = (resource_group_name.lower(), zone_name)

        def apply() -> None:
            self._state.dnssec_zones.discard(key)

        return self._state.start_operation("dnssec_configs.begin_delete", apply)


class MockDnsManagementClient:
    """In-memory stand-in for DnsManagementClient."""

    def __init__(
        self,
        state: MockAzureState,
        credential: Any = None,
        subscription_id: str = "",
        api_version: str | None = None,
    ) -> None:
        self.state = state
        self.api_version = api_version
        self.credential = credential
        self.subscription_id = subscription_id or state.subscription_id
        self.zones = _MockZonesOperations(state)
        self.dnssec_configs = _MockDnssecConfigsOperations(state)

    def add_zone(
        self, resource_group_name: str, zone_name: str, *, dnssec: bool = False
    ) -> Zone:
        """Seed an existing zone, bypassing call recording."""
        zone = Zone(location="global")
        zone.name = zone_name
        zone.id = self.zones._zone_id(resource_group_name, zone_name)
        zone.name_servers = list(NAME_SERVERS)
        key = (resource_group_name.lower(), zone_name)
        self.state.zones[key] = zone
        if dnssec:
            self.state.dnssec_zones.add(key)
        return zone
