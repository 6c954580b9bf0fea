"""Azure Mock Context for integration testing.

Provides a context manager that patches the Azure SDK clients constructed by
the operator with in-memory mocks sharing one MockAzureState.
"""

from __future__ import annotations

from typing import Any
from unittest import mock

from .containerapps import MockAuthorizationManagementClient, MockContainerAppsAPIClient
from .credential import MockManagedIdentityCredential, create_mock_credential
from .dns import MockDnsManagementClient
from .state import MockAzureState


class MockAzureContext:
    """Context manager for Azure API mocking in integration tests.

    Patches:
    - azure.identity.ManagedIdentityCredential → MockManagedIdentityCredential
    - DnsManagementClient → MockDnsManagementClient
    - ContainerAppsAPIClient → MockContainerAppsAPIClient
    - AuthorizationManagementClient → MockAuthorizationManagementClient

    Usage:
        with MockAzureContext() as ctx:
            kinds = build_kinds(config, get_credential())
            ...
            assert ctx.state.mutation_count("zones.") == 1
    """

    def __init__(self, *, client_id: str | None = None) -> None:
        self._client_id = client_id
        self._state: MockAzureState | None = None
        self._credential: MockManagedIdentityCredential | None = None
        self._patches: list[Any] = []
        self.dns_clients: list[MockDnsManagementClient] = []
        self.app_clients: list[MockContainerAppsAPIClient] = []
        self.authorization_clients: list[MockAuthorizationManagementClient] = []

    @property
    def state(self) -> MockAzureState:
        """Get the mock Azure state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._state is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._state

    @property
    def credential(self) -> MockManagedIdentityCredential:
        if self._credential is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._credential

    def __enter__(self) -> MockAzureContext:
        self._state = MockAzureState()
        self._credential = create_mock_credential(client_id=self._client_id)
        state = self._state

        def dns_client(
            credential: Any, subscription_id: str, api_version: str | None = None
        ) -> MockDnsManagementClient:
            client = MockDnsManagementClient(state, credential, subscription_id, api_version)
            self.dns_clients.append(client)
            return client

        def app_client(credential: Any, subscription_id: str) -> MockContainerAppsAPIClient:
            client = MockContainerAppsAPIClient(state, credential, subscription_id)
            self.app_clients.append(client)
            return client

        def authorization_client(
            credential: Any, subscription_id: str
        ) -> MockAuthorizationManagementClient:
            client = MockAuthorizationManagementClient(state, credential, subscription_id)
            self.authorization_clients.append(client)
            return client

        self._patches = [
            mock.patch(
                "resource_operator.security.ManagedIdentityCredential",
                return_value=self._credential,
            ),
            mock.patch("resource_operator.dns_zones.DnsManagementClient", side_effect=dns_client),
            mock.patch(
                "resource_operator.container_apps.ContainerAppsAPIClient", side_effect=app_client
            ),
            mock.patch(
                "resource_operator.container_apps.AuthorizationManagementClient",
                side_effect=authorization_client,
            ),
        ]
        for patch in self._patches:
            patch.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()
