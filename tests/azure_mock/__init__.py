"""Azure API Mock for Integration Testing.

In-memory implementations of the Azure DNS, Container Apps and Authorization
management clients, so the operator's adapters can be exercised without
Azure connectivity.

Key Features:
- Shared in-memory state for zones, DNSSEC, apps and role assignments
- Long-running operations resumable from continuation tokens
- Step control: complete, fail or forget pending operations
- Error injection per SDK call

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        kinds = build_kinds(config, get_credential())
        ...
        ctx.state.complete_operations()
"""

from .containerapps import MockAuthorizationManagementClient, MockContainerAppsAPIClient
from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .dns import MockDnsManagementClient
from .state import (
    RESOURCE_GROUP,
    SUBSCRIPTION_ID,
    MockAzureState,
    MockPoller,
    OperationStatus,
    make_http_error,
)

__all__ = [
    "RESOURCE_GROUP",
    "SUBSCRIPTION_ID",
    "MockAuthorizationManagementClient",
    "MockAzureContext",
    "MockAzureState",
    "MockContainerAppsAPIClient",
    "MockDnsManagementClient",
    "MockManagedIdentityCredential",
    "MockPoller",
    "OperationStatus",
    "create_mock_credential",
    "make_http_error",
]
