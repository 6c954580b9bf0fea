"""Secretless credential acquisition.

The operator authenticates to Azure only through a managed identity. Service
principal secrets, certificates or passwords in the environment are treated
as a fatal misconfiguration and block startup.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable {env_var} is set. The resource operator only "
    "authenticates with a managed identity: remove the variable and assign a "
    "user-assigned managed identity with RBAC on the target resource groups."
)


class SecretlessViolationError(Exception):
    """Raised when secret-based credentials are present in the environment."""

    pass


def find_credential_env_vars() -> list[str]:
    """Names of forbidden credential variables that are set."""
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if os.environ.get(name)]


def enforce_secretless_architecture() -> None:
    """Refuse to continue when secret-based credentials are configured.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    detected = find_credential_env_vars()
    if detected:
        logger.critical(
            "Secretless architecture violation",
            extra={
                "security_event": "credential_detected",
                "env_vars": detected,
                "action": "startup_blocked",
            },
        )
        raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=detected[0]))

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def get_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Get the managed identity credential used by every Azure client.

    Args:
        client_id: Client ID of a user-assigned identity; None selects the
            system-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
