"""Configuration management with validation.

All settings are validated at load time so the operator fails fast on a
bad environment instead of half-starting and failing inside a reconcile pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Supported resource kinds
KIND_DNS_ZONE = "DnsZone"
KIND_CONTAINER_APP = "ContainerApp"
SUPPORTED_KINDS = (KIND_DNS_ZONE, KIND_CONTAINER_APP)

# Requeue intervals
DEFAULT_SHORT_REQUEUE_SECONDS = 1.0
DEFAULT_STEADY_STATE_REQUEUE_SECONDS = 60.0
DEFAULT_RESYNC_INTERVAL_SECONDS = 30.0

# Remote call bounds
DEFAULT_REMOTE_CALL_TIMEOUT_SECONDS = 60.0
DEFAULT_OPERATION_POLL_WAIT_SECONDS = 1.0
MAX_REMOTE_CALL_TIMEOUT_SECONDS = 900.0

# Scheduler backoff for failed passes
RETRY_BACKOFF_BASE_SECONDS = 5.0
RETRY_BACKOFF_MAX_SECONDS = 300.0

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest

DEFAULT_STORE_DIR = "/var/lib/resource-operator"

# Built-in Reader role, granted to ContainerApp invoke members
DEFAULT_ACCESS_ROLE_DEFINITION_ID = "acdd72a7-3385-48ef-bd42-f606fba81ae7"

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]{1,90}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    subscription_id: str
    resource_group_name: str

    # Desired-state store
    store_dir: Path = field(default_factory=lambda: Path(DEFAULT_STORE_DIR))
    enabled_kinds: tuple[str, ...] = SUPPORTED_KINDS

    # Azure defaults
    container_app_environment_id: str | None = None
    access_role_definition_id: str = DEFAULT_ACCESS_ROLE_DEFINITION_ID
    managed_identity_client_id: str | None = None

    # Timing
    short_requeue_seconds: float = DEFAULT_SHORT_REQUEUE_SECONDS
    steady_state_requeue_seconds: float = DEFAULT_STEADY_STATE_REQUEUE_SECONDS
    resync_interval_seconds: float = DEFAULT_RESYNC_INTERVAL_SECONDS
    remote_call_timeout_seconds: float = DEFAULT_REMOTE_CALL_TIMEOUT_SECONDS
    operation_poll_wait_seconds: float = DEFAULT_OPERATION_POLL_WAIT_SECONDS
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS

    # Diff fields excluded from drift detection, keyed by kind
    ignored_fields: dict[str, tuple[str, ...]] = field(default_factory=dict)

    # Logging
    log_level: str = "INFO"
    json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.resource_group_name:
            errors.append("AZURE_RESOURCE_GROUP is required")
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group_name):
            errors.append(f"AZURE_RESOURCE_GROUP is not a valid name: {self.resource_group_name}")

        if not self.store_dir.is_dir():
            errors.append(f"Store directory does not exist: {self.store_dir}")

        if not self.enabled_kinds:
            errors.append("ENABLED_KINDS must name at least one kind")
        for kind in self.enabled_kinds:
            if kind not in SUPPORTED_KINDS:
                errors.append(f"ENABLED_KINDS contains unknown kind '{kind}'")

        for kind in self.ignored_fields:
            if kind not in SUPPORTED_KINDS:
                errors.append(f"Ignored fields configured for unknown kind '{kind}'")

        if self.short_requeue_seconds <= 0:
            errors.append("SHORT_REQUEUE_SECONDS must be positive")
        if self.steady_state_requeue_seconds < self.short_requeue_seconds:
            errors.append("STEADY_STATE_REQUEUE_SECONDS must not be below SHORT_REQUEUE_SECONDS")
        if self.resync_interval_seconds <= 0:
            errors.append("RESYNC_INTERVAL_SECONDS must be positive")

        if not (0 < self.remote_call_timeout_seconds <= MAX_REMOTE_CALL_TIMEOUT_SECONDS):
            errors.append(
                f"REMOTE_CALL_TIMEOUT_SECONDS must be between 0 and {MAX_REMOTE_CALL_TIMEOUT_SECONDS}"
            )
        if not (0 <= self.operation_poll_wait_seconds < self.remote_call_timeout_seconds):
            errors.append("OPERATION_POLL_WAIT_SECONDS must be below REMOTE_CALL_TIMEOUT_SECONDS")

        if self.retry_backoff_base_seconds <= 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS must be positive")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX_SECONDS must not be below RETRY_BACKOFF_BASE_SECONDS")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def ignored_fields_for(self, kind: str) -> tuple[str, ...]:
        """Get the diff fields ignored for a kind."""
        return self.ignored_fields.get(kind, ())

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_RESOURCE_GROUP: Default resource group for managed resources
            STORE_DIR: Root of the desired-state manifests (default: /var/lib/resource-operator)
            ENABLED_KINDS: Comma-separated kinds to reconcile (default: all)
            CONTAINER_APP_ENVIRONMENT_ID: Default Container Apps managed environment
            ACCESS_ROLE_DEFINITION_ID: Role granted to ContainerApp invoke members
            AZURE_CLIENT_ID: User-assigned managed identity client ID
            SHORT_REQUEUE_SECONDS: Requeue delay while operations are pending (default: 1)
            STEADY_STATE_REQUEUE_SECONDS: Drift check interval (default: 60)
            RESYNC_INTERVAL_SECONDS: Store rescan interval (default: 30)
            REMOTE_CALL_TIMEOUT_SECONDS: Timeout per Azure call (default: 60)
            OPERATION_POLL_WAIT_SECONDS: Wait per operation poll (default: 1)
            RETRY_BACKOFF_BASE_SECONDS / RETRY_BACKOFF_MAX_SECONDS: Failure backoff
            DNSZONE_IGNORE_FIELDS / CONTAINERAPP_IGNORE_FIELDS: Diff fields to ignore
            LOG_LEVEL: Root log level (default: INFO)
            JSON_LOGGING: If "false", log plain text instead of JSON (default: true)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        ignored_fields: dict[str, tuple[str, ...]] = {}
        for kind in SUPPORTED_KINDS:
            fields = get_list(f"{kind.upper()}_IGNORE_FIELDS")
            if fields:
                ignored_fields[kind] = fields

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            resource_group_name=os.environ.get("AZURE_RESOURCE_GROUP", ""),
            store_dir=Path(os.environ.get("STORE_DIR", DEFAULT_STORE_DIR)),
            enabled_kinds=get_list("ENABLED_KINDS") or SUPPORTED_KINDS,
            container_app_environment_id=os.environ.get("CONTAINER_APP_ENVIRONMENT_ID") or None,
            access_role_definition_id=os.environ.get(
                "ACCESS_ROLE_DEFINITION_ID", DEFAULT_ACCESS_ROLE_DEFINITION_ID
            ),
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            short_requeue_seconds=get_float("SHORT_REQUEUE_SECONDS", DEFAULT_SHORT_REQUEUE_SECONDS),
            steady_state_requeue_seconds=get_float(
                "STEADY_STATE_REQUEUE_SECONDS", DEFAULT_STEADY_STATE_REQUEUE_SECONDS
            ),
            resync_interval_seconds=get_float(
                "RESYNC_INTERVAL_SECONDS", DEFAULT_RESYNC_INTERVAL_SECONDS
            ),
            remote_call_timeout_seconds=get_float(
                "REMOTE_CALL_TIMEOUT_SECONDS", DEFAULT_REMOTE_CALL_TIMEOUT_SECONDS
            ),
            operation_poll_wait_seconds=get_float(
                "OPERATION_POLL_WAIT_SECONDS", DEFAULT_OPERATION_POLL_WAIT_SECONDS
            ),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX_SECONDS", RETRY_BACKOFF_MAX_SECONDS
            ),
            ignored_fields=ignored_fields,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            json_logging=get_bool("JSON_LOGGING", True),
        )
