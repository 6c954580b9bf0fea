"""Main entry point for the Azure Resource Operator.

The operator reads desired-state manifests from its store directory and
drives the matching Azure resources towards them, one control loop per
enabled kind. Authentication is secretless: only a managed identity is used.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import Any

from .config import KIND_CONTAINER_APP, KIND_DNS_ZONE, Config, ConfigurationError
from .container_apps import build_container_app_kind
from .dns_zones import build_dns_zone_kind
from .manager import ControllerManager
from .reconciler import Reconciler, ResourceKind
from .security import SecretlessViolationError, get_credential
from .store import DesiredStateStore, FileStore

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure root logging on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_kinds(config: Config, credential: Any) -> list[ResourceKind]:
    """Assemble the enabled resource kinds.

    Raises:
        ConfigurationError: If an ignored diff field does not exist for its kind.
    """
    builders = {
        KIND_DNS_ZONE: build_dns_zone_kind,
        KIND_CONTAINER_APP: build_container_app_kind,
    }
    kinds = []
    for kind in config.enabled_kinds:
        try:
            kinds.append(builders[kind](config, credential))
        except ValueError as e:
            raise ConfigurationError(f"{kind.upper()}_IGNORE_FIELDS: {e}") from e
    return kinds


def build_manager(
    config: Config,
    kinds: list[ResourceKind],
    store: DesiredStateStore | None = None,
) -> ControllerManager:
    """Wire reconcilers for the given kinds to a store."""
    if store is None:
        store = FileStore(config.store_dir)
    reconcilers = [Reconciler(kind, store, config) for kind in kinds]
    return ControllerManager(reconcilers, store, config)


async def main() -> int:
    """Run the operator until SIGTERM or SIGINT.

    Returns:
        Exit code (0 for success, 1 for configuration or runtime errors,
        2 for security violations).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, config.json_logging)

    logger.info(
        "Starting Azure Resource Operator",
        extra={
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group_name,
            "kinds": list(config.enabled_kinds),
            "store_dir": str(config.store_dir),
        },
    )

    try:
        credential = get_credential(config.managed_identity_client_id)
        manager = build_manager(config, build_kinds(config, credential))
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator container."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
