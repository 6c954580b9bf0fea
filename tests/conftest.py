"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock and fakes imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import RESOURCE_GROUP, SUBSCRIPTION_ID  # noqa: E402
from fakes import ENVIRONMENT_ID  # noqa: E402
from resource_operator.config import Config  # noqa: E402
from resource_operator.store import InMemoryStore  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Valid configuration with fast timings."""
    return Config(
        subscription_id=SUBSCRIPTION_ID,
        resource_group_name=RESOURCE_GROUP,
        store_dir=tmp_path,
        container_app_environment_id=ENVIRONMENT_ID,
        remote_call_timeout_seconds=5.0,
        operation_poll_wait_seconds=0.0,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Restore root logger handlers replaced by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
