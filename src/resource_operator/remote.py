"""Capability contract for remote cloud resources.

Each resource kind exposes get/create/update/delete/poll against its cloud
API. Adapters translate SDK failures into a small taxonomy the reconciler
dispatches on; it never inspects transport-level codes itself.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.polling import LROPoller

from .models import ManagedObject, OperationRecord

logger = logging.getLogger(__name__)

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Terminal states of a long-running operation that did not succeed
FAILED_OPERATION_STATES = frozenset({"failed", "canceled", "cancelled"})


class RemoteError(Exception):
    """Base class for classified remote failures."""

    def __init__(self, message: str, *, operation: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class RemoteNotFound(RemoteError):
    """The remote resource or operation does not exist."""

    pass


class RemoteAlreadyExists(RemoteError):
    """A create raced with an existing remote resource."""

    pass


class TransientRemoteError(RemoteError):
    """Network failure, throttling or server-side error; retry later."""

    pass


class TerminalRemoteError(RemoteError):
    """Permission or validation failure that needs operator intervention."""

    pass


@dataclass(frozen=True)
class OperationHandle:
    """Handle to a mutation accepted by the provider."""

    name: str
    done: bool = False


@dataclass(frozen=True)
class PollResult:
    """Outcome of polling an operation.

    error is set when the operation finished unsuccessfully.
    """

    done: bool
    resource: Any | None = None
    error: str | None = None


def classify_azure_error(error: AzureError, operation: str = "") -> RemoteError:
    """Map an Azure SDK exception onto the remote error taxonomy.

    Args:
        error: Exception raised by an Azure SDK call.
        operation: Human-readable name of the call for messages.

    Returns:
        The classified error (not raised).
    """
    message = f"{operation}: {error.message or error}" if operation else str(error)
    status_code = getattr(error, "status_code", None)

    if isinstance(error, ResourceNotFoundError):
        return RemoteNotFound(message, operation=operation, status_code=status_code)
    if isinstance(error, (ResourceExistsError, ResourceModifiedError)):
        return RemoteAlreadyExists(message, operation=operation, status_code=status_code)
    if isinstance(error, ClientAuthenticationError):
        return TerminalRemoteError(message, operation=operation, status_code=status_code)
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientRemoteError(message, operation=operation)
    if isinstance(error, HttpResponseError):
        if status_code == 404:
            return RemoteNotFound(message, operation=operation, status_code=status_code)
        if status_code in (409, 412):
            return RemoteAlreadyExists(message, operation=operation, status_code=status_code)
        if status_code is None or status_code in TRANSIENT_STATUS_CODES:
            return TransientRemoteError(message, operation=operation, status_code=status_code)
        return TerminalRemoteError(message, operation=operation, status_code=status_code)
    return TransientRemoteError(message, operation=operation)


@contextmanager
def azure_errors(operation: str) -> Iterator[None]:
    """Translate Azure SDK exceptions raised in the block."""
    try:
        yield
    except AzureError as e:
        raise classify_azure_error(e, operation) from e


def operation_name(action: str, token: str) -> str:
    """Build a tracked operation name from an action and a provider token."""
    return f"{action}:{token}"


def split_operation_name(name: str, operation: str = "") -> tuple[str, str]:
    """Split a tracked operation name into (action, token).

    Raises:
        RemoteNotFound: If the name was not built by operation_name.
    """
    action, sep, token = name.partition(":")
    if not sep or not action or not token:
        raise RemoteNotFound(f"Unrecognized operation name: {name[:64]}", operation=operation)
    return action, token


def wait_for_operation(poller: LROPoller[Any], operation: str, wait_seconds: float) -> PollResult:
    """Wait briefly on a long-running operation and report its outcome.

    A provider-side failure is reported through PollResult.error; failures
    reaching the provider are raised as RemoteError.
    """
    try:
        poller.wait(timeout=wait_seconds)
    except HttpResponseError as e:
        if poller.status().lower() in FAILED_OPERATION_STATES:
            return PollResult(done=True, error=e.message or str(e))
        raise classify_azure_error(e, operation) from e
    except AzureError as e:
        raise classify_azure_error(e, operation) from e

    if not poller.done():
        return PollResult(done=False)

    status = poller.status().lower()
    if status in FAILED_OPERATION_STATES:
        return PollResult(done=True, error=f"{operation} finished in state {poller.status()}")

    with azure_errors(operation):
        return PollResult(done=True, resource=poller.result())


ObjectT = TypeVar("ObjectT", bound=ManagedObject)
ResourceT = TypeVar("ResourceT")


class RemoteResourceClient(ABC, Generic[ObjectT, ResourceT]):
    """Remote resource API for one kind.

    All methods are synchronous; the reconciler runs them off the event loop
    with a timeout. Failures are raised as RemoteError subclasses.
    """

    @abstractmethod
    def get(self, obj: ObjectT) -> ResourceT:
        """Fetch the remote resource.

        Raises:
            RemoteNotFound: If the resource does not exist.
        """

    @abstractmethod
    def create(self, obj: ObjectT) -> OperationHandle:
        """Create the remote resource.

        Raises:
            RemoteAlreadyExists: If the resource already exists.
        """

    @abstractmethod
    def update(self, obj: ObjectT, resource: ResourceT) -> OperationHandle:
        """Replace the remote resource with the full desired state."""

    @abstractmethod
    def delete(self, obj: ObjectT) -> OperationHandle:
        """Delete the remote resource.

        Raises:
            RemoteNotFound: If the resource is already gone.
        """

    @abstractmethod
    def poll(self, obj: ObjectT, record: OperationRecord) -> PollResult:
        """Check progress of a previously issued operation.

        Raises:
            RemoteNotFound: If the provider no longer knows the operation.
        """

    def ensure_access(self, obj: ObjectT, resource: ResourceT) -> None:
        """Apply idempotent, untracked access bindings. No-op by default."""
        return None
