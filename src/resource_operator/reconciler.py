"""Core reconciliation state machine.

One generic reconciler drives every resource kind. Each pass re-derives the
object's state from the store, so nothing is held in memory between passes:

1. Unguarded: attach the deletion guard and requeue immediately, unless
   deletion was already requested
2. Terminating: drain operations, issue the remote delete, release the guard
3. OperationsPending: poll outstanding operations until they complete
4. Reconciling: create when missing, replace on drift, else publish status

A pass issues at most one mutating remote call, and never while another
operation is outstanding. Retry is expressed only through the returned
disposition; the caller decides when to invoke the next pass.

SECURITY: Timeouts are enforced on all remote calls to prevent indefinite hangs.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import Config
from .diff_policy import DiffPolicy
from .finalizers import add_guard, has_guard, remove_guard
from .models import ManagedObject, ObjectKey, OperationKind, ResourceStatus
from .operations import OperationLog
from .remote import (
    OperationHandle,
    PollResult,
    RemoteAlreadyExists,
    RemoteError,
    RemoteNotFound,
    RemoteResourceClient,
    TerminalRemoteError,
    TransientRemoteError,
)
from .store import ConflictError, DesiredStateStore, ObjectNotFound, StoreError

logger = logging.getLogger(__name__)


class Disposition(str, Enum):
    """What the caller should do after a pass."""

    SUCCESS = "success"  # converged; requeue_after is the drift check interval
    REQUEUE = "requeue"  # progress made; invoke again after requeue_after
    RETRY = "retry"  # transient failure; invoke again with backoff
    FAIL = "fail"  # terminal failure; needs intervention or backoff


class OperationFailed(Exception):
    """Raised when a tracked remote operation finished unsuccessfully."""

    pass


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    kind: str
    key: ObjectKey
    disposition: Disposition = Disposition.SUCCESS
    requeue_after: float | None = None
    error: Exception | None = None
    remote_calls: list[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass completed without error."""
        return self.error is None


@dataclass(frozen=True)
class ResourceKind:
    """Capabilities that specialize the reconciler for one resource kind.

    Attributes:
        name: Kind name as used in manifests and the store.
        client: Remote API for the kind.
        diff_policy: Tracked fields and how they are compared.
        publish: Copies resolved remote identifiers into the object's status.
        is_ready: Whether an observed resource is serving.
    """

    name: str
    client: RemoteResourceClient[Any, Any]
    diff_policy: DiffPolicy
    publish: Callable[[Any, Any], None]
    is_ready: Callable[[Any], bool] = lambda resource: True


class Reconciler:
    """Drives objects of one kind towards their desired state."""

    def __init__(self, kind: ResourceKind, store: DesiredStateStore, config: Config) -> None:
        self._kind = kind
        self._store = store
        self._config = config

    @property
    def kind(self) -> str:
        return self._kind.name

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Run one reconciliation pass for an object.

        Never raises for expected failures; they are reported through the
        result's disposition and error.
        """
        result = ReconcileResult(kind=self._kind.name, key=key)

        try:
            obj = self._store.get(self._kind.name, key)
        except ObjectNotFound:
            logger.debug("Object no longer exists", extra={"kind": self.kind, "key": str(key)})
            return self._finish(result)
        except StoreError as e:
            logger.error(
                "Failed to read object",
                extra={"kind": self.kind, "key": str(key), "error": str(e)},
            )
            self._set(result, Disposition.FAIL, error=e)
            return self._finish(result)

        try:
            await self._reconcile_object(obj, result)
        except ConflictError as e:
            # Concurrent edit: start over from a fresh read
            logger.info(
                "Store write conflict, requeueing",
                extra={"kind": self.kind, "key": str(key), "reason": str(e)},
            )
            self._set(result, Disposition.REQUEUE, 0.0)
        except ObjectNotFound:
            logger.info("Object removed during pass", extra={"kind": self.kind, "key": str(key)})
            self._set(result, Disposition.SUCCESS)
        except StoreError as e:
            logger.error(
                "Store write failed",
                extra={"kind": self.kind, "key": str(key), "error": str(e)},
            )
            self._set(result, Disposition.FAIL, error=e)
        except OperationFailed as e:
            self._set(result, Disposition.FAIL, error=e)
        except TerminalRemoteError as e:
            logger.error(
                "Terminal remote error",
                extra={"kind": self.kind, "key": str(key), "error": str(e), "status_code": e.status_code},
            )
            self._set(result, Disposition.FAIL, error=e)
            self._record_failure(key, str(e))
        except RemoteError as e:
            # Transient errors, and classified errors surfacing where none was expected
            logger.warning(
                "Remote call failed, will retry",
                extra={"kind": self.kind, "key": str(key), "error": str(e)},
            )
            self._set(result, Disposition.RETRY, error=e)

        return self._finish(result)

    async def _reconcile_object(self, obj: ManagedObject, result: ReconcileResult) -> None:
        if not has_guard(obj):
            if obj.deletion_requested:
                # Already released; other finalizers keep the object in the store
                logger.debug(
                    "Waiting for remaining finalizers",
                    extra={
                        "kind": self.kind,
                        "key": str(obj.key),
                        "finalizers": obj.metadata.finalizers,
                    },
                )
                self._set(result, Disposition.SUCCESS)
                return
            add_guard(obj)
            self._store.update(obj)
            logger.info("Deletion guard attached", extra={"kind": self.kind, "key": str(obj.key)})
            self._set(result, Disposition.REQUEUE, 0.0)
            return

        baseline = obj.status.model_copy(deep=True)

        if obj.deletion_requested:
            await self._finalize(obj, baseline, result)
            return

        log = await self._settle(obj, result)
        if log is None:
            return

        await self._converge(obj, log, baseline, result)

    async def _settle(self, obj: ManagedObject, result: ReconcileResult) -> OperationLog | None:
        """Resolve outstanding operations.

        Returns:
            The updated log when nothing is outstanding any more, or None when
            the pass has to stop here (status already persisted).

        Raises:
            OperationFailed: If an operation finished unsuccessfully.
        """
        log = OperationLog(obj.status.operations)
        if not log.pending():
            return log

        failures: list[str] = []
        for record in log.pending():
            try:
                poll: PollResult = await self._call(
                    result, f"poll {record.kind.value}", self._kind.client.poll, obj, record
                )
            except RemoteNotFound:
                logger.warning(
                    "Operation unknown to provider, resolving it",
                    extra={"kind": self.kind, "key": str(obj.key), "operation_name": record.name},
                )
                poll = PollResult(done=True)

            if not poll.done:
                continue

            log = log.resolve(record.name, True, poll.error)
            if poll.error is not None:
                failures.append(f"{record.kind.value} operation failed: {poll.error}")
            elif poll.resource is not None:
                self._kind.publish(obj, poll.resource)

            logger.info(
                "Operation completed",
                extra={
                    "kind": self.kind,
                    "key": str(obj.key),
                    "operation_kind": record.kind.value,
                    "operation_name": record.name,
                    "failed": poll.error is not None,
                },
            )

        obj.status.operations = list(log.records)

        if failures:
            message = "; ".join(failures)
            obj.status.message = message
            obj.status.reconciling = False
            self._store.update_status(obj)
            raise OperationFailed(message)

        if log.pending():
            self._store.update_status(obj)
            logger.info(
                "Operations pending",
                extra={"kind": self.kind, "key": str(obj.key), "pending": len(log.pending())},
            )
            self._set(result, Disposition.REQUEUE, self._config.short_requeue_seconds)
            return None

        return log

    async def _converge(
        self,
        obj: ManagedObject,
        log: OperationLog,
        baseline: ResourceStatus,
        result: ReconcileResult,
    ) -> None:
        client = self._kind.client

        try:
            resource = await self._call(result, "get", client.get, obj)
        except RemoteNotFound:
            logger.info(
                "Remote resource not found, creating",
                extra={"kind": self.kind, "key": str(obj.key), "remote_name": obj.remote_name},
            )
            await self._issue(obj, log, OperationKind.CREATE, baseline, result)
            return

        changed = self._kind.diff_policy.changed_fields(obj.spec, resource)
        if changed:
            logger.info(
                "Drift detected, updating remote resource",
                extra={"kind": self.kind, "key": str(obj.key), "fields": changed},
            )
            await self._issue(obj, log, OperationKind.UPDATE, baseline, result, resource)
            return

        self._kind.publish(obj, resource)
        await self._call(result, "ensure_access", client.ensure_access, obj, resource)

        obj.status.ready = self._kind.is_ready(resource)
        obj.status.reconciling = False
        obj.status.message = None
        obj.status.observed_generation = obj.metadata.generation
        self._persist(obj, baseline)

        self._set(result, Disposition.SUCCESS, self._config.steady_state_requeue_seconds)

    async def _finalize(
        self, obj: ManagedObject, baseline: ResourceStatus, result: ReconcileResult
    ) -> None:
        """Run the deletion protocol; the guard goes only after remote cleanup."""
        if not obj.spec.cleanup_on_delete:
            logger.info(
                "Cleanup on delete disabled, keeping remote resource",
                extra={"kind": self.kind, "key": str(obj.key), "remote_name": obj.remote_name},
            )
            self._release(obj)
            self._set(result, Disposition.SUCCESS)
            return

        log = await self._settle(obj, result)
        if log is None:
            return

        latest = log.latest(OperationKind.DELETE)
        if latest is not None and latest.done and latest.error is None:
            self._release(obj)
            self._set(result, Disposition.SUCCESS)
            return

        await self._issue(obj, log, OperationKind.DELETE, baseline, result)

    async def _issue(
        self,
        obj: ManagedObject,
        log: OperationLog,
        kind: OperationKind,
        baseline: ResourceStatus,
        result: ReconcileResult,
        resource: Any = None,
    ) -> None:
        """Issue one mutating call and record it before returning."""
        client = self._kind.client
        try:
            handle: OperationHandle
            if kind == OperationKind.CREATE:
                handle = await self._call(result, "create", client.create, obj)
            elif kind == OperationKind.UPDATE:
                handle = await self._call(result, "update", client.update, obj, resource)
            else:
                handle = await self._call(result, "delete", client.delete, obj)
        except RemoteAlreadyExists:
            logger.info(
                "Remote resource already exists, retrying shortly",
                extra={"kind": self.kind, "key": str(obj.key)},
            )
            self._persist(obj, baseline)
            self._set(result, Disposition.REQUEUE, self._config.short_requeue_seconds)
            return
        except RemoteNotFound:
            if kind != OperationKind.DELETE:
                raise
            logger.info(
                "Remote resource already gone",
                extra={"kind": self.kind, "key": str(obj.key)},
            )
            self._release(obj)
            self._set(result, Disposition.SUCCESS)
            return

        log = log.record(kind, handle.name, done=handle.done)
        obj.status.operations = list(log.records)
        obj.status.reconciling = True
        if kind != OperationKind.UPDATE:
            obj.status.ready = False
        self._store.update_status(obj)

        logger.info(
            "Remote operation issued",
            extra={
                "kind": self.kind,
                "key": str(obj.key),
                "operation_kind": kind.value,
                "operation_name": handle.name,
                "done": handle.done,
            },
        )
        self._set(result, Disposition.REQUEUE, self._config.short_requeue_seconds)

    def _release(self, obj: ManagedObject) -> None:
        """Remove the deletion guard, letting the store erase the object."""
        if remove_guard(obj):
            self._store.update(obj)
            logger.info("Deletion guard removed", extra={"kind": self.kind, "key": str(obj.key)})

    def _persist(self, obj: ManagedObject, baseline: ResourceStatus) -> None:
        """Write status only if the pass changed it."""
        if obj.status != baseline:
            self._store.update_status(obj)

    def _record_failure(self, key: ObjectKey, message: str) -> None:
        """Surface a terminal failure in the object's status."""
        try:
            current = self._store.get(self._kind.name, key)
            if current.status.message == message:
                return
            current.status.message = message
            self._store.update_status(current)
        except StoreError as e:
            logger.warning(
                "Could not record failure in status",
                extra={"kind": self.kind, "key": str(key), "reason": str(e)},
            )

    async def _call(
        self, result: ReconcileResult, operation: str, fn: Callable[..., Any], *args: Any
    ) -> Any:
        """Run a blocking remote call off the event loop with a timeout.

        Raises:
            TransientRemoteError: If the call exceeds the configured timeout.
        """
        result.remote_calls.append(operation)
        loop = asyncio.get_running_loop()
        timeout = self._config.remote_call_timeout_seconds
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args)),
                timeout=timeout,
            )
        except TimeoutError as e:
            logger.error(
                f"{operation} timed out",
                extra={"kind": self.kind, "timeout_seconds": timeout},
            )
            raise TransientRemoteError(
                f"{operation} timed out after {timeout}s", operation=operation
            ) from e

    @staticmethod
    def _set(
        result: ReconcileResult,
        disposition: Disposition,
        requeue_after: float | None = None,
        error: Exception | None = None,
    ) -> None:
        result.disposition = disposition
        result.requeue_after = requeue_after
        result.error = error

    def _finish(self, result: ReconcileResult) -> ReconcileResult:
        result.end_time = datetime.now(UTC)
        extra: dict[str, Any] = {
            "kind": result.kind,
            "key": str(result.key),
            "disposition": result.disposition.value,
            "requeue_after": result.requeue_after,
            "duration_seconds": result.duration_seconds,
            "remote_calls": result.remote_calls,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.warning("Reconcile pass failed", extra=extra)
        else:
            logger.info("Reconcile pass complete", extra=extra)
        return result
