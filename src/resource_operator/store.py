"""Desired-state store with optimistic concurrency.

Objects are persisted in their manifest layout. Every write is conditional
on the caller's resourceVersion, so a concurrent edit makes the write fail
instead of being silently overwritten. Once deletion has been requested
the object is erased as soon as it carries no finalizers.
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .manifests import ManifestLoadError, build_object, dump_manifest, load_manifest
from .models import ManagedObject, ObjectKey

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".yaml"


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class ObjectNotFound(StoreError):
    """Raised when the requested object does not exist."""

    pass


class ConflictError(StoreError):
    """Raised when a conditional write loses against a concurrent edit."""

    pass


class DesiredStateStore(ABC):
    """Base store implementing the write semantics over a raw backend."""

    @abstractmethod
    def _load(self, kind: str, key: ObjectKey) -> ManagedObject | None:
        """Read an object, or None if absent."""

    @abstractmethod
    def _save(self, obj: ManagedObject) -> None:
        """Persist an object unconditionally."""

    @abstractmethod
    def _erase(self, kind: str, key: ObjectKey) -> None:
        """Remove an object unconditionally."""

    @abstractmethod
    def list_keys(self, kind: str) -> list[ObjectKey]:
        """List identities of all stored objects of a kind."""

    def get(self, kind: str, key: ObjectKey) -> ManagedObject:
        """Fetch an object.

        Raises:
            ObjectNotFound: If the object does not exist.
        """
        obj = self._load(kind, key)
        if obj is None:
            raise ObjectNotFound(f"{kind} {key} not found")
        return obj

    def list_objects(self, kind: str) -> list[ManagedObject]:
        """List all readable objects of a kind; unreadable ones are skipped."""
        objects = []
        for key in self.list_keys(kind):
            try:
                obj = self._load(kind, key)
            except StoreError as e:
                logger.error(
                    "Skipping unreadable object",
                    extra={"kind": kind, "key": str(key), "error": str(e)},
                )
                continue
            if obj is not None:
                objects.append(obj)
        return objects

    def update(self, obj: ManagedObject) -> ManagedObject:
        """Overwrite metadata and spec of an object; status is left untouched.

        The deletion timestamp cannot be cleared through an update, and no
        finalizers can be added once it is set. When deletion was requested
        and no finalizers remain, the object is erased.

        Returns:
            The stored object with its new resourceVersion.

        Raises:
            ObjectNotFound: If the object does not exist.
            ConflictError: If obj is based on a stale resourceVersion.
            StoreError: If finalizers are added to an object being deleted.
        """
        current = self._current_for_write(obj)
        if current.deletion_requested:
            added = set(obj.metadata.finalizers) - set(current.metadata.finalizers)
            if added:
                raise StoreError(
                    f"{obj.kind} {obj.key} is being deleted, cannot add finalizers: "
                    f"{', '.join(sorted(added))}"
                )

        updated = obj.model_copy(deep=True)
        updated.status = current.status.model_copy(deep=True)
        updated.metadata.deletion_timestamp = current.metadata.deletion_timestamp
        updated.metadata.generation = current.metadata.generation
        if updated.spec != current.spec:
            updated.metadata.generation += 1
        updated.metadata.resource_version = current.metadata.resource_version + 1

        if updated.deletion_requested and not updated.metadata.finalizers:
            self._erase(obj.kind, obj.key)
            logger.info(
                "Object erased after finalizers cleared",
                extra={"kind": obj.kind, "key": str(obj.key)},
            )
            return updated

        self._save(updated)
        return updated

    def update_status(self, obj: ManagedObject) -> ManagedObject:
        """Write only the observed status of an object.

        Raises:
            ObjectNotFound: If the object does not exist.
            ConflictError: If obj is based on a stale resourceVersion.
        """
        current = self._current_for_write(obj)

        updated = current.model_copy(deep=True)
        updated.status = obj.status.model_copy(deep=True)
        updated.metadata.resource_version = current.metadata.resource_version + 1
        self._save(updated)
        return updated

    def apply(self, obj: ManagedObject) -> ManagedObject:
        """Create an object or replace its spec and labels (user-side write).

        Raises:
            StoreError: If the object is being deleted.
        """
        current = self._load(obj.kind, obj.key)
        if current is None:
            created = obj.model_copy(deep=True)
            created.status = type(obj.status)()
            created.metadata.resource_version = 1
            created.metadata.generation = 1
            created.metadata.deletion_timestamp = None
            self._save(created)
            logger.info("Object created", extra={"kind": obj.kind, "key": str(obj.key)})
            return created

        if current.deletion_requested:
            raise StoreError(f"{obj.kind} {obj.key} is being deleted")

        updated = current.model_copy(deep=True)
        updated.metadata.labels = dict(obj.metadata.labels)
        if obj.spec != current.spec:
            updated.spec = obj.spec.model_copy(deep=True)
            updated.metadata.generation += 1
        updated.metadata.resource_version += 1
        self._save(updated)
        logger.info(
            "Object configured",
            extra={
                "kind": obj.kind,
                "key": str(obj.key),
                "generation": updated.metadata.generation,
            },
        )
        return updated

    def request_deletion(self, kind: str, key: ObjectKey) -> bool:
        """Mark an object for deletion.

        Returns:
            True if the object was erased immediately (no finalizers),
            False if it now waits for its finalizers to be removed.

        Raises:
            ObjectNotFound: If the object does not exist.
        """
        current = self.get(kind, key)
        if not current.metadata.finalizers:
            self._erase(kind, key)
            logger.info("Object erased", extra={"kind": kind, "key": str(key)})
            return True

        if current.metadata.deletion_timestamp is None:
            current.metadata.deletion_timestamp = datetime.now(UTC)
            current.metadata.resource_version += 1
            self._save(current)
            logger.info(
                "Deletion requested",
                extra={"kind": kind, "key": str(key), "finalizers": current.metadata.finalizers},
            )
        return False

    def _current_for_write(self, obj: ManagedObject) -> ManagedObject:
        current = self._load(obj.kind, obj.key)
        if current is None:
            raise ObjectNotFound(f"{obj.kind} {obj.key} not found")
        if current.metadata.resource_version != obj.metadata.resource_version:
            raise ConflictError(
                f"{obj.kind} {obj.key} was modified: expected resourceVersion "
                f"{obj.metadata.resource_version}, found {current.metadata.resource_version}"
            )
        return current


class InMemoryStore(DesiredStateStore):
    """Store keeping serialized manifests in a dictionary."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, ObjectKey], dict[str, Any]] = {}

    def _load(self, kind: str, key: ObjectKey) -> ManagedObject | None:
        data = self._objects.get((kind, key))
        if data is None:
            return None
        return build_object(data, f"{kind} {key}")

    def _save(self, obj: ManagedObject) -> None:
        self._objects[(obj.kind, obj.key)] = obj.to_manifest()

    def _erase(self, kind: str, key: ObjectKey) -> None:
        self._objects.pop((kind, key), None)

    def list_keys(self, kind: str) -> list[ObjectKey]:
        return sorted(key for (k, key) in self._objects if k == kind)


class FileStore(DesiredStateStore):
    """Store keeping one YAML manifest per object on disk.

    Layout: <root>/<kind>/<namespace>/<name>.yaml
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, kind: str, key: ObjectKey) -> Path:
        return self._root / kind / key.namespace / f"{key.name}{MANIFEST_SUFFIX}"

    def _load(self, kind: str, key: ObjectKey) -> ManagedObject | None:
        path = self._path(kind, key)
        if not path.exists():
            return None
        try:
            return load_manifest(path)
        except ManifestLoadError as e:
            raise StoreError(f"Stored manifest is unreadable: {e}") from e

    def _save(self, obj: ManagedObject) -> None:
        path = self._path(obj.kind, obj.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file and rename so readers never see a partial manifest
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=MANIFEST_SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(dump_manifest(obj))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _erase(self, kind: str, key: ObjectKey) -> None:
        self._path(kind, key).unlink(missing_ok=True)

    def list_keys(self, kind: str) -> list[ObjectKey]:
        kind_dir = self._root / kind
        if not kind_dir.is_dir():
            return []
        return sorted(
            ObjectKey(namespace=path.parent.name, name=path.stem)
            for path in kind_dir.glob(f"*/*{MANIFEST_SUFFIX}")
            if not path.name.startswith(".")
        )
