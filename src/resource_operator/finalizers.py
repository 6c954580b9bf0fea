"""Deletion guard handling.

An object carrying the guard cannot be erased from the desired-state store.
The reconciler attaches it on first sight and removes it only after remote
cleanup has completed.
"""

from __future__ import annotations

from .models import ManagedObject

FINALIZER_NAME = "azure.resource-operator.io/cleanup"


def has_guard(obj: ManagedObject) -> bool:
    return FINALIZER_NAME in obj.metadata.finalizers


def add_guard(obj: ManagedObject) -> bool:
    """Attach the deletion guard.

    Returns:
        True if the guard was added, False if it was already present.
    """
    if has_guard(obj):
        return False
    obj.metadata.finalizers.append(FINALIZER_NAME)
    return True


def remove_guard(obj: ManagedObject) -> bool:
    """Detach the deletion guard.

    Returns:
        True if the guard was removed, False if it was absent.
    """
    if not has_guard(obj):
        return False
    obj.metadata.finalizers = [f for f in obj.metadata.finalizers if f != FINALIZER_NAME]
    return True
