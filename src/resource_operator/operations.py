"""Tracking of asynchronous remote operations across reconcile passes.

The log is an append-only, ordered record of every mutating call issued for
an object, persisted in its observed status. Lookups go through a name index
so resolving a record is a pure function of (records, name, done).
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from .models import OperationKind, OperationRecord


class OperationLog:
    """Immutable ordered log of operation records.

    Every mutator returns a new log and leaves the receiver untouched.
    """

    __slots__ = ("_records", "_index")

    def __init__(self, records: Iterable[OperationRecord] = ()) -> None:
        self._records: tuple[OperationRecord, ...] = tuple(records)
        self._index: dict[str, int] = {}
        for position, record in enumerate(self._records):
            # Later duplicates win so lookups see the most recent record
            self._index[record.name] = position

    @property
    def records(self) -> tuple[OperationRecord, ...]:
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[OperationRecord]:
        return iter(self._records)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OperationLog):
            return NotImplemented
        return self._records == other._records

    def __repr__(self) -> str:
        return f"OperationLog({list(self._records)!r})"

    def get(self, name: str) -> OperationRecord | None:
        """Get the record for a provider operation name."""
        position = self._index.get(name)
        return None if position is None else self._records[position]

    def record(self, kind: OperationKind, name: str, *, done: bool = False) -> OperationLog:
        """Append a record for a newly issued operation."""
        return OperationLog((*self._records, OperationRecord(name=name, kind=kind, done=done)))

    def resolve(self, name: str, done: bool, error: str | None = None) -> OperationLog:
        """Update the done flag of the record matching name.

        Unknown names are ignored so stale or foreign identifiers cannot
        corrupt the log.
        """
        position = self._index.get(name)
        if position is None:
            return self
        current = self._records[position]
        updated = current.model_copy(update={"done": done, "error": error})
        if updated == current:
            return self
        records = list(self._records)
        records[position] = updated
        return OperationLog(records)

    def pending(self) -> list[OperationRecord]:
        """Records whose operation has not completed."""
        return [r for r in self._records if not r.done]

    def pending_of_kind(self, kind: OperationKind) -> list[OperationRecord]:
        return [r for r in self._records if r.kind == kind and not r.done]

    def of_kind(self, kind: OperationKind) -> list[OperationRecord]:
        return [r for r in self._records if r.kind == kind]

    def latest(self, kind: OperationKind) -> OperationRecord | None:
        """Most recently issued record of a kind."""
        for record in reversed(self._records):
            if record.kind == kind:
                return record
        return None
