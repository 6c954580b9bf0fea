"""Field-level drift detection between desired spec and observed resource.

Each tracked field pairs an accessor on the desired spec with one on the
observed resource and a comparison mode. Comparisons are whole-field: any
divergence marks the field changed and the caller replaces the full
resource, never patches the difference.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Comparison(str, Enum):
    """How a field's desired and observed values are compared."""

    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"
    IGNORE = "ignore"


def _fold_case(value: Any) -> Any:
    if isinstance(value, str):
        return value.casefold()
    if isinstance(value, (list, tuple)):
        return tuple(_fold_case(v) for v in value)
    return value


@dataclass(frozen=True)
class FieldPolicy:
    """Comparison rule for one tracked field."""

    name: str
    desired: Callable[[Any], Any]
    observed: Callable[[Any], Any]
    comparison: Comparison = Comparison.EXACT

    def differs(self, spec: Any, resource: Any) -> bool:
        if self.comparison == Comparison.IGNORE:
            return False
        want = self.desired(spec)
        have = self.observed(resource)
        if self.comparison == Comparison.CASE_INSENSITIVE:
            return _fold_case(want) != _fold_case(have)
        return want != have


@dataclass(frozen=True)
class DiffPolicy:
    """Ordered set of field policies for a resource kind."""

    fields: tuple[FieldPolicy, ...]

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def changed_fields(self, spec: Any, resource: Any) -> list[str]:
        """Names of tracked fields whose observed value diverges from spec."""
        return [f.name for f in self.fields if f.differs(spec, resource)]

    def differs(self, spec: Any, resource: Any) -> bool:
        return any(f.differs(spec, resource) for f in self.fields)

    def with_comparison(self, name: str, comparison: Comparison) -> DiffPolicy:
        """Return a copy with one field's comparison replaced.

        Raises:
            ValueError: If the field is not tracked by this policy.
        """
        if name not in self.field_names:
            raise ValueError(f"Unknown diff field '{name}'. Valid fields: {list(self.field_names)}")
        return DiffPolicy(
            tuple(replace(f, comparison=comparison) if f.name == name else f for f in self.fields)
        )

    def ignoring(self, names: Iterable[str]) -> DiffPolicy:
        """Return a copy that ignores the named fields."""
        policy = self
        for name in names:
            policy = policy.with_comparison(name, Comparison.IGNORE)
            logger.info("Drift detection disabled for field", extra={"field": name})
        return policy
