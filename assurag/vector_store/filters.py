"""Closed metadata predicates evaluated by the vector index."""

from __future__ import annotations

import datetime
import operator
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

Scalar = str | int | float | bool | None

FILTERABLE_FIELDS = frozenset(
    {
        "document_id",
        "source_uri",
        "title",
        "product_category",
        "effective_date",
        "ordinal",
    }
)


class Operator(StrEnum):
    """Comparison applied between an entry's field and the clause value."""

    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


_ORDERING: dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.GT: operator.gt,
    Operator.GTE: operator.ge,
    Operator.LT: operator.lt,
    Operator.LTE: operator.le,
}


def _coerce(value: Any) -> Scalar:  # noqa: ANN401
    # Dates are stored as ISO strings, which order the same way as the dates.
    if isinstance(value, datetime.date):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class FilterClause:
    """One ``field operator value`` test against an entry's metadata."""

    field: str
    operator: Operator
    value: Any

    def __post_init__(self) -> None:
        """Validate the clause and normalize its value.

        Raises:
            ValueError: If the field, operator or value shape is not allowed.
        """
        if self.field not in FILTERABLE_FIELDS:
            msg = (
                f"Cannot filter on '{self.field}'; "
                f"allowed fields: {', '.join(sorted(FILTERABLE_FIELDS))}"
            )
            raise ValueError(msg)
        object.__setattr__(self, "operator", Operator(self.operator))

        if self.operator in {Operator.IN, Operator.NOT_IN}:
            if isinstance(self.value, (str, bytes)) or not hasattr(
                self.value, "__iter__"
            ):
                msg = f"Operator '{self.operator}' needs a collection of values"
                raise ValueError(msg)
            object.__setattr__(
                self, "value", tuple(_coerce(item) for item in self.value)
            )
            return

        value = _coerce(self.value)
        if self.operator in _ORDERING and value is None:
            msg = f"Operator '{self.operator}' needs a non-null value"
            raise ValueError(msg)
        object.__setattr__(self, "value", value)

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        """Return True when the entry's metadata satisfies this clause."""
        actual = metadata.get(self.field)
        if self.operator is Operator.EQ:
            return actual == self.value
        if self.operator is Operator.NE:
            return actual != self.value
        if self.operator is Operator.IN:
            return actual in self.value
        if self.operator is Operator.NOT_IN:
            return actual not in self.value
        if actual is None:
            return False
        try:
            return _ORDERING[self.operator](actual, self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class MetadataFilter:
    """Conjunction of clauses; an entry must satisfy every clause."""

    clauses: tuple[FilterClause, ...] = ()

    @classmethod
    def where(
        cls,
        field_name: str,
        op: Operator | str,
        value: Any,  # noqa: ANN401
    ) -> MetadataFilter:
        """Start a filter with a single clause."""
        return cls((FilterClause(field_name, Operator(op), value),))

    @classmethod
    def all_of(cls, clauses: Iterable[FilterClause]) -> MetadataFilter:
        """Build a filter from existing clauses."""
        return cls(tuple(clauses))

    def and_where(
        self,
        field_name: str,
        op: Operator | str,
        value: Any,  # noqa: ANN401
    ) -> MetadataFilter:
        """Return a new filter with one more clause."""
        return MetadataFilter(
            (*self.clauses, FilterClause(field_name, Operator(op), value))
        )

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        """Return True when every clause matches."""
        return all(clause.matches(metadata) for clause in self.clauses)
