"""
Series store interface.

A generic keyed relational store with upsert-on-conflict and
delete-by-filter semantics.  Repositories talk to this interface only, so
the query dialect of a concrete backend (SQL, PostgREST query strings)
never leaks into pipeline logic.

Values are passed as plain Python objects; ``datetime`` values are
serialised to ISO-8601 by the backend.  Every backend failure surfaces as
:class:`~trendpipe.core.errors.StoreError`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.models import to_iso

FILTER_OPS = frozenset({
    "eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "is_null", "not_null",
})


@dataclass(frozen=True)
class Filter:
    """A single ``column <op> value`` predicate; predicates are AND-ed."""
    column: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")


# Ordering term: (column, descending)
Order = Tuple[str, bool]


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def in_(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def not_in(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "not_in", tuple(values))


def is_null(column: str) -> Filter:
    return Filter(column, "is_null")


def not_null(column: str) -> Filter:
    return Filter(column, "not_null")


def asc(column: str) -> Order:
    return (column, False)


def desc(column: str) -> Order:
    return (column, True)


def encode_value(value: Any) -> Any:
    """Normalise a Python value for the wire / SQL parameter."""
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    return value


class SeriesStore(ABC):
    """Abstract keyed relational store."""

    async def connect(self) -> None:
        """Open connections / create schema.  Default: nothing to do."""

    async def close(self) -> None:
        """Release connections.  Default: nothing to do."""

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Return matching rows as dicts."""

    @abstractmethod
    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict: Sequence[str],
        ignore_duplicates: bool = False,
    ) -> int:
        """Insert rows, merging (or ignoring) rows that hit the *conflict* key.

        Returns the number of rows written.
        """

    @abstractmethod
    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        """Set *values* on every matching row; returns the number of rows changed."""

    @abstractmethod
    async def delete(self, table: str, filters: Sequence[Filter]) -> None:
        """Delete every matching row.  An empty filter list is refused."""
