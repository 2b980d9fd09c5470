from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Iterator, List, Protocol, Sequence

# ============================== Host grid contract ===============================


class ColumnKind(Enum):
    INTEGER = "integer"
    REAL = "real"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    STRING = "string"


@dataclass(frozen=True)
class SourceColumn:
    name: str
    kind: ColumnKind = ColumnKind.STRING
    is_key: bool = False
    default_value: str | None = None
    enabled: bool = True


class GridRecord(Protocol):
    def get_string(self, index: int) -> str | None: ...

    def get_native_object(self, index: int) -> Any: ...


class GridRecords(Protocol):
    """Read-only view of one host table: ordered columns plus an iterable of records."""

    @property
    def columns(self) -> Sequence[SourceColumn]: ...

    def __iter__(self) -> Iterator[GridRecord]: ...


# ============================== In-memory grid ===============================

def format_invariant(value: Any) -> str | None:
    """Normalized string form of a native value, independent of locale."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "∞" if value > 0 else "-∞"
        return repr(value)
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class _Row:
    __slots__ = ("_values",)

    def __init__(self, values: Sequence[Any]):
        self._values = values

    def get_string(self, index: int) -> str | None:
        return format_invariant(self._values[index])

    def get_native_object(self, index: int) -> Any:
        return self._values[index]


class InMemoryGrid:
    """
    Grid backed by Python rows (tuples or dicts keyed by column name).
    Strings derive from the native values unless a row cell is given as str.
    """

    def __init__(self, columns: Iterable[SourceColumn], rows: Iterable[Any] = ()):
        self._columns: List[SourceColumn] = list(columns)
        names = [c.name for c in self._columns]
        self._rows: List[Sequence[Any]] = []
        for row in rows:
            if isinstance(row, dict):
                self._rows.append(tuple(row.get(n) for n in names))
            else:
                values = tuple(row)
                if len(values) != len(names):
                    raise ValueError(f"Row has {len(values)} values, expected {len(names)}")
                self._rows.append(values)

    @property
    def columns(self) -> List[SourceColumn]:
        return self._columns

    def __iter__(self) -> Iterator[_Row]:
        for values in self._rows:
            yield _Row(values)

    def __len__(self) -> int:
        return len(self._rows)
