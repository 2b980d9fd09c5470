from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

import pendulum

from grid_pg_sync.ExportConfig import DEFAULT_DATETIME_FORMAT
from grid_pg_sync.grid import ColumnKind

LOG = logging.getLogger(__name__)

# ============================== Sentinels ===============================
# The only hard-coded domain values: downstream consumers read these as "unresolved".

FLOAT_UNRESOLVED_VALUE = "-1.7E308"
DATETIME_UNRESOLVED_VALUE = pendulum.naive(2504, 1, 1)
POSITIVE_INFINITY_VALUE = "1.0E308"
NEGATIVE_INFINITY_VALUE = "-1.0E308"

_INT64_MIN, _INT64_MAX = -(2 ** 63), 2 ** 63 - 1
_INT64_DIGITS = 18

_PG_KINDS = {
    "smallint": ColumnKind.INTEGER,
    "integer": ColumnKind.INTEGER,
    "bigint": ColumnKind.INTEGER,
    "int2": ColumnKind.INTEGER,
    "int4": ColumnKind.INTEGER,
    "int8": ColumnKind.INTEGER,
    "real": ColumnKind.REAL,
    "double precision": ColumnKind.REAL,
    "numeric": ColumnKind.REAL,
    "decimal": ColumnKind.REAL,
    "float4": ColumnKind.REAL,
    "float8": ColumnKind.REAL,
    "boolean": ColumnKind.BOOLEAN,
    "bool": ColumnKind.BOOLEAN,
    "timestamp without time zone": ColumnKind.TIMESTAMP,
    "timestamp with time zone": ColumnKind.TIMESTAMP,
    "timestamp": ColumnKind.TIMESTAMP,
    "timestamptz": ColumnKind.TIMESTAMP,
    "date": ColumnKind.TIMESTAMP,
}


def kind_for_pg_type(data_type: str | None) -> ColumnKind:
    return _PG_KINDS.get((data_type or "").strip().lower(), ColumnKind.STRING)


@dataclass(frozen=True)
class DestinationColumn:
    name: str
    data_type: str
    nullable: bool = True

    @property
    def kind(self) -> ColumnKind:
        return kind_for_pg_type(self.data_type)


# ============================== Parsing helpers ===============================

def _parse_int64(text: str) -> int:
    cleaned = text.strip().replace(",", "")
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = "-" + cleaned[1:-1]
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return 0
    if not number.is_finite() or number.adjusted() > _INT64_DIGITS:
        return 0
    if number != number.to_integral_value():
        return 0
    value = int(number)
    if value < _INT64_MIN or value > _INT64_MAX:
        return 0
    return value


def _parse_double(text: str) -> float:
    try:
        return float(text.strip().replace(",", ""))
    except ValueError:
        return 0.0


def _parse_bool(text: str) -> bool:
    return text.strip().lower() == "true"


def parse_timestamp(text: str) -> pendulum.DateTime | None:
    """Locale-invariant date/time parse; None when the text is not a date."""
    try:
        parsed = pendulum.parse(text.strip(), strict=False)
    except (ValueError, OverflowError, TypeError):
        return None
    if isinstance(parsed, pendulum.DateTime):
        return parsed
    if isinstance(parsed, pendulum.Date):
        return pendulum.naive(parsed.year, parsed.month, parsed.day)
    return None


# ============================== Coercer ===============================

class ValueCoercer:
    """
    Turns one host value into the text form its destination column expects.

    Never raises on bad input: unparseable numbers become 0, missing reals and
    timestamps become the sentinels above (or None when the column is nullable).
    """

    def __init__(self, datetime_pattern: str = DEFAULT_DATETIME_FORMAT):
        self.datetime_pattern = datetime_pattern

    def coerce(self, raw: str | None, native: Any, column: DestinationColumn) -> str | None:
        return self.coerce_kind(raw, native, column.kind, column.nullable)

    def coerce_kind(self, raw: str | None, native: Any, kind: ColumnKind, nullable: bool) -> str | None:
        if raw is None:
            if nullable:
                return None
            raw = ""

        if kind is ColumnKind.INTEGER:
            return str(_parse_int64(raw)) if raw else "0"

        if kind is ColumnKind.REAL:
            return self._coerce_real(raw, native, nullable)

        if kind is ColumnKind.TIMESTAMP:
            if not raw:
                return None if nullable else self.render_timestamp(DATETIME_UNRESOLVED_VALUE)
            parsed = parse_timestamp(raw)
            if parsed is None:
                if LOG.isEnabledFor(logging.DEBUG):
                    LOG.debug("Unparseable timestamp %r -> unresolved sentinel", raw)
                parsed = DATETIME_UNRESOLVED_VALUE
            return self.render_timestamp(parsed)

        if kind is ColumnKind.BOOLEAN:
            return "True" if raw and _parse_bool(raw) else "False"

        return raw

    def _coerce_real(self, raw: str, native: Any, nullable: bool) -> str | None:
        if not raw:
            return None if nullable else FLOAT_UNRESOLVED_VALUE
        lowered = raw.strip().lower()
        if lowered == "nan":
            return None if nullable else FLOAT_UNRESOLVED_VALUE
        if raw == "∞":
            return POSITIVE_INFINITY_VALUE
        if raw == "-∞":
            return NEGATIVE_INFINITY_VALUE
        if lowered in ("true", "false"):
            # destinations that keep booleans in numeric columns
            return "1" if lowered == "true" else "0"
        value = native if isinstance(native, float) else _parse_double(raw)
        if math.isnan(value):
            return None if nullable else FLOAT_UNRESOLVED_VALUE
        if math.isinf(value):
            return POSITIVE_INFINITY_VALUE if value > 0 else NEGATIVE_INFINITY_VALUE
        return repr(value)

    def render_timestamp(self, value: pendulum.DateTime) -> str:
        return value.format(self.datetime_pattern)
