"""
Unit tests for value coercion

Tests verify:
- Integer, real, timestamp, boolean and text conversion rules
- Unresolved sentinels for missing values in non-nullable columns
- Output rendering with the configured date/time pattern
"""

import pendulum
import pytest

from grid_pg_sync.coercion import (
    DATETIME_UNRESOLVED_VALUE,
    FLOAT_UNRESOLVED_VALUE,
    DestinationColumn,
    ValueCoercer,
    kind_for_pg_type,
    parse_timestamp,
)
from grid_pg_sync.grid import ColumnKind


def col(data_type: str, nullable: bool = True) -> DestinationColumn:
    return DestinationColumn("c", data_type, nullable)


class TestIntegerColumns:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("42", "42"),
            ("-7", "-7"),
            ("1,234", "1234"),
            ("(5)", "-5"),
            ("abc", "0"),
            ("1.5", "0"),
            ("", "0"),
            ("99999999999999999999", "0"),
            ("1e999999999999", "0"),
            ("-1e100000000", "0"),
            ("1E3", "1000"),
        ],
    )
    def test_parse(self, raw, expected):
        assert ValueCoercer().coerce(raw, None, col("bigint")) == expected

    def test_none_in_nullable_column(self):
        assert ValueCoercer().coerce(None, None, col("integer")) is None

    def test_none_in_required_column(self):
        assert ValueCoercer().coerce(None, None, col("integer", nullable=False)) == "0"


class TestRealColumns:

    def test_empty_required_gets_sentinel(self):
        assert ValueCoercer().coerce("", None, col("real", nullable=False)) == FLOAT_UNRESOLVED_VALUE
        assert FLOAT_UNRESOLVED_VALUE == "-1.7E308"

    def test_empty_nullable_is_null(self):
        assert ValueCoercer().coerce("", None, col("double precision")) is None

    def test_nan(self):
        coercer = ValueCoercer()
        assert coercer.coerce("NaN", float("nan"), col("real", nullable=False)) == "-1.7E308"
        assert coercer.coerce("NaN", float("nan"), col("real")) is None

    def test_infinity_glyphs(self):
        coercer = ValueCoercer()
        assert coercer.coerce("∞", None, col("real")) == "1.0E308"
        assert coercer.coerce("-∞", None, col("real")) == "-1.0E308"

    @pytest.mark.parametrize(
        "raw,native,expected",
        [
            ("Infinity", None, "1.0E308"),
            ("-inf", None, "-1.0E308"),
            ("1e999", None, "1.0E308"),
            ("∞", float("inf"), "1.0E308"),
            ("-∞", float("-inf"), "-1.0E308"),
            ("inf", float("inf"), "1.0E308"),
        ],
    )
    def test_infinity_never_reaches_the_column(self, raw, native, expected):
        assert ValueCoercer().coerce(raw, native, col("double precision", nullable=False)) == expected

    def test_nan_spelled_differently(self):
        assert ValueCoercer().coerce("+nan", None, col("real", nullable=False)) == FLOAT_UNRESOLVED_VALUE

    def test_boolean_text_in_numeric_column(self):
        coercer = ValueCoercer()
        assert coercer.coerce("True", True, col("double precision")) == "1"
        assert coercer.coerce("false", False, col("double precision")) == "0"

    def test_native_float_keeps_full_precision(self):
        assert ValueCoercer().coerce("0.1", 0.1, col("double precision")) == "0.1"

    def test_text_number(self):
        assert ValueCoercer().coerce("3", None, col("numeric")) == "3.0"

    def test_unparseable_is_zero(self):
        assert ValueCoercer().coerce("n/a", None, col("real")) == "0.0"


class TestTimestampColumns:

    def test_round_trip_with_default_pattern(self):
        out = ValueCoercer().coerce("2024-03-05 14:07:09", None, col("timestamp without time zone"))
        assert out == "2024-03-05 14:07:09"

    def test_custom_pattern(self):
        out = ValueCoercer("DD/MM/YYYY").coerce("2024-03-05T14:07:09", None, col("date"))
        assert out == "05/03/2024"

    def test_unparseable_becomes_sentinel(self):
        coercer = ValueCoercer()
        assert coercer.coerce("not a date", None, col("timestamp without time zone")) == "2504-01-01 00:00:00"
        assert coercer.coerce("not a date", None, col("timestamp without time zone", False)) == "2504-01-01 00:00:00"

    def test_empty_required_gets_sentinel(self):
        out = ValueCoercer().coerce("", None, col("timestamp without time zone", nullable=False))
        assert out == "2504-01-01 00:00:00"

    def test_empty_nullable_is_null(self):
        assert ValueCoercer().coerce("", None, col("timestamp with time zone")) is None

    def test_sentinel_value(self):
        assert DATETIME_UNRESOLVED_VALUE == pendulum.naive(2504, 1, 1)

    def test_parse_timestamp_date_only(self):
        parsed = parse_timestamp("2024-02-29")
        assert (parsed.year, parsed.month, parsed.day, parsed.hour) == (2024, 2, 29, 0)

    def test_parse_timestamp_garbage(self):
        assert parse_timestamp("yesterday-ish") is None


class TestOtherColumns:

    @pytest.mark.parametrize("raw,expected", [("true", "True"), ("TRUE", "True"), ("yes", "False"), ("", "False")])
    def test_boolean(self, raw, expected):
        assert ValueCoercer().coerce(raw, None, col("boolean")) == expected

    def test_text_passes_through(self):
        assert ValueCoercer().coerce("  hello ", None, col("character varying")) == "  hello "

    def test_empty_text_is_not_null(self):
        assert ValueCoercer().coerce("", None, col("text")) == ""

    @pytest.mark.parametrize(
        "data_type,kind",
        [
            ("integer", ColumnKind.INTEGER),
            ("numeric", ColumnKind.REAL),
            ("timestamp with time zone", ColumnKind.TIMESTAMP),
            ("boolean", ColumnKind.BOOLEAN),
            ("uuid", ColumnKind.STRING),
            (None, ColumnKind.STRING),
        ],
    )
    def test_kind_for_pg_type(self, data_type, kind):
        assert kind_for_pg_type(data_type) is kind
