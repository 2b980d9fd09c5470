from __future__ import annotations

import io
import json
import logging
import math
import struct
import time
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Sequence

from grid_pg_sync.errors import CoercionError

LOG = logging.getLogger(__name__)

# ============================== Wire format ===============================
# COPY ... FROM STDIN (FORMAT BINARY): signature, flags, header extension,
# tuples of (int16 field count, [int32 length | -1 for NULL, payload]...), int16 -1.

SIGNATURE = b"PGCOPY\n\xff\r\n\x00"
HEADER = SIGNATURE + struct.pack("!ii", 0, 0)
TRAILER = struct.pack("!h", -1)
NULL_FIELD = struct.pack("!i", -1)

PG_EPOCH = datetime(2000, 1, 1)
PG_EPOCH_DATE = date(2000, 1, 1)
FLOAT4_MAX = 3.4028234663852886e38

NUMERIC_POS = 0x0000
NUMERIC_NEG = 0x4000
NUMERIC_NAN = 0xC000
NUMERIC_PINF = 0xD000
NUMERIC_NINF = 0xF000

# ============================== Field encoders ===============================

def _pack_int(fmt: str, value: Any, pg_type: str) -> bytes:
    try:
        return struct.pack(fmt, int(value))
    except struct.error:
        raise CoercionError(f"Value {value!r} is out of range for column type {pg_type}") from None

def _overflows_float4(value: Any) -> bool:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(f) and abs(f) > FLOAT4_MAX

def _encode_float4(value: Any) -> bytes:
    f = float(value)
    if _overflows_float4(f):
        f = math.copysign(math.inf, f)
    return struct.pack("!f", f)

def _encode_numeric(value: Any) -> bytes:
    d = value if isinstance(value, Decimal) else Decimal(repr(value) if isinstance(value, float) else str(value))
    if d.is_nan():
        return struct.pack("!hhHh", 0, 0, NUMERIC_NAN, 0)
    if d.is_infinite():
        return struct.pack("!hhHh", 0, 0, NUMERIC_NINF if d < 0 else NUMERIC_PINF, 0)

    sign, digits, exp = d.as_tuple()
    dscale = max(0, -exp)
    text = "".join(str(x) for x in digits)
    if exp > 0:
        text += "0" * exp
        exp = 0
    int_len = len(text) + exp
    if int_len > 0:
        int_part, frac_part = text[:int_len], text[int_len:]
    else:
        int_part, frac_part = "", "0" * (-int_len) + text
    int_part = int_part.zfill((len(int_part) + 3) // 4 * 4)
    frac_part += "0" * ((4 - len(frac_part) % 4) % 4)

    groups = [int(int_part[i:i + 4]) for i in range(0, len(int_part), 4)]
    groups += [int(frac_part[i:i + 4]) for i in range(0, len(frac_part), 4)]
    weight = len(int_part) // 4 - 1
    while groups and groups[0] == 0:
        groups.pop(0)
        weight -= 1
    while groups and groups[-1] == 0:
        groups.pop()
    if not groups:
        weight = 0

    head = struct.pack("!hhHh", len(groups), weight, NUMERIC_NEG if sign else NUMERIC_POS, dscale)
    return head + struct.pack(f"!{len(groups)}h", *groups)

def _encode_timestamp(value: Any) -> bytes:
    if not isinstance(value, datetime):
        raise CoercionError(f"Expected a timestamp, got {value!r}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    # plain datetime arithmetic; pendulum subclasses return a Duration with the same fields
    naive = datetime(
        value.year, value.month, value.day,
        value.hour, value.minute, value.second, value.microsecond,
    )
    delta = naive - PG_EPOCH
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    return struct.pack("!q", micros)

def _encode_date(value: Any) -> bytes:
    if isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        raise CoercionError(f"Expected a date, got {value!r}")
    plain = date(value.year, value.month, value.day)
    return struct.pack("!i", (plain - PG_EPOCH_DATE).days)

def _encode_text(value: Any) -> bytes:
    return str(value).encode("utf-8")

_ENCODERS = {
    "boolean": lambda v: b"\x01" if v else b"\x00",
    "smallint": lambda v: _pack_int("!h", v, "smallint"),
    "integer": lambda v: _pack_int("!i", v, "integer"),
    "bigint": lambda v: _pack_int("!q", v, "bigint"),
    "real": _encode_float4,
    "double precision": lambda v: struct.pack("!d", float(v)),
    "numeric": _encode_numeric,
    "timestamp without time zone": _encode_timestamp,
    "timestamp with time zone": _encode_timestamp,
    "date": _encode_date,
    "uuid": lambda v: uuid.UUID(str(v)).bytes,
    "jsonb": lambda v: b"\x01" + (v if isinstance(v, str) else json.dumps(v)).encode("utf-8"),
}

def encode_field(value: Any, pg_type: str) -> bytes:
    """Length-prefixed binary field for one value of the given destination type."""
    if value is None:
        return NULL_FIELD
    encoder = _ENCODERS.get((pg_type or "").lower(), _encode_text)
    try:
        payload = encoder(value)
    except (ValueError, TypeError, OverflowError) as e:
        raise CoercionError(f"Cannot encode {value!r} as {pg_type}: {e}") from e
    return struct.pack("!i", len(payload)) + payload

# ============================== Writer ===============================

class BinaryCopyWriter:
    """
    Row-at-a-time binary COPY into one table:

        w = BinaryCopyWriter(cursor, 'COPY t ("a","b") FROM STDIN (FORMAT BINARY)', ["integer", "text"])
        w.start_row(); w.write(1); w.write_null()
        w.complete()

    Every `batch_size` rows the buffer is shipped as one complete COPY stream.
    """

    def __init__(self, cursor, copy_sql: str, column_types: Sequence[str], batch_size: int = 20_000):
        self.cursor = cursor
        self.copy_sql = copy_sql
        self.column_types = list(column_types)
        self.batch_size = batch_size
        self.rows_written = 0
        self.chunks_sent = 0
        self.saturated = 0
        self._buffer = bytearray()
        self._buffered_rows = 0
        self._current: List[bytes] | None = None
        self._completed = False

    def start_row(self) -> None:
        self._finish_row()
        if self._buffered_rows >= self.batch_size:
            self._flush()
        self._current = []

    def write(self, value: Any) -> None:
        fields = self._require_row()
        if len(fields) >= len(self.column_types):
            raise CoercionError(f"Row already has {len(self.column_types)} values")
        pg_type = self.column_types[len(fields)]
        if value is not None and pg_type.lower() == "real" and _overflows_float4(value):
            self.saturated += 1
        fields.append(encode_field(value, pg_type))

    def write_null(self) -> None:
        fields = self._require_row()
        if len(fields) >= len(self.column_types):
            raise CoercionError(f"Row already has {len(self.column_types)} values")
        fields.append(NULL_FIELD)

    def complete(self) -> int:
        if self._completed:
            return self.rows_written
        self._finish_row()
        self._flush()
        self._completed = True
        if self.saturated:
            LOG.warning(
                "%d value(s) exceeded the real (float4) range and were stored as +/-Infinity; "
                "use double precision columns to keep them", self.saturated,
            )
        LOG.info("Binary COPY complete: %d rows in %d chunk(s)", self.rows_written, self.chunks_sent)
        return self.rows_written

    def _require_row(self) -> List[bytes]:
        if self._current is None:
            raise RuntimeError("start_row() must be called before writing values")
        return self._current

    def _finish_row(self) -> None:
        if self._current is None:
            return
        if len(self._current) != len(self.column_types):
            raise CoercionError(
                f"Row has {len(self._current)} values, expected {len(self.column_types)}"
            )
        self._buffer += struct.pack("!h", len(self._current))
        for f in self._current:
            self._buffer += f
        self._buffered_rows += 1
        self._current = None

    def _flush(self) -> None:
        if not self._buffered_rows:
            return
        t0 = time.perf_counter()
        stream = io.BytesIO(HEADER + bytes(self._buffer) + TRAILER)
        self.cursor.copy_expert(self.copy_sql, stream)
        self.rows_written += self._buffered_rows
        self.chunks_sent += 1
        LOG.debug(
            "COPY chunk %d sent (%d rows, %d bytes, %.3fs)",
            self.chunks_sent, self._buffered_rows, len(self._buffer), time.perf_counter() - t0,
        )
        self._buffer = bytearray()
        self._buffered_rows = 0
