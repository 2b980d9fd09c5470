from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Sequence

import pendulum

from grid_pg_sync.coercion import DestinationColumn, parse_timestamp
from grid_pg_sync.errors import CoercionError
from grid_pg_sync.grid import ColumnKind
from grid_pg_sync.pgcopy import BinaryCopyWriter
from grid_pg_sync.schema import fq_table, qi

LOG = logging.getLogger(__name__)


def new_staging_name() -> str:
    return f"tmptable{uuid.uuid4().hex}"


def to_copy_value(text: str, column: DestinationColumn, pattern: str) -> Any:
    """Typed value for the binary writer from the coercer's text form."""
    kind = column.kind
    try:
        if kind is ColumnKind.INTEGER:
            return int(text)
        if kind is ColumnKind.REAL:
            if column.data_type.lower() in ("numeric", "decimal"):
                return Decimal(text)
            return float(text)
        if kind is ColumnKind.BOOLEAN:
            return text.strip().lower() in ("true", "1")
    except (ValueError, InvalidOperation):
        raise CoercionError(
            f"Value {text!r} is not valid for column {column.name} ({column.data_type})"
        ) from None
    if kind is ColumnKind.TIMESTAMP:
        try:
            return pendulum.from_format(text, pattern)
        except ValueError:
            parsed = parse_timestamp(text)
            if parsed is None:
                raise CoercionError(
                    f"Value {text!r} is not valid for column {column.name} ({column.data_type})"
                ) from None
            return parsed
    return text


class BulkStager:
    """
    Owns one temporary staging table: a zero-row clone of the aligned
    destination columns, filled through binary COPY.
    """

    def __init__(self, datetime_pattern: str, batch_size: int = 20_000, logger: logging.Logger | None = None):
        self.datetime_pattern = datetime_pattern
        self.batch_size = batch_size
        self.log = logger or LOG
        self.staging_table: str | None = None
        self.rows_staged = 0

    def create(self, conn, schema: str, table: str, columns: Sequence[DestinationColumn]) -> str:
        name = new_staging_name()
        col_list = ", ".join(qi(c.name) for c in columns)
        create_sql = (
            f"CREATE TEMP TABLE {qi(name)} AS "
            f"SELECT {col_list} FROM {fq_table(schema, table)} WHERE 1 = 0"
        )
        self.log.debug("Create staging table SQL: %s", create_sql)
        with conn.cursor() as c:
            c.execute(create_sql)
        self.staging_table = name
        self.log.info("Created staging table %s for %s.%s", name, schema, table)
        return name

    def copy_rows(self, conn, columns: Sequence[DestinationColumn], rows: Iterable[Sequence[str | None]]) -> int:
        if self.staging_table is None:
            raise RuntimeError("Staging table has not been created")
        t0 = time.perf_counter()
        col_list = ", ".join(qi(c.name) for c in columns)
        copy_sql = f"COPY {qi(self.staging_table)} ({col_list}) FROM STDIN (FORMAT BINARY)"
        self.log.debug("COPY SQL: %s", copy_sql)

        with conn.cursor() as c:
            writer = BinaryCopyWriter(c, copy_sql, [col.data_type for col in columns], self.batch_size)
            for row_no, row in enumerate(rows, start=1):
                writer.start_row()
                for col, value in zip(columns, row):
                    if value is None:
                        if not col.nullable:
                            raise CoercionError(
                                f"Column {col.name} does not allow nulls but row {row_no} has no value for it"
                            )
                        writer.write_null()
                    else:
                        writer.write(to_copy_value(value, col, self.datetime_pattern))
            self.rows_staged = writer.complete()

        self.log.info(
            "Staged %d rows into %s (%.3fs)",
            self.rows_staged, self.staging_table, time.perf_counter() - t0,
        )
        return self.rows_staged

    def drop(self, conn) -> None:
        if self.staging_table is None:
            return
        drop_sql = f"DROP TABLE IF EXISTS {qi(self.staging_table)}"
        self.log.debug("Drop staging table SQL: %s", drop_sql)
        with conn.cursor() as c:
            c.execute(drop_sql)
        self.log.info("Dropped staging table %s", self.staging_table)
        self.staging_table = None


def staged_rows(records: Iterable[Any], alignments: Sequence, coercer) -> Iterable[List[str | None]]:
    """Coerce every host record into one staged row, in alignment order."""
    for record in records:
        yield [
            coercer.coerce(
                record.get_string(a.source_index),
                record.get_native_object(a.source_index),
                a.destination,
            )
            for a in alignments
        ]
