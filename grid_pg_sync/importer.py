from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Mapping, Sequence

import psycopg2

from grid_pg_sync.ExportConfig import DEFAULT_TIMEOUT_SECONDS
from grid_pg_sync.catalog import create_import_config
from grid_pg_sync.connections import map_connection_error, normalize_dsn, open_connection
from grid_pg_sync.errors import DbConnectionError, GridSyncError
from grid_pg_sync.grid import ColumnKind, SourceColumn, format_invariant
from grid_pg_sync.locks import target_key

LOG = logging.getLogger(__name__)

# result type OID -> host column kind
_OID_KINDS = {
    16: ColumnKind.BOOLEAN,
    20: ColumnKind.INTEGER,
    21: ColumnKind.INTEGER,
    23: ColumnKind.INTEGER,
    700: ColumnKind.REAL,
    701: ColumnKind.REAL,
    1700: ColumnKind.REAL,
    1082: ColumnKind.TIMESTAMP,
    1114: ColumnKind.TIMESTAMP,
    1184: ColumnKind.TIMESTAMP,
}


def kind_for_oid(oid: int) -> ColumnKind:
    return _OID_KINDS.get(oid, ColumnKind.STRING)


# ============================== Connection handle ===============================

class ImportConnection:
    """
    The importer's single owned connection. Rebinding to a different
    connection string closes the current one; a broken connection is
    reopened once before the import gives up.
    """

    def __init__(self, connect: Callable[[str, int], Any] = open_connection):
        self.connect = connect
        self.connection_string: str | None = None
        self.timeout_seconds = DEFAULT_TIMEOUT_SECONDS
        self.conn = None

    @property
    def is_open(self) -> bool:
        return self.conn is not None and not self.conn.closed

    def rebind(self, connection_string: str, timeout_seconds: int) -> None:
        if connection_string != self.connection_string:
            if self.connection_string is not None:
                LOG.info("Connection string changed, closing the current connection")
            self.close()
            self.connection_string = connection_string
        self.timeout_seconds = timeout_seconds

    def open_if_needed(self):
        if self.is_open:
            return self.conn
        if not self.connection_string:
            raise DbConnectionError("No connection string has been bound")
        self.conn = self.connect(normalize_dsn(self.connection_string), self.timeout_seconds)
        return self.conn

    def _ping(self) -> None:
        with self.conn.cursor() as c:
            c.execute("SELECT 1")
            c.fetchone()
        self.conn.rollback()

    def validate_or_reopen(self):
        self.open_if_needed()
        try:
            self._ping()
            return self.conn
        except psycopg2.Error:
            LOG.warning("Connection check failed, reopening", exc_info=True)
        self.close()
        self.open_if_needed()
        try:
            self._ping()
        except psycopg2.Error as e:
            raise (map_connection_error(e) or DbConnectionError(str(e).strip())) from e
        return self.conn

    def close(self) -> None:
        if self.conn is None:
            return
        try:
            if not self.conn.closed:
                self.conn.close()
                LOG.debug("Closed import connection")
        except psycopg2.Error:
            LOG.debug("Error while closing import connection", exc_info=True)
        self.conn = None


# ============================== Query result grid ===============================

class ImportRecord:
    __slots__ = ("_values",)

    def __init__(self, values: Sequence[Any]):
        self._values = values

    def get_string(self, index: int) -> str:
        text = format_invariant(self._values[index])
        return "" if text is None else text

    def get_native_object(self, index: int) -> Any:
        return self._values[index]


class QueryGridRecords:
    """
    Columns and rows of one query. The statement runs once per enumeration:
    reading the columns first reuses that result, and the cached rows are
    released once they have been enumerated.
    """

    def __init__(self, connection: ImportConnection, sql: str):
        self.connection = connection
        self.sql = sql
        self._columns: List[SourceColumn] | None = None
        self._rows: List[tuple] | None = None
        self.executions = 0

    def _execute(self) -> None:
        conn = self.connection.validate_or_reopen()
        t0 = time.perf_counter()
        try:
            with conn.cursor() as c:
                c.execute(self.sql)
                description = c.description or ()
                rows = c.fetchall() if c.description else []
            conn.commit()
        except psycopg2.Error as e:
            try:
                conn.rollback()
            except psycopg2.Error:
                LOG.debug("Rollback after failed import query failed", exc_info=True)
            mapped = map_connection_error(e)
            raise (mapped or GridSyncError(f"There was a problem importing. Err={str(e).strip()}")) from e
        self.executions += 1
        self._columns = [SourceColumn(d.name, kind_for_oid(d.type_code)) for d in description]
        self._rows = rows
        LOG.info("Import query returned %d rows, %d columns (%.3fs)",
                 len(rows), len(self._columns), time.perf_counter() - t0)

    @property
    def columns(self) -> List[SourceColumn]:
        if self._columns is None:
            self._execute()
        return self._columns

    def __iter__(self) -> Iterator[ImportRecord]:
        if self._rows is None:
            self._execute()
        rows, self._rows = self._rows, None
        for values in rows:
            yield ImportRecord(values)


# ============================== Host entry point ===============================

@dataclass
class ImportResult:
    succeeded: bool
    message: str = ""
    records: QueryGridRecords | None = None


class GridImporter:
    name = "PostgreSQL Data Importer"

    def __init__(self, connection: ImportConnection | None = None):
        self.connection = connection or ImportConnection()

    def open_data(self, overall: Mapping[str, Any], table: Mapping[str, Any]) -> ImportResult:
        try:
            cfg = create_import_config(overall, table)
            cfg.validate()
            self.connection.rebind(cfg.connection_string, cfg.timeout_seconds)
            self.connection.validate_or_reopen()
        except GridSyncError as e:
            LOG.error("Import setup failed: %s", e.message)
            return ImportResult(False, e.message)
        return ImportResult(True, records=QueryGridRecords(self.connection, cfg.sql_statement))

    @staticmethod
    def get_data_summary(overall: Mapping[str, Any], table: Mapping[str, Any]) -> str | None:
        try:
            cfg = create_import_config(overall, table)
            cfg.validate()
        except GridSyncError:
            return None
        return f"Bound to {target_key(cfg.dsn)} : '{cfg.sql_statement}' statement"

    def dispose(self) -> None:
        self.connection.close()
