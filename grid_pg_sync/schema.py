from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Sequence

from grid_pg_sync.coercion import DestinationColumn, ValueCoercer
from grid_pg_sync.errors import ConfigurationError, SchemaMismatchError
from grid_pg_sync.grid import ColumnKind, SourceColumn

LOG = logging.getLogger(__name__)

TEXT_COLUMN_TYPE = "varchar(1000)"

_DDL_TYPES = {
    ColumnKind.REAL: "real",
    ColumnKind.INTEGER: "integer",
    ColumnKind.TIMESTAMP: "timestamp",
    ColumnKind.BOOLEAN: "boolean",
}

# ============================== SQL text helpers ===============================

def qi(ident: str) -> str:
    q = '"' + ident.replace('"', '""') + '"'
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Quoted identifier: raw=%r quoted=%r", ident, q)
    return q

def fq_table(schema: str, table: str) -> str:
    return f"{qi(schema)}.{qi(table)}"

def ql(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"

# ============================== Live catalog ===============================

def schema_exists(conn, schema: str) -> bool:
    with conn.cursor() as c:
        c.execute("SELECT EXISTS (SELECT 1 FROM pg_namespace WHERE nspname = %s)", (schema,))
        row = c.fetchone()
    return bool(row and row[0])


def table_exists(conn, schema: str, table: str) -> bool:
    with conn.cursor() as c:
        LOG.info("Checking existence for %s.%s", schema, table)
        c.execute(
            """
            SELECT EXISTS (
              SELECT 1 FROM information_schema.tables
              WHERE table_schema=%s AND table_name=%s
            )
            """,
            (schema, table),
        )
        exists = bool(c.fetchone()[0])
    LOG.info("Destination table %s.%s exists? %s", schema, table, exists)
    return exists

def get_destination_columns(conn, schema: str, table: str) -> List[DestinationColumn]:
    t0 = time.perf_counter()
    with conn.cursor() as c:
        c.execute(
            """
            SELECT column_name, data_type, is_nullable
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position
            """,
            (schema, table),
        )
        cols = [DestinationColumn(r[0], r[1], r[2] == "YES") for r in c.fetchall()]
    LOG.info(
        "Columns for %s.%s: %s (%.3fs)",
        schema, table, [c.name for c in cols], time.perf_counter() - t0,
    )
    return cols

# ============================== Reconciliation ===============================

@dataclass(frozen=True)
class ColumnAlignment:
    destination: DestinationColumn
    source_index: int | None = None
    source: SourceColumn | None = None

    @property
    def aligned(self) -> bool:
        return self.source_index is not None


def reconcile(
    source_columns: Sequence[SourceColumn],
    enabled: Sequence[bool],
    destination_columns: Sequence[DestinationColumn],
) -> List[ColumnAlignment]:
    """
    Pair every destination column with the enabled source column of the same
    (case-insensitive) name. Destination columns without a partner stay
    unmatched and are not written. Fails when an enabled source column has
    nowhere to go.
    """
    dest_names = {d.name.lower() for d in destination_columns}
    for col, flag in zip(source_columns, enabled):
        if flag and col.name.lower() not in dest_names:
            raise SchemaMismatchError(
                f"{col.name} column name is enabled in the source table, but not in database. "
                "Set 'Drop Create And Repopulate' in Data Export Type to make sure the "
                "source table structure and the database table structure are aligned."
            )

    result: List[ColumnAlignment] = []
    for dest in destination_columns:
        match = None
        for idx, (col, flag) in enumerate(zip(source_columns, enabled)):
            if flag and col.name.lower() == dest.name.lower():
                match = ColumnAlignment(dest, idx, col)
                break
        result.append(match or ColumnAlignment(dest))

    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug(
            "Alignment: %s",
            [(a.destination.name, a.source_index) for a in result],
        )
    return result

def aligned_only(alignments: Sequence[ColumnAlignment]) -> List[ColumnAlignment]:
    return [a for a in alignments if a.aligned]

def enabled_key_column(
    source_columns: Sequence[SourceColumn], enabled: Sequence[bool]
) -> SourceColumn | None:
    keys = [c for c, flag in zip(source_columns, enabled) if flag and c.is_key]
    if len(keys) > 1:
        raise ConfigurationError(
            f"Only one key column is supported; found {', '.join(k.name for k in keys)}"
        )
    return keys[0] if keys else None

# ============================== DDL ===============================

def column_type_for(col: SourceColumn) -> str:
    return _DDL_TYPES.get(col.kind, TEXT_COLUMN_TYPE)

def build_create_statement(
    enabled_columns: Sequence[SourceColumn],
    schema: str,
    table: str,
    coercer: ValueCoercer,
) -> str:
    col_defs = []
    for col in enabled_columns:
        parts = [qi(col.name.lower()), column_type_for(col)]
        if col.is_key:
            parts.append("NOT NULL PRIMARY KEY")
        elif col.default_value:
            default = coercer.coerce_kind(col.default_value, None, col.kind, nullable=True)
            if default is not None:
                parts.append(f"DEFAULT {ql(default)}")
        cd = " ".join(parts)
        col_defs.append(cd)
        LOG.debug("Column definition for create: %s", cd)

    if not col_defs:
        raise ConfigurationError("No Columns Available To Create Table")

    create_sql = f"CREATE TABLE {fq_table(schema, table)} ({', '.join(col_defs)})"
    LOG.debug("CREATE TABLE SQL: %s", create_sql)
    return create_sql
