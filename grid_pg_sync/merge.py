from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Dict, List, Sequence

from grid_pg_sync.ExportConfig import MergeSyntax, SyncMode
from grid_pg_sync.errors import ConfigurationError
from grid_pg_sync.schema import fq_table, qi

LOG = logging.getLogger(__name__)


class MergeState(Enum):
    NOOP = "noop"
    DROP_IF_EXISTS = "drop_if_exists"
    TRUNCATE_IF_EXISTS = "truncate_if_exists"
    INSERT_ONLY = "insert_only"
    UPSERT_ONLY = "upsert_only"
    UPSERT_THEN_DELETE_MISSING = "upsert_then_delete_missing"


_PRE_WRITE = {
    SyncMode.DROP_CREATE_AND_REPOPULATE: MergeState.DROP_IF_EXISTS,
    SyncMode.TRUNCATE_AND_REPOPULATE: MergeState.TRUNCATE_IF_EXISTS,
    SyncMode.INSERT: MergeState.NOOP,
    SyncMode.UPDATE_AND_INSERT: MergeState.NOOP,
    SyncMode.UPDATE_INSERT_AND_DELETE: MergeState.NOOP,
}

_WRITE = {
    SyncMode.DROP_CREATE_AND_REPOPULATE: MergeState.INSERT_ONLY,
    SyncMode.TRUNCATE_AND_REPOPULATE: MergeState.INSERT_ONLY,
    SyncMode.INSERT: MergeState.INSERT_ONLY,
    SyncMode.UPDATE_AND_INSERT: MergeState.UPSERT_ONLY,
    SyncMode.UPDATE_INSERT_AND_DELETE: MergeState.UPSERT_THEN_DELETE_MISSING,
}

# ============================== Statement builders ===============================

def build_insert_sql(schema: str, table: str, staging: str, cols: Sequence[str]) -> str:
    col_list = ", ".join(qi(c) for c in cols)
    src_list = ", ".join(f"s.{qi(c)}" for c in cols)
    sql = f"INSERT INTO {fq_table(schema, table)} ({col_list}) SELECT {src_list} FROM {qi(staging)} s"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated INSERT SQL: %s", sql)
    return sql

def build_upsert_sql(schema: str, table: str, staging: str, cols: Sequence[str], key: str) -> str:
    col_list = ", ".join(qi(c) for c in cols)
    src_list = ", ".join(f"s.{qi(c)}" for c in cols)
    set_list = ", ".join(f"{qi(c)} = EXCLUDED.{qi(c)}" for c in cols if c != key)
    sql = (
        f"INSERT INTO {fq_table(schema, table)} ({col_list}) SELECT {src_list} FROM {qi(staging)} s "
        f"ON CONFLICT ({qi(key)}) DO UPDATE SET {set_list}"
    )
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated UPSERT SQL: %s", sql)
    return sql

def build_merge_sql(schema: str, table: str, staging: str, cols: Sequence[str], key: str) -> str:
    col_list = ", ".join(qi(c) for c in cols)
    src_list = ", ".join(f"s.{qi(c)}" for c in cols)
    set_list = ", ".join(f"{qi(c)} = s.{qi(c)}" for c in cols if c != key)
    sql = (
        f"MERGE INTO {fq_table(schema, table)} d USING {qi(staging)} s "
        f"ON (d.{qi(key)} = s.{qi(key)}) "
        f"WHEN MATCHED THEN UPDATE SET {set_list} "
        f"WHEN NOT MATCHED THEN INSERT ({col_list}) VALUES ({src_list})"
    )
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated MERGE SQL: %s", sql)
    return sql

def build_delete_missing_sql(schema: str, table: str, staging: str, key: str) -> str:
    sql = (
        f"DELETE FROM {fq_table(schema, table)} d "
        f"WHERE NOT EXISTS (SELECT 1 FROM {qi(staging)} s WHERE d.{qi(key)} = s.{qi(key)})"
    )
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Anti-join DELETE SQL: %s", sql)
    return sql

# ============================== Writer ===============================

class MergeWriter:
    """Moves staged rows into the destination according to the sync mode."""

    def __init__(self, mode: SyncMode, merge_syntax: MergeSyntax = MergeSyntax.ON_CONFLICT,
                 logger: logging.Logger | None = None):
        self.mode = mode
        self.merge_syntax = merge_syntax
        self.log = logger or LOG
        self.pre_write_state = _PRE_WRITE[mode]
        self.write_state = _WRITE[mode]

    def apply_pre_write(self, conn, schema: str, table: str, exists: bool) -> bool:
        """Drop or truncate the destination; returns whether it still exists."""
        if not exists or self.pre_write_state is MergeState.NOOP:
            return exists
        fq = fq_table(schema, table)
        with conn.cursor() as d:
            if self.pre_write_state is MergeState.DROP_IF_EXISTS:
                self.log.info("Dropping destination table %s", fq)
                d.execute(f"DROP TABLE {fq}")
                conn.commit()
                return False
            self.log.info("Truncating destination table %s", fq)
            d.execute(f"TRUNCATE TABLE {fq}")
            conn.commit()
        return True

    def statements(self, schema: str, table: str, staging: str,
                   cols: Sequence[str], key: str | None) -> List[str]:
        if self.write_state is MergeState.INSERT_ONLY:
            return [build_insert_sql(schema, table, staging, cols)]

        if not key:
            raise ConfigurationError(
                "Key column not found in table. Either add a key column or use Truncate or Drop Options Instead"
            )
        if not [c for c in cols if c != key]:
            raise ConfigurationError(
                "Table has no columns other than the key column to update. "
                "Use Insert, Truncate or Drop Options Instead"
            )
        if self.merge_syntax is MergeSyntax.MERGE:
            out = [build_merge_sql(schema, table, staging, cols, key)]
        else:
            out = [build_upsert_sql(schema, table, staging, cols, key)]
        if self.write_state is MergeState.UPSERT_THEN_DELETE_MISSING:
            out.append(build_delete_missing_sql(schema, table, staging, key))
        return out

    def write(self, conn, schema: str, table: str, staging: str,
              cols: Sequence[str], key: str | None) -> Dict[str, Any]:
        t0 = time.perf_counter()
        stmts = self.statements(schema, table, staging, cols, key)
        counts: List[int] = []
        with conn.cursor() as d:
            # each statement commits before the next runs: the delete sees the finished upsert
            for sql in stmts:
                t_stmt = time.perf_counter()
                d.execute(sql)
                counts.append(d.rowcount)
                conn.commit()
                self.log.info(
                    "Merge statement affected %s rows (%.3fs)", d.rowcount, time.perf_counter() - t_stmt
                )

        result = {
            "state": self.write_state.value,
            "rows_written": counts[0] if counts else 0,
            "rows_deleted": counts[1] if len(counts) > 1 else 0,
            "elapsed": round(time.perf_counter() - t0, 3),
        }
        self.log.info("Merge into %s.%s result: %s", schema, table, result)
        return result
