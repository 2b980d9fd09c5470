from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Sequence

import psycopg2

from grid_pg_sync.ExportConfig import ExportConfig
from grid_pg_sync.coercion import ValueCoercer
from grid_pg_sync.connections import call_routine, map_connection_error, open_connection, pg_conn
from grid_pg_sync.errors import ConfigurationError, GridSyncError, WriteError, wrap_export_error
from grid_pg_sync.grid import GridRecords, SourceColumn
from grid_pg_sync.locks import exclusive_run
from grid_pg_sync.merge import MergeWriter
from grid_pg_sync.schema import (
    aligned_only,
    build_create_statement,
    enabled_key_column,
    get_destination_columns,
    qi,
    reconcile,
    schema_exists,
    table_exists,
)
from grid_pg_sync.staging import BulkStager, staged_rows

LOG = logging.getLogger(__name__)


def _json_sanitize(value: Any) -> Any:
    """Round-trip through JSON so results hold primitives only."""
    return json.loads(json.dumps(value, default=str))


def _enabled_flags(cfg: ExportConfig, columns: Sequence[SourceColumn]) -> List[bool]:
    return [bool(c.enabled) and cfg.is_column_enabled(c.name) for c in columns]


class GridExportEngine:
    """
    One export run of a host grid into a PostgreSQL table:

      validate -> lock target -> open -> drop/truncate -> create if missing ->
      pre-hook -> reconcile -> stage (coerce + binary COPY) -> merge -> post-hook

    The staging table is dropped on every exit path once created.
    """

    def __init__(self, logger: logging.Logger | None = None,
                 connect: Callable[[str, int], Any] = open_connection):
        self.log = logger or LOG
        self.connect = connect
        self.log.debug("GridExportEngine initialized with logger=%r", self.log.name)

    # ------------------------ Pre-flight ------------------------

    def preflight(self, cfg: ExportConfig, columns: Sequence[SourceColumn]) -> SourceColumn | None:
        """Checks that need no database; returns the enabled key column, if any."""
        cfg.validate()
        enabled = _enabled_flags(cfg, columns)
        if not any(enabled):
            raise ConfigurationError("No columns are enabled for export", table=cfg.destination)
        key = enabled_key_column(columns, enabled)
        if cfg.mode.is_upsert:
            if key is None:
                raise ConfigurationError(
                    "Key column not found in table. Either add a key column or use Truncate or Drop Options Instead",
                    table=cfg.destination,
                )
            if not [c for c, f in zip(columns, enabled) if f and not c.is_key]:
                raise ConfigurationError(
                    "Table has no columns other than the key column to update. "
                    "Use Insert, Truncate or Drop Options Instead",
                    table=cfg.destination,
                )
        return key

    # ------------------------ One export run ------------------------

    def export(self, cfg: ExportConfig, grid: GridRecords) -> Dict[str, Any]:
        t0 = time.perf_counter()
        columns = list(grid.columns)
        key = self.preflight(cfg, columns)
        self.log.info(
            "export: table=%s mode=%s columns=%d key=%s merge_syntax=%s",
            cfg.destination, cfg.mode.value, len(columns), key.name if key else None, cfg.merge_syntax.value,
        )

        stager = BulkStager(cfg.output_pattern, cfg.batch_size, self.log)
        opened = False
        with exclusive_run(cfg.dsn):
            try:
                with pg_conn(cfg.dsn, cfg.timeout_seconds, self.connect) as conn:
                    opened = True
                    result = self._run_guarded(cfg, grid, columns, conn, stager)
            except GridSyncError as e:
                if opened:
                    raise
                raise wrap_export_error(e, cfg.destination) from e

        result["elapsed"] = round(time.perf_counter() - t0, 3)
        self.log.info("export result: %s", result)
        return _json_sanitize(result)

    def _run_guarded(self, cfg: ExportConfig, grid: GridRecords, columns: List[SourceColumn],
                     conn, stager: BulkStager) -> Dict[str, Any]:
        failed = True
        try:
            result = self._run(cfg, grid, columns, conn, stager)
            failed = False
            return result
        except Exception as e:
            self.log.error("Export into %s failed; rolling back", cfg.destination, exc_info=True)
            self._rollback(conn)
            cause = map_connection_error(e) if isinstance(e, psycopg2.Error) else None
            raise wrap_export_error(cause or e, cfg.destination) from e
        finally:
            self._cleanup(conn, stager, failed)

    def _run(self, cfg: ExportConfig, grid: GridRecords, columns: List[SourceColumn],
             conn, stager: BulkStager) -> Dict[str, Any]:
        schema, table = cfg.schema_name, cfg.short_table_name
        enabled = _enabled_flags(cfg, columns)
        coercer = ValueCoercer(cfg.output_pattern)
        merger = MergeWriter(cfg.mode, cfg.merge_syntax, self.log)

        # ---- 1) destination lifecycle ----
        exists = table_exists(conn, schema, table)
        exists = merger.apply_pre_write(conn, schema, table, exists)
        created = False
        if not exists:
            create_sql = build_create_statement(
                [c for c, f in zip(columns, enabled) if f], schema, table, coercer
            )
            # CREATE SCHEMA needs database-level CREATE even when the schema exists
            missing_schema = not schema_exists(conn, schema)
            with conn.cursor() as d:
                if missing_schema:
                    d.execute(f"CREATE SCHEMA IF NOT EXISTS {qi(schema)}")
                d.execute(create_sql)
            conn.commit()
            created = True
            self.log.info("✅ Created table %s", cfg.destination)

        # ---- 2) pre hook ----
        if cfg.pre_routine:
            call_routine(conn, cfg.pre_routine)

        # ---- 3) reconcile ----
        dest_cols = get_destination_columns(conn, schema, table)
        alignments = aligned_only(reconcile(columns, enabled, dest_cols))
        write_cols = [a.destination for a in alignments]
        key_col = next((a.destination.name for a in alignments if a.source.is_key), None)

        # ---- 4) stage ----
        stager.create(conn, schema, table, write_cols)
        conn.commit()
        rows_staged = stager.copy_rows(conn, write_cols, staged_rows(grid, alignments, coercer))
        conn.commit()

        # ---- 5) merge ----
        merge_result = merger.write(
            conn, schema, table, stager.staging_table, [c.name for c in write_cols], key_col
        )

        # ---- 6) post hook ----
        if cfg.post_routine:
            call_routine(conn, cfg.post_routine)

        return {
            "table": cfg.destination,
            "mode": cfg.mode.value,
            "created": created,
            "columns": [c.name for c in write_cols],
            "rows_staged": rows_staged,
            "rows_written": merge_result["rows_written"],
            "rows_deleted": merge_result["rows_deleted"],
        }

    # ------------------------ Cleanup ------------------------

    def _rollback(self, conn) -> None:
        try:
            conn.rollback()
        except psycopg2.Error:
            self.log.warning("Rollback failed", exc_info=True)

    def _cleanup(self, conn, stager: BulkStager, failed: bool) -> None:
        if stager.staging_table is None:
            return
        name = stager.staging_table
        try:
            if failed:
                self._rollback(conn)
            stager.drop(conn)
            conn.commit()
        except psycopg2.Error as e:
            if failed:
                # the run's own error is already propagating
                self.log.error("Could not drop staging table %s", name, exc_info=True)
                return
            raise WriteError(f"Could not drop staging table {name}: {e}") from e
