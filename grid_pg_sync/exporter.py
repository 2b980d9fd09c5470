from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping

from grid_pg_sync.ExportConfig import ExportConfig
from grid_pg_sync.alerts import format_export_failure, send_discord_alert
from grid_pg_sync.catalog import create_export_config
from grid_pg_sync.engine import GridExportEngine
from grid_pg_sync.errors import GridSyncError
from grid_pg_sync.grid import GridRecords

LOG = logging.getLogger(__name__)


@dataclass
class ExportResult:
    succeeded: bool
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class GridExporter:
    """Host-facing entry point: one call per grid, result object instead of exceptions."""

    name = "PostgreSQL Data Exporter"

    def __init__(self, engine: GridExportEngine | None = None,
                 alert: Callable[[str], Any] | None = send_discord_alert):
        self.engine = engine or GridExportEngine()
        self.alert = alert

    def open_data(self, grid: GridRecords, cfg: ExportConfig) -> ExportResult:
        if not cfg.table_enabled:
            LOG.info("Export disabled for %s, skipping", cfg.destination or "<unnamed>")
            return ExportResult(True, "Table export is disabled")
        try:
            details = self.engine.export(cfg, grid)
        except GridSyncError as e:
            LOG.error("Export into %s failed: %s", cfg.destination, e.message)
            self._notify(cfg.destination, e.message)
            return ExportResult(False, e.message)
        return ExportResult(True, details=details)

    def open_data_from_settings(self, grid: GridRecords, overall: Mapping[str, Any],
                                table: Mapping[str, Any],
                                columns: Mapping[str, Mapping[str, Any]] | None = None) -> ExportResult:
        try:
            cfg = create_export_config(overall, table, columns)
        except GridSyncError as e:
            return ExportResult(False, e.message)
        return self.open_data(grid, cfg)

    @staticmethod
    def get_data_summary(table: Mapping[str, Any]) -> str | None:
        name = str(table.get("DatabaseTableName") or "").strip()
        if not name:
            return None
        return f"Exporting to PostgreSQL : {name} table"

    def _notify(self, table: str, message: str) -> None:
        if self.alert is None:
            return
        self.alert(format_export_failure(table, message))
