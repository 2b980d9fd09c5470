from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping

from dotenv import load_dotenv

from grid_pg_sync.ExportConfig import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_DATETIME_FORMAT,
    DEFAULT_TIMEOUT_SECONDS,
    ExportConfig,
    ImportConfig,
    MergeSyntax,
    SyncMode,
)
from grid_pg_sync.errors import ConfigurationError

log = logging.getLogger(__name__)

CATALOG_ENV = "GRID_PG_SYNC_CATALOG"
DSN_ENV = "GRID_PG_SYNC_DSN"
DEFAULT_CONNECTION_STRING = "Server=localhost;Username=postgres;Password=;Database=postgres"

# ------------------------ Settings the host declares ------------------------

def _setting(name: str, display: str, description: str, default: Any = None, **extra: Any) -> Dict[str, Any]:
    out = {"name": name, "display_name": display, "description": description, "default": default}
    out.update(extra)
    return out

_CONNECTION_SETTINGS = [
    _setting("ConnectionString", "Connection String", "PostgreSQL Connection String",
             DEFAULT_CONNECTION_STRING),
    _setting("ConnectionTimeOut", "Connection TimeOut", "Connection and command timeout in seconds",
             DEFAULT_TIMEOUT_SECONDS),
]

EXPORT_SETTINGS_SCHEMA: Dict[str, List[Dict[str, Any]]] = {
    "overall": _CONNECTION_SETTINGS + [
        _setting("DateTimeFormat", "DateTime Format", "Format used when writing date and time values",
                 DEFAULT_DATETIME_FORMAT),
    ],
    "table": [
        _setting("DatabaseTableName", "Database Table Name",
                 "Destination table including the schema (e.g. SchemaName.TableName)"),
        _setting("EnableTableExport", "Enable Table Export", "Export this table", True),
        _setting("DataExportType", "Data Export Type", "How rows are written to the destination",
                 SyncMode.TRUNCATE_AND_REPOPULATE.value, choices=SyncMode.labels()),
        _setting("PreSaveStoredProcedure", "Pre Save Stored Procedure",
                 "Routine to run before the data is written"),
        _setting("PostSaveStoredProcedure", "Post Save Stored Procedure",
                 "Routine to run after the data is written"),
        _setting("MergeSyntax", "Merge Syntax", "Statement used by the update modes (merge needs PostgreSQL 15+)",
                 MergeSyntax.ON_CONFLICT.value, choices=[m.value for m in MergeSyntax]),
        _setting("BatchSize", "Batch Size", "Rows per COPY chunk", DEFAULT_BATCH_SIZE),
    ],
    "column": [
        _setting("EnableColumnExport", "Enable Column Export", "Export this column", True),
    ],
}

IMPORT_SETTINGS_SCHEMA: Dict[str, List[Dict[str, Any]]] = {
    "overall": list(_CONNECTION_SETTINGS),
    "table": [
        _setting("SQLStatement", "SQL Statement", "Query whose result becomes the table"),
    ],
}

# ------------------------ Value helpers ------------------------

def _cfg_get(root: Mapping[str, Any], tbl: Mapping[str, Any], key: str, default=None):
    return tbl.get(key, root.get(key, default))

def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y", "on")
    return bool(value)

def _as_int(value: Any, label: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"The {label} parameter must be a whole number, got {value!r}") from None

def _as_text(value: Any) -> str | None:
    text = "" if value is None else str(value).strip()
    return text or None

def _connection_string(root: Mapping[str, Any], tbl: Mapping[str, Any]) -> str:
    value = _as_text(_cfg_get(root, tbl, "ConnectionString"))
    return value or os.environ.get(DSN_ENV, "")

# ------------------------ Config builders ------------------------

def create_export_config(overall: Mapping[str, Any], table: Mapping[str, Any],
                         columns: Mapping[str, Mapping[str, Any]] | None = None) -> ExportConfig:
    """Build an ExportConfig from host settings; table values win over overall ones."""
    columns = columns if columns is not None else table.get("columns", {})
    column_enabled = {
        name: _as_bool(settings.get("EnableColumnExport"), True)
        for name, settings in (columns or {}).items()
    }
    return ExportConfig(
        connection_string=_connection_string(overall, table),
        table_name=_as_text(table.get("DatabaseTableName")) or "",
        mode=SyncMode.from_label(
            _cfg_get(overall, table, "DataExportType", SyncMode.TRUNCATE_AND_REPOPULATE.value)
        ),
        timeout_seconds=_as_int(
            _cfg_get(overall, table, "ConnectionTimeOut", DEFAULT_TIMEOUT_SECONDS), "Connection TimeOut"
        ),
        datetime_format=_as_text(_cfg_get(overall, table, "DateTimeFormat")) or DEFAULT_DATETIME_FORMAT,
        pre_routine=_as_text(_cfg_get(overall, table, "PreSaveStoredProcedure")),
        post_routine=_as_text(_cfg_get(overall, table, "PostSaveStoredProcedure")),
        table_enabled=_as_bool(table.get("EnableTableExport"), True),
        column_enabled=column_enabled,
        merge_syntax=MergeSyntax.parse(_cfg_get(overall, table, "MergeSyntax")),
        batch_size=_as_int(_cfg_get(overall, table, "BatchSize", DEFAULT_BATCH_SIZE), "Batch Size"),
    )

def create_import_config(overall: Mapping[str, Any], table: Mapping[str, Any]) -> ImportConfig:
    return ImportConfig(
        connection_string=_connection_string(overall, table),
        sql_statement=_as_text(table.get("SQLStatement")) or "",
        timeout_seconds=_as_int(
            _cfg_get(overall, table, "ConnectionTimeOut", DEFAULT_TIMEOUT_SECONDS), "Connection TimeOut"
        ),
    )

# ------------------------ Catalog file ------------------------

def load_catalog(path: str | Path | None = None) -> Dict[str, Any]:
    if path is None:
        load_dotenv()
        path = os.environ.get(CATALOG_ENV, "catalog.json").strip()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ValueError(f"Catalog file {path} is empty")
    try:
        catalog = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in catalog file {path}: {e}") from e
    log.info("Loaded catalog from %s (%d export tables, %d imports)",
             path, len(catalog.get("tables", {})), len(catalog.get("imports", {})))
    return catalog

def export_configs(catalog: Mapping[str, Any]) -> Dict[str, ExportConfig]:
    """Grid name -> ExportConfig for every entry under "tables"."""
    return {
        name: create_export_config(catalog, tbl)
        for name, tbl in catalog.get("tables", {}).items()
    }

def import_configs(catalog: Mapping[str, Any]) -> Dict[str, ImportConfig]:
    return {
        name: create_import_config(catalog, tbl)
        for name, tbl in catalog.get("imports", {}).items()
    }
