from __future__ import annotations

# ============================== Error taxonomy ===============================


class GridSyncError(Exception):
    """Base class for every failure reported by an export or import run."""

    def __init__(self, message: str, table: str | None = None):
        self.message = message
        self.table = table
        super().__init__(message)


class ConfigurationError(GridSyncError):
    """Settings are missing or invalid; nothing has been written."""


class SchemaMismatchError(GridSyncError):
    """An enabled source column has no counterpart in the destination table."""


class CoercionError(GridSyncError):
    """A value cannot be represented in its destination column."""


class WriteError(GridSyncError):
    """A statement failed while creating, staging, merging or calling a hook."""


class DbConnectionError(GridSyncError):
    """The database could not be reached or the connection is in an unusable state."""


def wrap_export_error(exc: BaseException, table: str) -> GridSyncError:
    """Attach destination-table context to a failure, keeping its category."""
    original = exc.message if isinstance(exc, GridSyncError) else str(exc).strip()
    message = f"There was a problem exporting. Table={table} Err={original}"
    cls = type(exc) if isinstance(exc, GridSyncError) else WriteError
    return cls(message, table=table)
