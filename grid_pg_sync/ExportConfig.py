from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from grid_pg_sync.connections import normalize_dsn
from grid_pg_sync.errors import ConfigurationError

DEFAULT_DATETIME_FORMAT = "YYYY-MM-DD HH:mm:ss"
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_BATCH_SIZE = 20_000

# ============================== Enums ===============================


class SyncMode(Enum):
    DROP_CREATE_AND_REPOPULATE = "Drop Create And Repopulate"
    TRUNCATE_AND_REPOPULATE = "Truncate And Repopulate"
    UPDATE_AND_INSERT = "Update And Insert"
    UPDATE_INSERT_AND_DELETE = "Update Insert And Delete"
    INSERT = "Insert"

    @classmethod
    def from_label(cls, label: str | None) -> "SyncMode":
        if label is None or not str(label).strip():
            raise ConfigurationError("The Data Export Type parameter is not specified")
        wanted = str(label).strip()
        for mode in cls:
            if mode.value == wanted:
                return mode
        raise ConfigurationError(f"Invalid Data Export Type parameter specified: {wanted!r}")

    @classmethod
    def labels(cls) -> list[str]:
        return [m.value for m in cls]

    @property
    def is_upsert(self) -> bool:
        return self in (SyncMode.UPDATE_AND_INSERT, SyncMode.UPDATE_INSERT_AND_DELETE)


class MergeSyntax(Enum):
    ON_CONFLICT = "on_conflict"   # INSERT ... ON CONFLICT, any supported server
    MERGE = "merge"               # MERGE INTO, PostgreSQL 15+

    @classmethod
    def parse(cls, value: "str | MergeSyntax | None") -> "MergeSyntax":
        if isinstance(value, MergeSyntax):
            return value
        if value is None or not str(value).strip():
            return cls.ON_CONFLICT
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Invalid merge syntax {value!r}; expected one of {[m.value for m in cls]}"
            ) from None


# ============================== Helpers ===============================

_DOTNET_RUNS = re.compile(r"y+|d+|f+|t+")


def to_pendulum_pattern(pattern: str) -> str:
    """
    Accept both pendulum tokens (YYYY-MM-DD HH:mm:ss) and the host's
    yyyy-MM-dd HH:mm:ss style; the latter is translated run by run.
    """
    if "yy" not in pattern:
        return pattern

    def _swap(m: re.Match) -> str:
        run = m.group(0)
        ch, n = run[0], len(run)
        if ch == "y":
            return "YYYY" if n >= 3 else "YY"
        if ch == "d":
            return run if n >= 3 else "D" * n     # ddd/dddd are day names in both
        if ch == "f":
            return "S" * n
        return "A"                                 # tt / t -> AM/PM

    return _DOTNET_RUNS.sub(_swap, pattern)


def _split_table_name(name: str) -> tuple[str, str]:
    parts = name.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ConfigurationError("Include Schema with Table Name (e.g. SchemaName.TableName)")
    return parts[0], parts[1]


# ============================== Config models ===============================

@dataclass(frozen=True)
class ExportConfig:
    connection_string: str
    table_name: str                       # "schema.table"
    mode: SyncMode = SyncMode.TRUNCATE_AND_REPOPULATE
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    datetime_format: str = DEFAULT_DATETIME_FORMAT
    pre_routine: str | None = None
    post_routine: str | None = None
    table_enabled: bool = True
    column_enabled: Mapping[str, bool] = field(default_factory=dict)
    merge_syntax: MergeSyntax = MergeSyntax.ON_CONFLICT
    batch_size: int = DEFAULT_BATCH_SIZE

    @property
    def destination(self) -> str:
        return (self.table_name or "").strip().lower()

    @property
    def schema_name(self) -> str:
        return _split_table_name(self.destination)[0]

    @property
    def short_table_name(self) -> str:
        return _split_table_name(self.destination)[1]

    @property
    def output_pattern(self) -> str:
        return to_pendulum_pattern(self.datetime_format)

    @property
    def dsn(self) -> str:
        return normalize_dsn(self.connection_string)

    def is_column_enabled(self, name: str) -> bool:
        for key, flag in self.column_enabled.items():
            if key.lower() == name.lower():
                return bool(flag)
        return True

    def validate(self) -> None:
        if not self.connection_string or not self.connection_string.strip():
            raise ConfigurationError("The Connection String parameter is not specified")
        normalize_dsn(self.connection_string)  # raises ConfigurationError when unparseable
        if not isinstance(self.timeout_seconds, int) or self.timeout_seconds <= 0:
            raise ConfigurationError("The Connection TimeOut parameter needs to be greater than zero")
        if not self.datetime_format or not self.datetime_format.strip():
            raise ConfigurationError("The DateTime Format parameter is not specified")
        if not self.destination:
            raise ConfigurationError("The Database Table Name parameter is not specified")
        _split_table_name(self.destination)
        if not isinstance(self.mode, SyncMode):
            raise ConfigurationError("Invalid Data Export Type parameter specified")
        if self.batch_size <= 0:
            raise ConfigurationError("The batch size needs to be greater than zero")


@dataclass(frozen=True)
class ImportConfig:
    connection_string: str
    sql_statement: str
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS

    @property
    def dsn(self) -> str:
        return normalize_dsn(self.connection_string)

    def validate(self) -> None:
        if not self.connection_string or not self.connection_string.strip():
            raise ConfigurationError("The Connection String parameter is not specified")
        normalize_dsn(self.connection_string)
        if not isinstance(self.timeout_seconds, int) or self.timeout_seconds <= 0:
            raise ConfigurationError("The Connection TimeOut parameter needs to be greater than zero")
        if not self.sql_statement or not self.sql_statement.strip():
            raise ConfigurationError("The SQL Statement parameter is not specified")
