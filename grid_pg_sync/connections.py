from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import psycopg2
import psycopg2.extensions
from psycopg2.extensions import make_dsn, parse_dsn

from grid_pg_sync.errors import ConfigurationError, DbConnectionError, WriteError

LOG = logging.getLogger(__name__)

# Semicolon-style keys the host writes ("Server=localhost;Username=postgres;...") -> libpq keywords
_HOST_STYLE_KEYS = {
    "server": "host",
    "host": "host",
    "port": "port",
    "username": "user",
    "user id": "user",
    "userid": "user",
    "user": "user",
    "uid": "user",
    "password": "password",
    "pwd": "password",
    "database": "dbname",
    "dbname": "dbname",
    "timeout": "connect_timeout",
    "sslmode": "sslmode",
    "ssl mode": "sslmode",
    "application name": "application_name",
}

# (pattern in the driver message, what to change)
_KNOWN_FAILURES = (
    (re.compile(r"already an open DataReader", re.I),
     "You may need to add 'MultipleActiveResultSets=True' to your connection string."),
    (re.compile(r"another command is already in progress", re.I),
     "The connection is busy with another command; use a dedicated connection for the export."),
    (re.compile(r"timeout expired|canceling statement due to statement timeout", re.I),
     "Increase the Connection TimeOut setting."),
    (re.compile(r"password authentication failed|no password supplied", re.I),
     "Check the user name and password in the connection string."),
    (re.compile(r"could not translate host name|could not connect to server|connection refused", re.I),
     "Check the host and port in the connection string."),
    (re.compile(r'database "[^"]*" does not exist', re.I),
     "Check the database name in the connection string."),
    (re.compile(r"server closed the connection unexpectedly|connection already closed", re.I),
     "The connection was lost; check the server and retry."),
)


def _is_host_style(text: str) -> bool:
    """`key=value;key=value` segments; libpq strings separate pairs with spaces."""
    if ";" not in text or "://" in text:
        return False
    parts = [p for p in text.split(";") if p.strip()]
    return all(p.count("=") == 1 for p in parts)


def normalize_dsn(connection_string: str) -> str:
    """
    libpq keyword strings and URIs pass through; the host's semicolon form is
    translated to libpq keywords. Unparseable input is a ConfigurationError.
    """
    text = (connection_string or "").strip()
    if not text:
        raise ConfigurationError("The Connection String parameter is not specified")
    if not _is_host_style(text):
        try:
            parse_dsn(text)
            return text
        except psycopg2.ProgrammingError:
            if "=" not in text:
                raise ConfigurationError(f"Invalid Connection String: {text!r}") from None

    params = {}
    for part in text.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ConfigurationError(f"Invalid Connection String segment: {part.strip()!r}")
        mapped = _HOST_STYLE_KEYS.get(key.strip().lower())
        if mapped is None:
            LOG.debug("Ignoring connection string key %r", key.strip())
            continue
        if value.strip():
            params[mapped] = value.strip()
    if not params:
        raise ConfigurationError(f"Invalid Connection String: {text!r}")
    try:
        return make_dsn(**params)
    except psycopg2.ProgrammingError as e:
        raise ConfigurationError(f"Invalid Connection String: {e}") from e


def connection_hint(exc: BaseException) -> str | None:
    msg = str(exc)
    for pattern, hint in _KNOWN_FAILURES:
        if pattern.search(msg):
            return hint
    return None


def map_connection_error(exc: BaseException) -> DbConnectionError | None:
    """DbConnectionError with an actionable hint for known driver failures, else None."""
    hint = connection_hint(exc)
    if hint is None and not isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return None
    detail = str(exc).strip() or exc.__class__.__name__
    return DbConnectionError(f"{detail}. {hint}" if hint else detail)


def open_connection(dsn: str, timeout_seconds: int):
    t0 = time.perf_counter()
    try:
        conn = psycopg2.connect(
            dsn,
            connect_timeout=timeout_seconds,
            options=f"-c statement_timeout={int(timeout_seconds) * 1000}",
        )
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        raise map_connection_error(e) from e
    LOG.info("Opened PostgreSQL connection (%.3fs)", time.perf_counter() - t0)
    return conn


@contextmanager
def pg_conn(dsn: str, timeout_seconds: int,
            connect: Callable[[str, int], Any] | None = None) -> Iterator["psycopg2.extensions.connection"]:
    conn = (connect or open_connection)(dsn, timeout_seconds)
    try:
        yield conn
    finally:
        try:
            status = conn.get_transaction_status()
            if status != psycopg2.extensions.TRANSACTION_STATUS_IDLE:
                LOG.warning("Connection not idle (status=%s). Rolling back before close.", status)
                conn.rollback()
        except psycopg2.Error:
            LOG.debug("Could not check/rollback connection status", exc_info=True)
        conn.close()
        LOG.debug("Closed PostgreSQL connection")


# ============================== Routine hooks ===============================

def call_routine(conn, name: str) -> None:
    """Run a stored procedure (CALL) or function (SELECT) that takes no arguments."""
    schema, _, routine = name.strip().lower().rpartition(".")
    with conn.cursor() as c:
        c.execute(
            """
            SELECT n.nspname, p.prokind
            FROM pg_proc p
            JOIN pg_namespace n ON n.oid = p.pronamespace
            WHERE p.proname = %s
              AND (n.nspname = %s OR (%s IS NULL AND n.nspname = ANY (current_schemas(false))))
            LIMIT 1
            """,
            (routine, schema or None, schema or None),
        )
        row = c.fetchone()
        if row is None:
            raise WriteError(f"Stored routine {name} was not found")
        fq = '"{}"."{}"'.format(row[0].replace('"', '""'), routine.replace('"', '""'))
        sql = f"CALL {fq}()" if row[1] == "p" else f"SELECT {fq}()"
        LOG.info("Calling stored routine: %s", sql)
        t0 = time.perf_counter()
        c.execute(sql)
    conn.commit()
    LOG.info("Stored routine %s finished (%.3fs)", name, time.perf_counter() - t0)
