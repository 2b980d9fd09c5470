"""
Pytest configuration and fixtures for grid export tests.
Provides a scripted stand-in for a psycopg2 connection that records SQL.
"""

import os
from typing import Any, Callable, List, Optional

import pytest

from grid_pg_sync.ExportConfig import ExportConfig, SyncMode
from grid_pg_sync.grid import ColumnKind, InMemoryGrid, SourceColumn


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as needing a live PostgreSQL")


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if os.environ.get("GRID_PG_SYNC_TEST_DSN"):
        return
    skip = pytest.mark.skip(reason="GRID_PG_SYNC_TEST_DSN is not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


class Result:
    """Rows, rowcount and description a scripted statement answers with."""

    def __init__(self, rows=(), rowcount: Optional[int] = None, description=None):
        self.rows = [tuple(r) for r in rows]
        self.rowcount = len(self.rows) if rowcount is None else rowcount
        self.description = description


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn
        self.rowcount = -1
        self.description = None
        self._rows: List[tuple] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql: str, params: Any = None) -> None:
        text = " ".join(sql.split())
        self.conn.executed.append(text)
        self.conn.params.append(params)
        result = self.conn.respond(text, params)
        self._rows = list(result.rows)
        self.rowcount = result.rowcount
        self.description = result.description

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def copy_expert(self, sql: str, stream) -> None:
        text = " ".join(sql.split())
        self.conn.executed.append(text)
        self.conn.respond(text, None)
        self.conn.copies.append((text, stream.read()))


class FakeConnection:
    """
    Statements are answered by the first registered fragment found in the SQL:
    a list of rows, a Result, an exception instance (raised), or a callable.
    """

    def __init__(self):
        self.responses: List[tuple] = []
        self.executed: List[str] = []
        self.params: List[Any] = []
        self.copies: List[tuple] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def on(self, fragment: str, response: Any = (), rowcount: Optional[int] = None,
           description=None) -> "FakeConnection":
        if not isinstance(response, (BaseException, Result)) and not callable(response):
            response = Result(response, rowcount, description)
        self.responses.insert(0, (fragment, response))
        return self

    def respond(self, sql: str, params: Any) -> Result:
        for fragment, response in self.responses:
            if fragment in sql:
                if isinstance(response, BaseException):
                    raise response
                if callable(response) and not isinstance(response, Result):
                    response = response(sql, params)
                if isinstance(response, Result):
                    return response
                return Result(response)
        return Result()

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = 1

    def get_transaction_status(self) -> int:
        return 0

    def index_of(self, fragment: str) -> int:
        for i, sql in enumerate(self.executed):
            if fragment in sql:
                return i
        raise AssertionError(f"No statement containing {fragment!r} in {self.executed}")

    def ran(self, fragment: str) -> bool:
        return any(fragment in sql for sql in self.executed)


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def orders_conn(fake_conn: FakeConnection) -> FakeConnection:
    """Existing public.orders (id integer key, name varchar)."""
    fake_conn.on("information_schema.tables", [(True,)])
    fake_conn.on("information_schema.columns", [("id", "integer", "NO"), ("name", "character varying", "YES")])
    return fake_conn


@pytest.fixture
def orders_grid() -> InMemoryGrid:
    return InMemoryGrid(
        [SourceColumn("Id", ColumnKind.INTEGER, is_key=True), SourceColumn("Name")],
        [(1, "alpha"), (2, "beta")],
    )


@pytest.fixture
def make_config() -> Callable[..., ExportConfig]:
    def _make(**overrides) -> ExportConfig:
        values = dict(
            connection_string="host=db.local port=5432 dbname=sales user=loader",
            table_name="public.orders",
            mode=SyncMode.TRUNCATE_AND_REPOPULATE,
        )
        values.update(overrides)
        return ExportConfig(**values)

    return _make
