import sys
from pathlib import Path
from unittest import mock

from psycopg2 import sql

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from promptdesk.psql_client import PSQLClient  # noqa: E402


def _quote_ident(part: str) -> str:
    return '"' + str(part).replace('"', '""') + '"'


def render(query) -> str:
    """
    Render a psycopg2.sql composable to text without a live connection.

    Identifiers are double-quoted, named placeholders come out as %(name)s.
    """
    if isinstance(query, str):
        return query
    if isinstance(query, sql.Composed):
        return "".join(render(part) for part in query.seq)
    if isinstance(query, sql.SQL):
        return query.string
    if isinstance(query, sql.Identifier):
        return ".".join(_quote_ident(p) for p in query.strings)
    if isinstance(query, sql.Placeholder):
        return "%s" if query.name is None else f"%({query.name})s"
    if isinstance(query, sql.Literal):
        return repr(query.wrapped)
    raise TypeError(f"Cannot render {query!r}")


class FakeCursor:
    """Cursor returning canned rows; ``fail`` makes execute() raise."""

    def __init__(self, columns=None, rows=(), fail=None):
        self.description = [(name,) for name in columns] if columns is not None else None
        self.rows = list(rows)
        self.fail = fail
        self.statements = []

    def execute(self, query, params=None):
        self.statements.append((query, params))
        if self.fail is not None:
            raise self.fail

    def fetchall(self):
        return self.rows

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeConnection:
    def __init__(self, cursor=None):
        self.autocommit = False
        self.cur = cursor or FakeCursor()
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return self.cur

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    """Stands in for ThreadedConnectionPool; hands out one FakeConnection."""

    created = []

    def __init__(self, minconn, maxconn, **connect_args):
        self.size = (minconn, maxconn)
        self.connect_args = connect_args
        self.conn = FakeConnection()
        self.borrowed = 0
        self.returned = 0
        self.closed = False
        self.put_error = None
        FakePool.created.append(self)

    def getconn(self):
        self.borrowed += 1
        return self.conn

    def putconn(self, conn):
        self.returned += 1
        if self.put_error is not None:
            raise self.put_error

    def closeall(self):
        self.closed = True


def make_client(cursor=None, **kwargs) -> PSQLClient:
    """A real PSQLClient over a FakePool, optionally with a prepared cursor."""
    with mock.patch("promptdesk.psql_client.ThreadedConnectionPool", FakePool):
        client = PSQLClient(**kwargs)
    if cursor is not None:
        client.pool.conn.cur = cursor
    return client


class StubInspector:
    """Returns a fixed ColumnMap per table and records invalidations."""

    def __init__(self, schemas=None, default=None):
        self.schemas = dict(schemas or {})
        self.default = default
        self.invalidated = []

    def get_schema(self, table):
        if table in self.schemas:
            return dict(self.schemas[table])
        return dict(self.default or {})

    def invalidate(self, table=None):
        self.invalidated.append(table)


PROMPTS_COLUMNS = {
    "id": "uuid",
    "user_id": "uuid",
    "title": "text",
    "content": "text",
    "notes": "text",
    "rating": "numeric",
    "is_favorite": "bool",
    "metadata": "jsonb",
    "created_at": "timestamptz",
    "updated_at": "timestamptz",
}
