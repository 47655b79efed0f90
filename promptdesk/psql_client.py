import logging
from collections.abc import Mapping
from contextlib import contextmanager
from threading import RLock
from typing import Any, Iterable, Iterator, Optional

from psycopg2 import sql
from psycopg2.pool import ThreadedConnectionPool

logger = logging.getLogger(__name__)

Params = Iterable[Any] | Mapping[str, Any] | None

_DATABASE_EXISTS = "SELECT 1 FROM pg_database WHERE datname = %s"

_TABLE_EXISTS = """
	SELECT 1 FROM information_schema.tables
	WHERE table_schema = %s AND table_name = %s
"""

_COLUMNS = """
	SELECT column_name, data_type, udt_name, is_nullable, column_default
	FROM information_schema.columns
	WHERE table_schema = %s AND table_name = %s
	ORDER BY ordinal_position
"""

_CONSTRAINT_EXISTS = """
	SELECT 1 FROM information_schema.table_constraints
	WHERE constraint_schema = %s AND table_name = %s AND constraint_name = %s
"""

_INDEXES = """
	SELECT indexname, indexdef FROM pg_indexes
	WHERE schemaname = %s AND tablename = %s
	ORDER BY indexname
"""


class PSQLClient:
	"""
	Pooled PostgreSQL access for the resource layer and the setup tooling.

	Every statement borrows one connection from a ThreadedConnectionPool, runs
	in its own transaction and hands the connection back, so an instance can be
	shared across request threads.

		client = PSQLClient.get(database="promptdesk", user="postgres", host="localhost")
		rows = client.execute_query("SELECT * FROM tags WHERE name = %(p1)s", {"p1": "portrait"})

	Statements are plain strings or psycopg2.sql Composables; parameters are a
	sequence for %s placeholders or a mapping for %(name)s ones.
	"""

	_cache: dict[tuple, "PSQLClient"] = {}
	_cache_lock = RLock()

	@staticmethod
	def _pool_key(database, user, password, host, port, minconn, maxconn, conn_kwargs: dict[str, Any]) -> tuple:
		# Unhashable connect() extras (e.g. dict options) are keyed by repr.
		extras = []
		for name in sorted(conn_kwargs):
			value = conn_kwargs[name]
			try:
				hash(value)
			except TypeError:
				value = repr(value)
			extras.append((name, value))
		return (database, user, password, host, port, minconn, maxconn, tuple(extras))

	@classmethod
	def get(
		cls,
		*,
		database: str = "postgres",
		user: str = "postgres",
		password: Optional[str] = None,
		host: Optional[str] = None,
		port: Optional[int] = None,
		minconn: int = 1,
		maxconn: int = 10,
		**conn_kwargs
	) -> "PSQLClient":
		"""
		Shared client per distinct set of connection parameters. A cached client
		that was closed is replaced by a fresh one.
		"""
		key = cls._pool_key(database, user, password, host, port, minconn, maxconn, conn_kwargs)
		with cls._cache_lock:
			client = cls._cache.get(key)
			if client is not None and not client.closed:
				return client
			client = cls(
				database=database, user=user, password=password,
				host=host, port=port, minconn=minconn, maxconn=maxconn, **conn_kwargs
			)
			client._cache_key = key
			cls._cache[key] = client
			return client

	@classmethod
	def closeall(cls) -> None:
		"""Close every cached client."""
		with cls._cache_lock:
			clients, cls._cache = list(cls._cache.values()), {}
		for client in clients:
			try:
				client.close()
			except Exception:
				logger.exception("Failed to close %r", client)

	def __init__(
		self,
		*,
		database: str = "postgres",
		user: str = "postgres",
		password: Optional[str] = None,
		host: Optional[str] = None,
		port: Optional[int] = None,
		minconn: int = 1,
		maxconn: int = 10,
		**conn_kwargs
	):
		self.database = database
		self.user = user
		self.host = host
		self.port = port
		self._closed = False
		self._lock = RLock()
		self._cache_key: tuple | None = None

		connect_args = {"database": database, "user": user, **conn_kwargs}
		for name, value in (("password", password), ("host", host), ("port", port)):
			if value is not None:
				connect_args[name] = value
		self.pool = ThreadedConnectionPool(minconn, maxconn, **connect_args)
		logger.info("Opened pool for %s@%s/%s (%s..%s connections)", user, host or "local", database, minconn, maxconn)

	def __repr__(self) -> str:
		where = self.host or "local"
		if self.port:
			where += f":{self.port}"
		return f"<PSQLClient {self.user}@{where}/{self.database}>"

	@property
	def closed(self) -> bool:
		return self._closed

	def close(self) -> None:
		"""Close the pool. Safe to call more than once."""
		with self._lock:
			if self._closed:
				return
			self._closed = True
		try:
			self.pool.closeall()
		finally:
			with self._cache_lock:
				if self._cache_key is not None and self._cache.get(self._cache_key) is self:
					del self._cache[self._cache_key]
		logger.info("Closed pool for %s/%s", self.user, self.database)

	@contextmanager
	def connection(self) -> Iterator[Any]:
		"""Borrow a pooled connection for the duration of the block."""
		with self._lock:
			if self._closed:
				raise RuntimeError(f"{self!r} is closed")
		conn = self.pool.getconn()
		try:
			yield conn
		finally:
			try:
				self.pool.putconn(conn)
			except Exception:
				# putconn fails once closeall() has run; only then is it expected.
				if not self._closed:
					raise

	# ---------- Execution ----------
	@staticmethod
	def _bind(params: Params):
		if params is None or isinstance(params, (list, dict)):
			return params
		if isinstance(params, Mapping):
			return dict(params)
		return list(params)

	@staticmethod
	def _fetch_dicts(cur) -> list[dict] | None:
		if cur.description is None:
			return None
		names = [column[0] for column in cur.description]
		return [dict(zip(names, row)) for row in cur.fetchall()]

	def _run(self, conn, query, params: Params = None, *, autocommit: bool = False) -> list[dict] | None:
		"""
		Execute on a borrowed connection. Without autocommit the statement is
		committed on success and rolled back on any error.
		"""
		saved = conn.autocommit
		if autocommit:
			conn.autocommit = True
		try:
			text = query if isinstance(query, str) else query.as_string(conn)
			logger.debug("SQL: %s", text)
			with conn.cursor() as cur:
				cur.execute(text, self._bind(params))
				rows = self._fetch_dicts(cur)
			if not autocommit:
				conn.commit()
			return rows
		except Exception:
			if not autocommit:
				conn.rollback()
			raise
		finally:
			conn.autocommit = saved

	def execute_query(self, query, params: Params = None) -> list[dict] | None:
		"""
		Run one statement in its own transaction.

		Returns the rows as dicts when the statement produces a result set
		(SELECT, ... RETURNING), otherwise None.
		"""
		with self.connection() as conn:
			return self._run(conn, query, params)

	def execute_autocommit(self, query, params: Params = None) -> list[dict] | None:
		"""Run a statement that cannot live inside a transaction block."""
		with self.connection() as conn:
			return self._run(conn, query, params, autocommit=True)

	# ---------- Databases & schemas ----------
	def database_exists(self, db_name: str) -> bool:
		return bool(self.execute_query(_DATABASE_EXISTS, [db_name]))

	def create_database(self, db_name: str, exists_ok: bool = True) -> bool:
		"""Returns True when the database was created by this call."""
		if exists_ok and self.database_exists(db_name):
			return False
		self.execute_autocommit(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(db_name)))
		return True

	def ensure_schema(self, schema: str) -> None:
		self.execute_query(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(schema)))

	# ---------- Tables & columns ----------
	def table_exists(self, schema: str, table: str) -> bool:
		return bool(self.execute_query(_TABLE_EXISTS, [schema, table]))

	def get_column_info(self, schema: str, table: str) -> dict[str, dict]:
		"""
		Catalog metadata per column, keyed by name in table order. An unknown
		table yields an empty dict.
		"""
		rows = self.execute_query(_COLUMNS, [schema, table]) or []
		return {row["column_name"]: row for row in rows}

	def create_table(
		self,
		schema: str,
		table: str,
		columns: dict[str, str],
		constraints: list[str] | None = None,
		if_not_exists: bool = True,
	) -> None:
		"""
		columns maps each name to its type and column constraints as SQL text;
		constraints are table-level clauses appended after the columns.
		"""
		if not columns:
			raise ValueError("columns must be a non-empty dict of {name: SQL type/constraint}.")
		parts: list[sql.Composable] = []
		for name, definition in columns.items():
			if not isinstance(definition, str) or not definition.strip():
				raise ValueError(f"Invalid type/constraint for column '{name}'.")
			parts.append(sql.Identifier(name) + sql.SQL(" " + definition))
		parts.extend(sql.SQL(clause) for clause in constraints or [])

		head = "CREATE TABLE IF NOT EXISTS " if if_not_exists else "CREATE TABLE "
		self.execute_query(
			sql.SQL(head) + sql.Identifier(schema, table) + sql.SQL(" (") + sql.SQL(", ").join(parts) + sql.SQL(")")
		)

	def add_column(self, schema: str, table: str, column: str, definition: str) -> None:
		self.execute_query(
			sql.SQL("ALTER TABLE {} ADD COLUMN IF NOT EXISTS {} ").format(
				sql.Identifier(schema, table), sql.Identifier(column)
			) + sql.SQL(definition)
		)

	# ---------- Constraints & indexes ----------
	def constraint_exists(self, schema: str, table: str, constraint_name: str) -> bool:
		return bool(self.execute_query(_CONSTRAINT_EXISTS, [schema, table, constraint_name]))

	def add_constraint(self, schema: str, table: str, constraint_sql: str) -> None:
		"""constraint_sql is everything after ADD, e.g. 'CONSTRAINT "tags_name_key" UNIQUE ("name")'."""
		self.execute_query(sql.SQL("ALTER TABLE {} ADD ").format(sql.Identifier(schema, table)) + sql.SQL(constraint_sql))

	def list_indexes(self, schema: str, table: str) -> list[dict]:
		return self.execute_query(_INDEXES, [schema, table]) or []

	def create_index(
		self,
		schema: str,
		table: str,
		index_name: str,
		columns: list[str],
		unique: bool = False,
	) -> None:
		if not columns:
			raise ValueError("columns must be a non-empty list of column names.")
		self.execute_query(
			sql.SQL("CREATE {}INDEX IF NOT EXISTS {} ON {} ({})").format(
				sql.SQL("UNIQUE ") if unique else sql.SQL(""),
				sql.Identifier(index_name),
				sql.Identifier(schema, table),
				sql.SQL(", ").join(map(sql.Identifier, columns)),
			)
		)

	# ---------- Names ----------
	@staticmethod
	def split_qualified(qname, default_schema: str | None = None) -> tuple[Optional[str], str]:
		"""
		Accepts "schema.table", "table" or a ("schema", "table") pair and
		returns (schema or default_schema, table).
		"""
		if isinstance(qname, (tuple, list)):
			if len(qname) == 2:
				return str(qname[0]), str(qname[1])
			if len(qname) == 1:
				return default_schema, str(qname[0])
			raise ValueError("qname tuple/list must be length 1 or 2")
		schema, _, table = str(qname).strip().rpartition(".")
		return (schema.strip('"') or default_schema), table.strip('"')

	@classmethod
	def ident_qualified(cls, qname) -> sql.Identifier:
		schema, table = cls.split_qualified(qname)
		return sql.Identifier(schema, table) if schema else sql.Identifier(table)
