"""
Generic list/get/create/update/delete over one PostgreSQL table.

A `ResourceEngine` is bound to a single table at start-up. Each call reads
the table's live ColumnMap, checks every client-supplied column name against
it, and builds one parameterised statement with psycopg2.sql. Identifiers
are always quoted with `sql.Identifier`; values are only ever bound.
"""
from __future__ import annotations

import logging
from collections.abc import Collection, Mapping, Sequence
from typing import Any, Iterable

import psycopg2
from psycopg2 import errorcodes, errors, sql

from promptdesk.coercion import coerce_row, coerce_value
from promptdesk.errors import NotFoundError, ResourceError, StorageError, ValidationError
from promptdesk.filters import RESERVED_PARAMS, Filter, QueryParams, SortSpec, iter_params, parse_filters, parse_order
from promptdesk.predicates import SearchSpec, WhereClause, bind_params, build_where, placeholder
from promptdesk.psql_client import PSQLClient
from promptdesk.schema_inspector import ColumnMap, SchemaInspector, text_columns

logger = logging.getLogger(__name__)

CREATED_AT = "created_at"
UPDATED_AT = "updated_at"


def error_message(exc: Exception) -> str:
    """The driver's primary message, without the LINE/HINT trailer."""
    diag = getattr(exc, "diag", None)
    primary = getattr(diag, "message_primary", None)
    return primary or str(exc).strip()


def is_missing_column(exc: Exception, column: str) -> bool:
    missing = isinstance(exc, errors.UndefinedColumn) or getattr(exc, "pgcode", None) == errorcodes.UNDEFINED_COLUMN
    return missing and column in str(exc)


def _parse_count(name: str, raw: Any) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a non-negative integer, got {raw!r}") from None
    if value < 0:
        raise ValidationError(f"{name} must be a non-negative integer, got {raw!r}")
    return value


class ResourceEngine:
    """
    REST-style operations over one table.

    primary_key and created_at are never written by updates or upserts. When
    the table has an owner column (user_id) and default_owner_id is set,
    created rows that leave it out get the default owner. When it has
    updated_at, every update stamps it with NOW().
    """

    def __init__(
        self,
        client: PSQLClient,
        table: str,
        *,
        inspector: SchemaInspector | None = None,
        primary_key: str = "id",
        default_owner_id: str | None = None,
        owner_column: str = "user_id",
        search_columns: Sequence[str] | None = None,
    ):
        self.client = client
        self.table = table
        self.inspector = inspector or SchemaInspector(client)
        self.primary_key = primary_key
        self.default_owner_id = default_owner_id
        self.owner_column = owner_column
        self.search_columns = tuple(search_columns) if search_columns else None
        self._table_sql = PSQLClient.ident_qualified(table)

    def __repr__(self) -> str:
        return f"<ResourceEngine table={self.table!r}>"

    @property
    def immutable_columns(self) -> frozenset[str]:
        return frozenset({self.primary_key, CREATED_AT})

    # ---------- Plumbing ----------
    def column_map(self) -> ColumnMap:
        return self.inspector.get_schema(self.table)

    def _check_columns(self, column_map: ColumnMap, columns: Iterable[str], label: str) -> None:
        # An empty map means the catalog told us nothing; the database reports
        # unknown columns itself in that case.
        if not column_map:
            return
        unknown = [c for c in columns if c not in column_map]
        if unknown:
            raise ValidationError(f"Unknown columns for {label} on {self.table}: {unknown}")

    def _require_primary_key(self, column_map: ColumnMap) -> None:
        if column_map and self.primary_key not in column_map:
            raise ResourceError(f"Table {self.table} has no column {self.primary_key!r}")

    def _fetch(self, query: sql.Composable, params: Sequence[Any]) -> list[dict]:
        return self.client.execute_query(query, bind_params(params)) or []

    def _run(self, query: sql.Composable, params: Sequence[Any]) -> list[dict]:
        try:
            return self._fetch(query, params)
        except psycopg2.Error as exc:
            logger.error("Query on %s failed: %s", self.table, error_message(exc))
            raise StorageError(error_message(exc)) from exc

    # ---------- List ----------
    def list_rows(self, params: QueryParams) -> list[dict]:
        """
        List rows from raw query parameters: filters plus the reserved
        ``order``, ``search``, ``limit`` and ``offset`` entries.
        """
        pairs = iter_params(params)
        reserved = {name: value for name, value in pairs if name in RESERVED_PARAMS}

        order = reserved.get("order")
        search = reserved.get("search")
        limit = reserved.get("limit")
        offset = reserved.get("offset")
        return self.list_filtered(
            parse_filters(pairs),
            search=search or None,
            sort=parse_order(order) if order else None,
            limit=_parse_count("limit", limit) if limit not in (None, "") else None,
            offset=_parse_count("offset", offset) if offset not in (None, "") else None,
        )

    def _search_spec(self, column_map: ColumnMap, needle: str | None) -> SearchSpec | None:
        if not needle:
            return None
        if self.search_columns is not None:
            self._check_columns(column_map, self.search_columns, "search")
            columns = self.search_columns
        else:
            columns = text_columns(column_map)
        if not columns:
            logger.debug("No searchable columns on %s; ignoring search %r", self.table, needle)
            return None
        return SearchSpec(columns=tuple(columns), needle=needle)

    def list_filtered(
        self,
        filters: Sequence[Filter] = (),
        *,
        search: str | None = None,
        sort: SortSpec | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict]:
        column_map = self.column_map()
        self._check_columns(column_map, [f.column for f in filters], "filter")

        if sort is not None:
            self._check_columns(column_map, [sort.column], "order")
        elif CREATED_AT in column_map:
            sort = SortSpec(CREATED_AT, descending=True)

        where = build_where(filters, self._search_spec(column_map, search), 1, column_types=column_map)
        params = list(where.params)
        index = where.next_index

        base = sql.SQL("SELECT * FROM {}").format(self._table_sql) + where.prefixed()
        page = sql.SQL("")
        if limit is not None:
            page += sql.SQL(" LIMIT {}").format(placeholder(index))
            params.append(limit)
            index += 1
        if offset is not None:
            page += sql.SQL(" OFFSET {}").format(placeholder(index))
            params.append(offset)
            index += 1

        if sort is None:
            return self._run(base + page, params)

        order_sql = sql.SQL(" ORDER BY {} {}").format(
            sql.Identifier(sort.column),
            sql.SQL("DESC") if sort.descending else sql.SQL("ASC"),
        )
        try:
            return self._fetch(base + order_sql + page, params)
        except psycopg2.Error as exc:
            if sort.column != CREATED_AT or not is_missing_column(exc, CREATED_AT):
                logger.error("Query on %s failed: %s", self.table, error_message(exc))
                raise StorageError(error_message(exc)) from exc
            logger.warning("%s has no %s column any more; listing unsorted", self.table, CREATED_AT)
            self.inspector.invalidate(self.table)
        return self._run(base + page, params)

    # ---------- Get one ----------
    def get_one(self, row_id: Any) -> dict:
        column_map = self.column_map()
        self._require_primary_key(column_map)
        query = sql.SQL("SELECT * FROM {} WHERE {} = {}").format(
            self._table_sql, sql.Identifier(self.primary_key), placeholder(1)
        )
        rows = self._run(query, [row_id])
        if not rows:
            raise NotFoundError("Not found")
        return rows[0]

    # ---------- Create ----------
    def _with_owner(self, column_map: ColumnMap, row: Any) -> dict:
        if not isinstance(row, Mapping) or not row:
            raise ValidationError("Each row must be a non-empty JSON object.")
        row = dict(row)
        if (
            self.default_owner_id is not None
            and self.owner_column in column_map
            and row.get(self.owner_column) is None
        ):
            row[self.owner_column] = self.default_owner_id
        return row

    @staticmethod
    def _row_columns(rows: Sequence[dict]) -> list[str]:
        # The first row's key order is authoritative for the whole batch.
        columns = list(rows[0].keys())
        expected = set(columns)
        for idx, row in enumerate(rows):
            if set(row.keys()) != expected:
                raise ValidationError(f"All rows must contain the same keys (row {idx} differs from row 0).")
        return columns

    def create(self, payload: Any, on_conflict: Sequence[str] | None = None) -> dict | list[dict] | None:
        """
        Insert one row (object payload) or many (array payload) in a single
        statement and return what RETURNING * gives back.

        With on_conflict, rows colliding on those columns update every other
        column except the primary key and created_at; if nothing is left to
        update the conflict is ignored (DO NOTHING) and no row comes back
        for it.
        """
        if isinstance(payload, Mapping):
            rows, single = [payload], True
        elif isinstance(payload, list):
            if not payload:
                return []
            rows, single = payload, False
        else:
            raise ValidationError("Body must be a JSON object or an array of objects.")

        column_map = self.column_map()
        prepared = [self._with_owner(column_map, r) for r in rows]
        columns = self._row_columns(prepared)
        self._check_columns(column_map, columns, "insert")
        conflict = list(on_conflict or [])
        self._check_columns(column_map, conflict, "conflict")

        params: list[Any] = []
        values_sql: list[sql.Composable] = []
        index = 1
        for row in prepared:
            row = coerce_row(column_map, row)
            slots = []
            for col in columns:
                slots.append(placeholder(index))
                params.append(row[col])
                index += 1
            values_sql.append(sql.SQL("(") + sql.SQL(", ").join(slots) + sql.SQL(")"))

        query = sql.SQL("INSERT INTO {tbl} ({fields}) VALUES {values}").format(
            tbl=self._table_sql,
            fields=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            values=sql.SQL(", ").join(values_sql),
        )

        if conflict:
            query += sql.SQL(" ON CONFLICT ({})").format(sql.SQL(", ").join(sql.Identifier(c) for c in conflict))
            skip = set(conflict) | self.immutable_columns
            update_cols = [c for c in columns if c not in skip]
            if update_cols:
                query += sql.SQL(" DO UPDATE SET ") + sql.SQL(", ").join(
                    sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c))
                    for c in update_cols
                )
            else:
                query += sql.SQL(" DO NOTHING")

        query += sql.SQL(" RETURNING *")
        result = self._run(query, params)
        logger.debug("Inserted %s of %s rows into %s", len(result), len(prepared), self.table)
        if single:
            return result[0] if result else None
        return result

    # ---------- Update ----------
    def _changes(self, column_map: ColumnMap, patch: Any) -> dict:
        if not isinstance(patch, Mapping):
            raise ValidationError("Body must be a JSON object.")
        return {k: v for k, v in patch.items() if k not in self.immutable_columns}

    def _set_clause(self, column_map: ColumnMap, changes: Mapping[str, Any]) -> tuple[sql.Composable, list[Any], int]:
        parts: list[sql.Composable] = []
        params: list[Any] = []
        index = 1
        for col, value in changes.items():
            if col == UPDATED_AT and UPDATED_AT in column_map:
                # Always stamped with NOW() below.
                continue
            parts.append(sql.SQL("{} = {}").format(sql.Identifier(col), placeholder(index)))
            params.append(coerce_value(column_map, col, value))
            index += 1
        if UPDATED_AT in column_map:
            parts.append(sql.SQL("{} = NOW()").format(sql.Identifier(UPDATED_AT)))
        return sql.SQL(", ").join(parts), params, index

    def update_by_id(self, row_id: Any, patch: Any) -> dict | None:
        """
        Apply a partial update to one row. Returns the updated row, or None
        when nothing was left to change once immutable fields were removed.
        """
        column_map = self.column_map()
        self._require_primary_key(column_map)
        changes = self._changes(column_map, patch)
        if not changes:
            return None
        self._check_columns(column_map, changes, "update")

        set_sql, params, index = self._set_clause(column_map, changes)
        query = sql.SQL("UPDATE {} SET {} WHERE {} = {} RETURNING *").format(
            self._table_sql, set_sql, sql.Identifier(self.primary_key), placeholder(index)
        )
        rows = self._run(query, params + [row_id])
        if not rows:
            raise NotFoundError("Not found")
        return rows[0]

    def update_by_filter(self, filters: Sequence[Filter], patch: Any) -> list[dict] | None:
        """
        Apply a partial update to every row matching the filters. Refuses to
        run without filters. Returns None for an empty patch.
        """
        if not filters:
            raise ValidationError("At least one filter is required for a batch update.")
        column_map = self.column_map()
        self._check_columns(column_map, [f.column for f in filters], "filter")
        changes = self._changes(column_map, patch)
        if not changes:
            return None
        self._check_columns(column_map, changes, "update")

        set_sql, params, index = self._set_clause(column_map, changes)
        where: WhereClause = build_where(filters, start_index=index, column_types=column_map)
        query = sql.SQL("UPDATE {} SET {}").format(self._table_sql, set_sql) + where.prefixed() + sql.SQL(" RETURNING *")
        return self._run(query, params + where.params)

    def update_rows(self, params: QueryParams, patch: Any) -> list[dict] | None:
        return self.update_by_filter(parse_filters(params), patch)

    # ---------- Delete ----------
    def delete_by_id(self, row_id: Any) -> int:
        """Delete one row; returns how many rows went (0 or 1), never raises for a missing id."""
        column_map = self.column_map()
        self._require_primary_key(column_map)
        query = sql.SQL("DELETE FROM {} WHERE {} = {} RETURNING 1").format(
            self._table_sql, sql.Identifier(self.primary_key), placeholder(1)
        )
        return len(self._run(query, [row_id]))

    def delete_by_filter(self, filters: Sequence[Filter]) -> int:
        if not filters:
            raise ValidationError("At least one filter is required for a batch delete.")
        column_map = self.column_map()
        self._check_columns(column_map, [f.column for f in filters], "filter")
        where = build_where(filters, column_types=column_map)
        query = sql.SQL("DELETE FROM {}").format(self._table_sql) + where.prefixed() + sql.SQL(" RETURNING 1")
        deleted = len(self._run(query, where.params))
        logger.debug("Deleted %s rows from %s", deleted, self.table)
        return deleted

    def delete_rows(self, params: QueryParams) -> int:
        return self.delete_by_filter(parse_filters(params))


class ResourceRegistry:
    """
    The allow-list of mounted tables and one engine per table.

    Only names registered here ever reach SQL construction.
    """

    def __init__(
        self,
        client: PSQLClient,
        tables: Collection[str],
        *,
        schema: str | None = None,
        inspector: SchemaInspector | None = None,
        default_owner_id: str | None = None,
        search_columns: Mapping[str, Sequence[str]] | None = None,
    ):
        self.client = client
        self.schema = schema
        self.inspector = inspector or SchemaInspector(client, default_schema=schema or "public")
        search_columns = search_columns or {}
        unknown = sorted(set(search_columns) - set(tables))
        if unknown:
            raise ValueError(f"search columns configured for unmounted tables: {unknown}")
        self._engines: dict[str, ResourceEngine] = {
            name: ResourceEngine(
                client,
                f"{schema}.{name}" if schema else name,
                inspector=self.inspector,
                default_owner_id=default_owner_id,
                search_columns=search_columns.get(name),
            )
            for name in tables
        }
        logger.info("Registered %s resources: %s", len(self._engines), ", ".join(self._engines))

    def __contains__(self, name: str) -> bool:
        return name in self._engines

    def __iter__(self):
        return iter(self._engines)

    def __len__(self) -> int:
        return len(self._engines)

    def engine(self, name: str) -> ResourceEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise NotFoundError(f"Unknown resource: {name}") from None
