"""
Additive schema management from JSON table configs.

A config file holds one table, a list of tables, or {"tables": [...]}. Each
table entry looks like::

    {
      "schema": "public",                     # optional
      "table_name": "prompt_tags",
      "columns": [
        {"name": "prompt_id", "type": "uuid", "primary_key": true, "nullable": false,
         "foreign_key": {"table": "prompts", "column": "id", "on_delete": "cascade"}},
        {"name": "tag_id", "type": "uuid", "primary_key": true, "nullable": false}
      ],
      "indexes": [{"name": "...", "columns": ["a", "b"], "unique": true}]
    }

Column keys: type (uuid, text, boolean, integer, numeric + precision/scale,
varchar + length, timestamptz, json, jsonb, ... or raw_type for anything
else such as text[]), nullable, default (SQL text, or a JSON value for json
columns), primary_key (several columns make a composite key), unique, index,
foreign_key.

Nothing is ever dropped, retyped or tightened on an existing table.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterator, Sequence

from promptdesk.psql_client import PSQLClient

logger = logging.getLogger(__name__)

SIMPLE_TYPES = frozenset(
    {"uuid", "text", "boolean", "timestamp", "timestamptz", "date", "json", "jsonb", "bigint", "real"}
)


def _read_json(path: Path) -> dict | list:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValueError(f"Failed to parse JSON config: {path}") from exc


def _tables_in(payload: dict | list) -> list[dict]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        if isinstance(payload.get("tables"), list):
            return payload["tables"]
        if "table_name" in payload:
            return [payload]
    raise ValueError("Unsupported table config structure.")


def load_table_configs(
    *,
    config_dir: str | Path | None = None,
    config_files: Sequence[str | Path] | None = None,
    config_payloads: Sequence[dict | list] | None = None,
) -> list[tuple[str, dict]]:
    """
    Collect table entries as (source name, table config), in source order:
    every *.json in config_dir by file name, then config_files, then the
    already-parsed config_payloads.
    """
    payloads: list[tuple[str, dict | list]] = []
    if config_dir is not None:
        directory = Path(config_dir)
        if not directory.is_dir():
            raise ValueError(f"config_dir does not exist or is not a directory: {directory}")
        payloads.extend((str(p), _read_json(p)) for p in sorted(directory.glob("*.json")))
    for raw in config_files or ():
        path = Path(raw)
        if not path.is_file():
            raise ValueError(f"Config file not found: {path}")
        payloads.append((str(path), _read_json(path)))
    payloads.extend((f"<payload:{i}>", p) for i, p in enumerate(config_payloads or ()))

    if not payloads:
        raise ValueError("At least one config source is required (config_dir, config_files or config_payloads).")
    return [(source, t) for source, payload in payloads for t in _tables_in(payload)]


class TableEnforcer:
    """
    Brings live tables in line with their configs without destroying data.

    Missing schemas and tables are created whole. On existing tables, missing
    columns, UNIQUE and FOREIGN KEY constraints and indexes are added; a NOT
    NULL column without a default is added as nullable (existing rows would
    violate it) and columns not in the config are only reported.

    Tables are applied in config order, so a table must come after the
    tables its foreign keys reference.
    """

    def __init__(self, client: PSQLClient):
        self.client = client

    def enforce(self, *, table: str | None = None, **sources) -> set[tuple[str, str]]:
        """
        Apply every configured table, or only `table` ("name" or
        "schema.name"). `sources` are the keyword arguments of
        load_table_configs. Returns the (schema, table) pairs applied.
        """
        only_schema, only_table = PSQLClient.split_qualified(table) if table else (None, None)
        applied: set[tuple[str, str]] = set()

        for source, t in load_table_configs(**sources):
            self.validate_config(t, source_name=source)
            schema, name = t.get("schema", "public"), t["table_name"]
            if (only_table and name != only_table) or (only_schema and schema != only_schema):
                continue
            self._apply(schema, name, t["columns"], t.get("indexes", []))
            applied.add((schema, name))

        if table and not applied:
            raise ValueError(f"Target table '{table}' was not found in provided config sources.")
        return applied

    def validate_config(self, t: dict, *, source_name: str = "<payload>") -> None:
        """Raise ValueError for a malformed table entry."""
        name = t.get("table_name")
        if not name:
            raise ValueError(f"Config source '{source_name}' has entry missing 'table_name'.")
        columns = t.get("columns")
        if not isinstance(columns, list) or not columns:
            raise ValueError(f"Table '{name}' needs a non-empty 'columns' list.")

        seen: set[str] = set()
        for c in columns:
            if not c.get("name"):
                raise ValueError(f"Table '{name}' has a column without a name.")
            if c["name"] in seen:
                raise ValueError(f"Table '{name}' has duplicate column '{c['name']}'.")
            seen.add(c["name"])
            self._column_type_sql(c)

        for idx in t.get("indexes", []):
            unknown = [col for col in idx.get("columns", []) if col not in seen]
            if not idx.get("name") or not idx.get("columns") or unknown:
                raise ValueError(f"Index {idx.get('name')!r} on '{name}' is empty or has unknown columns: {unknown}")

    # ---------- Applying one table ----------
    def _apply(self, schema: str, table: str, columns: list[dict], indexes: list[dict]) -> None:
        self.client.ensure_schema(schema)
        if not self.client.table_exists(schema, table):
            self._create(schema, table, columns)
            self._ensure_indexes(schema, table, columns, indexes)
            logger.info("Created table %s.%s", schema, table)
            return

        changed = self._extend(schema, table, columns)
        changed = self._ensure_indexes(schema, table, columns, indexes) or changed
        if changed:
            logger.info("Updated table %s.%s", schema, table)
        else:
            logger.debug("Table %s.%s is up to date", schema, table)

    def _create(self, schema: str, table: str, columns: list[dict]) -> None:
        constraints = []
        key = [c["name"] for c in columns if c.get("primary_key")]
        if key:
            constraints.append(f'CONSTRAINT "{table}_pkey" PRIMARY KEY ({", ".join(_quoted(k) for k in key)})')
        for c in columns:
            constraints.extend(clause for _, clause in self._column_constraints(schema, table, c))
        self.client.create_table(
            schema,
            table,
            {c["name"]: self._column_sql(c) for c in columns},
            constraints=constraints,
            if_not_exists=True,
        )

    def _extend(self, schema: str, table: str, columns: list[dict]) -> bool:
        present = set(self.client.get_column_info(schema, table))
        changed = False

        for c in columns:
            if c["name"] in present:
                continue
            has_default = c.get("default") is not None
            if not c.get("nullable", True) and not has_default:
                logger.warning(
                    "Adding column %s.%s.%s as NULLABLE. Config wants NOT NULL but no default was provided.",
                    schema, table, c["name"],
                )
            self.client.add_column(schema, table, c["name"], self._column_sql(c, not_null=has_default))
            logger.info("Added column %s.%s.%s", schema, table, c["name"])
            changed = True

        for c in columns:
            for con_name, clause in self._column_constraints(schema, table, c):
                if self.client.constraint_exists(schema, table, con_name):
                    continue
                self.client.add_constraint(schema, table, clause)
                logger.info("Added constraint %s to %s.%s", con_name, schema, table)
                changed = True

        extra = sorted(present - {c["name"] for c in columns})
        if extra:
            logger.warning("Table %s.%s has extra columns not in config: %s", schema, table, extra)
        return changed

    def _ensure_indexes(self, schema: str, table: str, columns: list[dict], indexes: list[dict]) -> bool:
        wanted = [(f"{table}_{c['name']}_idx", [c["name"]], False) for c in columns if c.get("index")]
        wanted += [(i["name"], list(i["columns"]), bool(i.get("unique"))) for i in indexes]
        if not wanted:
            return False

        existing = {row["indexname"] for row in self.client.list_indexes(schema, table)}
        created = False
        for name, cols, unique in wanted:
            if name in existing:
                continue
            self.client.create_index(schema, table, name, cols, unique=unique)
            logger.info("Created %sindex %s on %s.%s(%s)", "unique " if unique else "", name, schema, table, ", ".join(cols))
            created = True
        return created

    # ---------- SQL fragments ----------
    def _column_constraints(self, schema: str, table: str, c: dict) -> Iterator[tuple[str, str]]:
        """(constraint name, clause) for the column's UNIQUE and FOREIGN KEY settings."""
        col = c["name"]
        if c.get("unique") and not c.get("primary_key"):
            name = f"{table}_{col}_key"
            yield name, f"CONSTRAINT {_quoted(name)} UNIQUE ({_quoted(col)})"
        fk = c.get("foreign_key")
        if fk:
            name = f"{table}_{col}_fkey"
            target = f'{_quoted(fk.get("schema", schema))}.{_quoted(fk["table"])}'
            clause = f'CONSTRAINT {_quoted(name)} FOREIGN KEY ({_quoted(col)}) REFERENCES {target} ({_quoted(fk.get("column", "id"))})'
            if fk.get("on_delete"):
                clause += f" ON DELETE {fk['on_delete'].upper()}"
            yield name, clause

    def _column_sql(self, c: dict, *, not_null: bool = True) -> str:
        parts = [self._column_type_sql(c)]
        if not_null and not c.get("nullable", True):
            parts.append("NOT NULL")
        if c.get("default") is not None:
            parts.append("DEFAULT " + self._default_sql(c["default"]))
        return " ".join(parts)

    def _default_sql(self, value: Any) -> str:
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (dict, list)):
            return "'" + json.dumps(value).replace("'", "''") + "'"
        return str(value)

    def _column_type_sql(self, c: dict) -> str:
        kind = str(c.get("type", "")).lower()
        if kind in SIMPLE_TYPES:
            return kind
        if kind in {"int", "integer", "int4"}:
            return "integer"
        if kind in {"varchar", "character varying"}:
            if not c.get("length"):
                raise ValueError(f"varchar column '{c['name']}' missing length")
            return f"varchar({int(c['length'])})"
        if kind in {"numeric", "decimal"}:
            precision, scale = c.get("precision"), c.get("scale")
            if precision is None:
                return "numeric"
            if scale is None:
                return f"numeric({int(precision)})"
            return f"numeric({int(precision)},{int(scale)})"
        if c.get("raw_type"):
            return str(c["raw_type"])
        raise ValueError(f"Unsupported column type: {c.get('type')} (column {c.get('name')})")


def _quoted(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def enforce_tables(client: PSQLClient, **kwargs) -> set[tuple[str, str]]:
    """Shorthand for TableEnforcer(client).enforce(**kwargs)."""
    return TableEnforcer(client).enforce(**kwargs)
