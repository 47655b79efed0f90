from __future__ import annotations

import logging
import time
from threading import RLock

from promptdesk.psql_client import PSQLClient

logger = logging.getLogger(__name__)

ColumnMap = dict[str, str]

TEXT_TYPES = frozenset({"text", "varchar", "bpchar", "citext"})


def text_columns(column_map: ColumnMap) -> tuple[str, ...]:
    return tuple(name for name, udt in column_map.items() if udt in TEXT_TYPES)


class SchemaInspector:
    """
    Reads the live column set of a table from information_schema.

    With ttl_seconds=0 every call goes to the catalog. A positive TTL memoizes
    each table's ColumnMap for that long; `invalidate` drops entries early.
    A failed catalog query yields an empty map and is never cached, so callers
    fail open (no JSON coercion, no column allow-listing) instead of failing
    every write.
    """

    def __init__(self, client: PSQLClient, *, default_schema: str = "public", ttl_seconds: float = 0):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self.client = client
        self.default_schema = default_schema
        self.ttl_seconds = ttl_seconds
        self._cache: dict[tuple[str, str], tuple[float, ColumnMap]] = {}
        self._lock = RLock()

    def _key(self, table: str) -> tuple[str, str]:
        schema, name = PSQLClient.split_qualified(table, self.default_schema)
        return schema, name

    def get_schema(self, table: str) -> ColumnMap:
        key = self._key(table)
        if self.ttl_seconds:
            with self._lock:
                hit = self._cache.get(key)
            if hit is not None and time.monotonic() - hit[0] < self.ttl_seconds:
                logger.debug("Schema cache hit for %s.%s", *key)
                return dict(hit[1])

        try:
            info = self.client.get_column_info(*key)
        except Exception as exc:
            logger.warning("Schema lookup for %s.%s failed, continuing without types: %s", key[0], key[1], exc)
            return {}

        column_map = {name: (row.get("udt_name") or row.get("data_type") or "") for name, row in info.items()}
        if not column_map:
            logger.debug("No columns found for %s.%s", *key)
        if self.ttl_seconds and column_map:
            with self._lock:
                self._cache[key] = (time.monotonic(), column_map)
        return dict(column_map)

    def invalidate(self, table: str | None = None) -> None:
        with self._lock:
            if table is None:
                self._cache.clear()
            else:
                self._cache.pop(self._key(table), None)
