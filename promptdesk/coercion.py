from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

JSON_TYPES = frozenset({"json", "jsonb"})


def is_json_type(type_tag: str | None) -> bool:
    return type_tag in JSON_TYPES


def coerce_value(column_map: Mapping[str, str], key: str, value: Any) -> Any:
    """
    Serialise dicts and lists bound for a JSON column to JSON text.

    Anything else, including values for columns missing from the map, is
    returned unchanged (the same object).
    """
    if is_json_type(column_map.get(key)) and isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def coerce_row(column_map: Mapping[str, str], row: Mapping[str, Any]) -> dict[str, Any]:
    return {k: coerce_value(column_map, k, v) for k, v in row.items()}
