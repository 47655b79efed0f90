"""
WHERE-clause construction for the resource layer.

Placeholders are named and numbered: the n-th value bound in a statement is
``%(p<n>)s``. A statement assembled from several fragments (an UPDATE's SET
list followed by its WHERE clause, a WHERE clause followed by LIMIT/OFFSET)
threads ``next_index`` from one fragment into the next so numbers never
repeat and every bound value has exactly one slot.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from psycopg2 import sql

from promptdesk.filters import Filter, Operator


@dataclass(frozen=True)
class SearchSpec:
    columns: tuple[str, ...]
    needle: str


@dataclass
class WhereClause:
    clause: sql.Composable
    params: list[Any] = field(default_factory=list)
    next_index: int = 1

    def __bool__(self) -> bool:
        # Every predicate binds at least one value.
        return bool(self.params)

    def prefixed(self) -> sql.Composable:
        """Return `` WHERE <predicates>`` or an empty fragment."""
        if not self:
            return sql.SQL("")
        return sql.SQL(" WHERE ") + self.clause


def placeholder(index: int) -> sql.Placeholder:
    return sql.Placeholder(f"p{index}")


def bind_params(params: Sequence[Any], start: int = 1) -> dict[str, Any]:
    """Map an ordered value list onto the ``p<n>`` names used by `placeholder`."""
    return {f"p{i}": value for i, value in enumerate(params, start)}


def _array_cast(udt_name: str | None) -> sql.Composable:
    # Array columns (udt "_text") and unknown columns are left uncast.
    if not udt_name or udt_name.startswith("_"):
        return sql.SQL("")
    return sql.SQL("::") + sql.Identifier(udt_name) + sql.SQL("[]")


def build_where(
    filters: Sequence[Filter],
    search: SearchSpec | None = None,
    start_index: int = 1,
    column_types: Mapping[str, str] | None = None,
) -> WhereClause:
    """
    Build an AND-joined predicate list and its ordered parameters.

    Filters are emitted in input order. ``IN`` binds the whole list as one
    array parameter (``col = ANY(%(pN)s)``), cast to the column's array type
    when it is known. A SearchSpec adds one parenthesised OR-group of
    ``col::text ILIKE`` tests that all share a single ``%needle%`` slot.
    """
    column_types = column_types or {}
    parts: list[sql.Composable] = []
    params: list[Any] = []
    index = start_index

    for f in filters:
        col = sql.Identifier(f.column)
        if f.operator is Operator.IN:
            values = list(f.value) if isinstance(f.value, (list, tuple)) else [f.value]
            parts.append(
                sql.SQL("{} = ANY({}{})").format(col, placeholder(index), _array_cast(column_types.get(f.column)))
            )
            params.append(values)
        else:
            parts.append(sql.SQL("{} {} {}").format(col, sql.SQL(f.operator.value), placeholder(index)))
            params.append(f.value)
        index += 1

    if search is not None and search.columns:
        slot = placeholder(index)
        ors = [sql.SQL("{}::text ILIKE {}").format(sql.Identifier(c), slot) for c in search.columns]
        parts.append(sql.SQL("(") + sql.SQL(" OR ").join(ors) + sql.SQL(")"))
        params.append(f"%{search.needle}%")
        index += 1

    if not parts:
        return WhereClause(clause=sql.SQL(""), params=[], next_index=start_index)
    return WhereClause(clause=sql.SQL(" AND ").join(parts), params=params, next_index=index)
