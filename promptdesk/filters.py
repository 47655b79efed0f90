from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from promptdesk.errors import ValidationError

RESERVED_PARAMS = frozenset({"limit", "offset", "order", "search"})

QueryParams = Mapping[str, Any] | Iterable[tuple[str, Any]]


class Operator(enum.Enum):
    EQ = "="
    NEQ = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    IN = "in"


# Checked in order, first match wins. "gte." must precede "gt." and "lte."
# must precede "lt.".
_PREFIXES: tuple[tuple[str, Operator], ...] = (
    ("neq.", Operator.NEQ),
    ("gte.", Operator.GTE),
    ("gt.", Operator.GT),
    ("lte.", Operator.LTE),
    ("lt.", Operator.LT),
    ("in.", Operator.IN),
)


@dataclass(frozen=True)
class Filter:
    column: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class SortSpec:
    column: str
    descending: bool = False


def iter_params(params: QueryParams) -> list[tuple[str, Any]]:
    """
    Normalise query parameters to an ordered list of (name, value) pairs.

    A mapping is read in insertion order; an iterable of pairs is kept as-is,
    so repeated names (``rating=gte.3&rating=lte.5``) survive.
    """
    if isinstance(params, Mapping):
        return list(params.items())
    return list(params)


def parse_value(raw: str) -> tuple[Operator, Any]:
    text = str(raw)
    for prefix, op in _PREFIXES:
        if not text.startswith(prefix):
            continue
        value = text[len(prefix):]
        if op is Operator.IN:
            if value.startswith("(") and value.endswith(")"):
                value = value[1:-1]
            return op, value.split(",")
        return op, value
    return Operator.EQ, text


def parse_filters(params: QueryParams) -> list[Filter]:
    """
    Turn query parameters into filters, preserving their order.

    Reserved names (limit, offset, order, search) are skipped, and so is any
    parameter whose value is None. Equality to NULL is therefore not
    expressible through this grammar.
    """
    filters: list[Filter] = []
    for name, raw in iter_params(params):
        if name in RESERVED_PARAMS or raw is None:
            continue
        op, value = parse_value(raw)
        filters.append(Filter(column=name, operator=op, value=value))
    return filters


def parse_order(text: str) -> SortSpec:
    """Parse ``column`` or ``column.asc`` / ``column.desc``."""
    raw = str(text).strip()
    if not raw:
        raise ValidationError("order must name a column")
    column, sep, direction = raw.rpartition(".")
    if not sep:
        return SortSpec(column=raw)
    direction = direction.lower()
    if direction not in {"asc", "desc"}:
        raise ValidationError(f"Invalid order direction: {direction!r} (expected 'asc' or 'desc')")
    if not column:
        raise ValidationError("order must name a column")
    return SortSpec(column=column, descending=direction == "desc")
