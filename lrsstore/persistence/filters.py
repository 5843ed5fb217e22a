from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Literal

from lrsstore.core.config import get_settings
from lrsstore.core.errors import FilterError


Operator = Literal["eq", "ne", "gt", "ge", "lt", "le"]
ALLOWED_OPERATORS = frozenset({"eq", "ne", "gt", "ge", "lt", "le"})
ALLOWED_CONJUNCTIONS = frozenset({"and", "or"})

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class Condition:
    field: str
    value: Any
    op: Operator = "eq"


def escape_string(value: str, *, max_length: int | None = None) -> str:
    # Double single quotes so a value can never close its literal early.
    limit = max_length if max_length is not None else get_settings().filter_value_max_length
    cleaned = _CONTROL_CHARS.sub("", value)[:limit]
    return cleaned.replace("'", "''")


def format_literal(value: Any) -> str:
    # bool before int: bool is an int subclass.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        # The filter grammar has no literal for NaN or infinity.
        if not math.isfinite(value):
            raise FilterError(f"Non-finite number in filter: {value!r}")
        return repr(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return f"datetime'{stamp}'"
    return f"'{escape_string(str(value))}'"


def _check_field(field: str) -> None:
    # Field names come from code, never from users; reject anything outside the grammar.
    if not field or not _FIELD_NAME.match(field):
        raise FilterError(f"Invalid filter field name: {field!r}")


def build_clause(condition: Condition) -> str:
    _check_field(condition.field)
    if condition.op not in ALLOWED_OPERATORS:
        raise FilterError(f"Invalid filter operator: {condition.op!r}")
    return f"{condition.field} {condition.op} {format_literal(condition.value)}"


def build_eq_filter(field: str, value: Any) -> str | None:
    """Build ``field eq <literal>``; ``None`` when there is nothing to filter on."""
    if value is None:
        return None
    return build_clause(Condition(field, value))


def build_filter(conditions: Iterable[Condition | tuple], op: str = "and") -> str | None:
    """Join conditions with ``and``/``or``.

    Conditions with a ``None`` value are skipped; an empty result means "no filter"
    and is returned as ``None`` rather than an empty expression.
    """
    conjunction = (op or "").lower()
    if conjunction not in ALLOWED_CONJUNCTIONS:
        raise FilterError(f"Invalid filter conjunction: {op!r}")
    clauses: list[str] = []
    for item in conditions:
        condition = item if isinstance(item, Condition) else Condition(*item)
        if condition.value is None:
            continue
        clauses.append(build_clause(condition))
    if not clauses:
        return None
    return f" {conjunction} ".join(clauses)
