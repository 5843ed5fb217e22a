from __future__ import annotations

import itertools
import re
from datetime import datetime
from typing import Any, AsyncIterator, Callable

from lrsstore.core.errors import (
    ConflictError,
    NotFoundError,
    PermanentStoreError,
    PreconditionFailedError,
)
from lrsstore.persistence.keys import is_key_safe
from lrsstore.persistence.store import ETAG_KEY, Entity, EntityPage, UpdateMode


_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<lparen>\()
      | (?P<rparen>\))
      | datetime'(?P<datetime>[^']*)'
      | '(?P<string>(?:[^']|'')*)'
      | (?P<number>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)L?
      | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    )
    """,
    re.VERBOSE,
)

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a > b,
    "ge": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "le": lambda a, b: a <= b,
}

Predicate = Callable[[Entity], bool]


def _tokenize(expression: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if match is None or match.end() == pos:
            raise PermanentStoreError(f"Invalid filter near: {text[pos:pos + 20]!r}", status_code=400)
        pos = match.end()
        kind = match.lastgroup
        raw = match.group(kind)
        if kind == "string":
            tokens.append(("literal", raw.replace("''", "'")))
        elif kind == "datetime":
            tokens.append(("literal", datetime.fromisoformat(raw.replace("Z", "+00:00"))))
        elif kind == "number":
            tokens.append(("literal", float(raw) if any(c in raw for c in ".eE") else int(raw)))
        elif kind == "word" and raw in ("true", "false"):
            tokens.append(("literal", raw == "true"))
        else:
            tokens.append((kind, raw))
    return tokens


class _Parser:
    # Recursive descent: or < and < not < comparison, as in OData.
    def __init__(self, tokens: list[tuple[str, Any]]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> tuple[str, Any] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _next(self) -> tuple[str, Any]:
        token = self._peek()
        if token is None:
            raise PermanentStoreError("Unexpected end of filter", status_code=400)
        self._pos += 1
        return token

    def _keyword(self, word: str) -> bool:
        token = self._peek()
        if token is not None and token[0] == "word" and token[1] == word:
            self._pos += 1
            return True
        return False

    def parse(self) -> Predicate:
        predicate = self._or()
        if self._peek() is not None:
            raise PermanentStoreError(f"Unexpected token in filter: {self._peek()!r}", status_code=400)
        return predicate

    def _or(self) -> Predicate:
        parts = [self._and()]
        while self._keyword("or"):
            parts.append(self._and())
        if len(parts) == 1:
            return parts[0]
        return lambda entity: any(part(entity) for part in parts)

    def _and(self) -> Predicate:
        parts = [self._not()]
        while self._keyword("and"):
            parts.append(self._not())
        if len(parts) == 1:
            return parts[0]
        return lambda entity: all(part(entity) for part in parts)

    def _not(self) -> Predicate:
        if self._keyword("not"):
            inner = self._not()
            return lambda entity: not inner(entity)
        return self._primary()

    def _primary(self) -> Predicate:
        kind, value = self._next()
        if kind == "lparen":
            inner = self._or()
            if self._next()[0] != "rparen":
                raise PermanentStoreError("Unbalanced parentheses in filter", status_code=400)
            return inner
        if kind != "word":
            raise PermanentStoreError(f"Expected field name, got {value!r}", status_code=400)
        op_kind, op = self._next()
        if op_kind != "word" or op not in _COMPARATORS:
            raise PermanentStoreError(f"Invalid filter operator: {op!r}", status_code=400)
        literal_kind, literal = self._next()
        if literal_kind != "literal":
            raise PermanentStoreError(f"Expected literal, got {literal!r}", status_code=400)
        return _comparison(value, _COMPARATORS[op], literal)


def _comparison(field: str, compare: Callable[[Any, Any], bool], literal: Any) -> Predicate:
    def predicate(entity: Entity) -> bool:
        # Missing properties never match, mirroring the table service.
        if field not in entity:
            return False
        stored = entity[field]
        if isinstance(literal, datetime) and isinstance(stored, str):
            try:
                stored = datetime.fromisoformat(stored.replace("Z", "+00:00"))
            except ValueError:
                return False
        try:
            return compare(stored, literal)
        except TypeError:
            return False

    return predicate


def compile_filter(expression: str | None) -> Predicate:
    """Compile a filter expression into a predicate over entity dicts."""
    if not expression or not expression.strip():
        return lambda entity: True
    return _Parser(_tokenize(expression)).parse()


class MemoryTableStore:
    """In-process TableStore for tests and local development.

    Keeps entities ordered by (PartitionKey, RowKey) like the table service and
    honours Replace/Merge upserts, ETag preconditions and 404/409 semantics.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._rows: dict[tuple[str, str], Entity] = {}
        self._etags = itertools.count(1)
        self._exists = False

    def _check_keys(self, partition_key: str, row_key: str) -> None:
        # The table service rejects reserved and control characters in keys with a 400.
        if not is_key_safe(partition_key) or not is_key_safe(row_key):
            raise PermanentStoreError(
                "The key contains characters that are not allowed.", status_code=400, table=self.name
            )

    def _store(self, entity: Entity) -> None:
        key = (entity["PartitionKey"], entity["RowKey"])
        self._check_keys(*key)
        clean = {k: v for k, v in entity.items() if k != ETAG_KEY and v is not None}
        clean[ETAG_KEY] = f'W/"{next(self._etags)}"'
        self._rows[key] = clean

    def _merge(self, entity: Entity) -> None:
        key = (entity["PartitionKey"], entity["RowKey"])
        merged = dict(self._rows[key])
        merged.update({k: v for k, v in entity.items() if k != ETAG_KEY and v is not None})
        self._store(merged)

    async def get_entity(self, partition_key: str, row_key: str) -> Entity:
        self._check_keys(partition_key, row_key)
        entity = self._rows.get((partition_key, row_key))
        if entity is None:
            raise NotFoundError("The specified resource does not exist.", status_code=404, table=self.name)
        return dict(entity)

    async def upsert_entity(self, entity: Entity, mode: UpdateMode = UpdateMode.REPLACE) -> None:
        key = (entity["PartitionKey"], entity["RowKey"])
        if mode == UpdateMode.MERGE and key in self._rows:
            self._merge(entity)
        else:
            self._store(entity)

    async def create_entity(self, entity: Entity) -> None:
        key = (entity["PartitionKey"], entity["RowKey"])
        self._check_keys(*key)
        if key in self._rows:
            raise ConflictError("The specified entity already exists.", status_code=409, table=self.name)
        self._store(entity)

    async def update_entity(
        self, entity: Entity, mode: UpdateMode = UpdateMode.REPLACE, *, etag: str | None = None
    ) -> None:
        key = (entity["PartitionKey"], entity["RowKey"])
        self._check_keys(*key)
        current = self._rows.get(key)
        if current is None:
            raise NotFoundError("The specified resource does not exist.", status_code=404, table=self.name)
        if etag and current[ETAG_KEY] != etag:
            raise PreconditionFailedError(
                "The update condition specified in the request was not satisfied.",
                status_code=412,
                table=self.name,
            )
        if mode == UpdateMode.MERGE:
            self._merge(entity)
        else:
            self._store(entity)

    async def delete_entity(self, partition_key: str, row_key: str) -> None:
        self._check_keys(partition_key, row_key)
        if self._rows.pop((partition_key, row_key), None) is None:
            raise NotFoundError("The specified resource does not exist.", status_code=404, table=self.name)

    def _matching(self, query_filter: str | None, select: list[str] | None) -> list[Entity]:
        predicate = compile_filter(query_filter)
        rows = [dict(self._rows[key]) for key in sorted(self._rows)]
        matched = [row for row in rows if predicate(row)]
        if select:
            keep = set(select) | {ETAG_KEY}
            matched = [{k: v for k, v in row.items() if k in keep} for row in matched]
        return matched

    async def query_entities(
        self,
        query_filter: str | None = None,
        *,
        select: list[str] | None = None,
        page_size: int | None = None,
    ) -> AsyncIterator[Entity]:
        for entity in self._matching(query_filter, select):
            yield entity

    async def query_page(
        self,
        query_filter: str | None = None,
        *,
        page_size: int,
        continuation: Any = None,
    ) -> EntityPage:
        matched = self._matching(query_filter, None)
        start = int(continuation or 0)
        end = start + max(page_size, 1)
        next_token = str(end) if end < len(matched) else None
        return EntityPage(items=matched[start:end], continuation=next_token)

    async def create_table_if_not_exists(self) -> bool:
        created = not self._exists
        self._exists = True
        return created

    async def close(self) -> None:
        return None
