from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Generic, TypeVar

from lrsstore.core.errors import NotFoundError, StoreError, ValidationError
from lrsstore.domain.models import Page, format_timestamp
from lrsstore.persistence.keys import is_key_safe
from lrsstore.persistence.registry import TableRegistry
from lrsstore.persistence.store import ETAG_KEY, Entity, TableStore, UpdateMode
from lrsstore.services.resilience import RetryPolicy, default_retry_policy, retry_async
from lrsstore.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Enumeration failures that degrade a listing instead of failing it.
DEGRADABLE_ERRORS = (StoreError, TimeoutError, OSError)


def require(**identifiers: Any) -> None:
    # Reject missing identifiers before any I/O is attempted.
    missing = [name for name, value in identifiers.items() if value is None or str(value).strip() == ""]
    if missing:
        raise ValidationError(f"{' and '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def require_key_safe(**keys: str) -> None:
    # Raw identifiers used directly as keys must not carry reserved characters.
    unsafe = [name for name, value in keys.items() if value and not is_key_safe(value)]
    if unsafe:
        raise ValidationError(f"{', '.join(unsafe)} contains characters not allowed in table keys")


def dump_json(value: Any) -> str | None:
    # JSON blobs are serialized at write time; None stays absent in the table.
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def load_json(value: Any, default: Any = None) -> Any:
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        return value
    return json.loads(value)


class EntityRepository(Generic[T]):
    """Point read, listing, upsert and delete over one logical table.

    Subclasses supply ``table_key`` plus the entity/domain mapping. Every store
    call runs through :func:`retry_async`.
    """

    table_key: ClassVar[str]

    def __init__(
        self,
        registry: TableRegistry,
        *,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store: TableStore = registry.table(self.table_key)
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> str:
        return format_timestamp(self._clock())

    def to_entity(self, obj: T) -> Entity:
        raise NotImplementedError

    def from_entity(self, entity: Entity) -> T:
        raise NotImplementedError

    async def _retry(self, func: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_async(func, policy=self._policy)

    async def get_entity(self, partition_key: str, row_key: str) -> Entity | None:
        # Not found is an answer, not a failure; anything else propagates.
        try:
            return await self._retry(lambda: self._store.get_entity(partition_key, row_key))
        except NotFoundError:
            return None

    async def get(self, partition_key: str, row_key: str) -> T | None:
        entity = await self.get_entity(partition_key, row_key)
        if entity is None:
            return None
        return self.from_entity(entity)

    async def list(self, query_filter: str | None = None, *, limit: int | None = None) -> list[T]:
        """Enumerate matching entities, stopping early once ``limit`` is reached.

        Enumeration failures are logged and whatever was collected so far is
        returned, so listing and reporting callers stay available.
        """
        collected: list[T] = []

        async def _drain() -> list[T]:
            collected.clear()
            async for entity in self._store.query_entities(query_filter):
                collected.append(self.from_entity(entity))
                if limit and len(collected) >= limit:
                    break
            return list(collected)

        # A full drain spans many pages, so only the retry bound applies, not the per-call timeout.
        policy = replace(self._policy or default_retry_policy(), timeout_ms=0)
        try:
            return await retry_async(_drain, policy=policy)
        except DEGRADABLE_ERRORS as exc:
            increment_counter("store_list_degraded_total")
            logger.warning(
                "store_list_degraded table=%s filter=%s collected=%s",
                self._store.name,
                query_filter,
                len(collected),
                exc_info=exc,
            )
            return list(collected)

    async def list_page(
        self,
        query_filter: str | None = None,
        *,
        page_size: int = 100,
        continuation: Any = None,
    ) -> Page:
        # Expose the store cursor instead of draining; a failed page keeps the caller's cursor.
        try:
            page = await self._retry(
                lambda: self._store.query_page(query_filter, page_size=page_size, continuation=continuation)
            )
        except DEGRADABLE_ERRORS as exc:
            increment_counter("store_list_degraded_total")
            logger.warning("store_page_degraded table=%s filter=%s", self._store.name, query_filter, exc_info=exc)
            return Page(items=[], continuation=continuation)
        return Page(items=[self.from_entity(entity) for entity in page.items], continuation=page.continuation)

    async def upsert_entity(self, entity: Entity, mode: UpdateMode = UpdateMode.REPLACE) -> Entity:
        await self._retry(lambda: self._store.upsert_entity(entity, mode))
        return {key: value for key, value in entity.items() if key != ETAG_KEY}

    async def upsert(self, obj: T, mode: UpdateMode = UpdateMode.REPLACE) -> Entity:
        return await self.upsert_entity(self.to_entity(obj), mode)

    async def delete(self, partition_key: str, row_key: str) -> bool:
        # Deleting something already gone reports False instead of raising.
        if await self.get_entity(partition_key, row_key) is None:
            return False
        try:
            await self._retry(lambda: self._store.delete_entity(partition_key, row_key))
        except NotFoundError:
            # The row existed; a timed-out earlier attempt or a concurrent delete removed it.
            logger.debug("store_delete_already_gone table=%s", self._store.name)
        return True
