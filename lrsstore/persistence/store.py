from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from azure.core import MatchConditions
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.data.tables import UpdateMode as AzureUpdateMode
from azure.data.tables.aio import TableClient

from lrsstore.core.errors import (
    ConflictError,
    NotFoundError,
    PermanentStoreError,
    PreconditionFailedError,
    StoreError,
    TransientStoreError,
)
from lrsstore.services.telemetry import record_store_call


logger = logging.getLogger(__name__)

# Property names cannot contain '.', so the ETag never collides with a user field.
ETAG_KEY = "odata.etag"

Entity = dict[str, Any]


class UpdateMode(str, enum.Enum):
    REPLACE = "replace"
    MERGE = "merge"


@dataclass
class EntityPage:
    # One page of an enumeration plus the opaque cursor for the next one.
    items: list[Entity] = field(default_factory=list)
    continuation: Any = None


class TableStore(Protocol):
    name: str

    async def get_entity(self, partition_key: str, row_key: str) -> Entity:
        ...

    async def upsert_entity(self, entity: Entity, mode: UpdateMode = UpdateMode.REPLACE) -> None:
        ...

    async def create_entity(self, entity: Entity) -> None:
        ...

    async def update_entity(
        self, entity: Entity, mode: UpdateMode = UpdateMode.REPLACE, *, etag: str | None = None
    ) -> None:
        ...

    async def delete_entity(self, partition_key: str, row_key: str) -> None:
        ...

    def query_entities(
        self,
        query_filter: str | None = None,
        *,
        select: list[str] | None = None,
        page_size: int | None = None,
    ) -> AsyncIterator[Entity]:
        ...

    async def query_page(
        self,
        query_filter: str | None = None,
        *,
        page_size: int,
        continuation: Any = None,
    ) -> EntityPage:
        ...

    async def create_table_if_not_exists(self) -> bool:
        ...

    async def close(self) -> None:
        ...


def classify_store_error(exc: BaseException, *, table: str | None = None) -> BaseException:
    """Map a transport error onto the store taxonomy.

    Higher layers only ever see :class:`StoreError` subclasses for table failures;
    errors that are not transport errors are returned unchanged.
    """
    if isinstance(exc, StoreError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return TransientStoreError(message, table=table)
    if isinstance(exc, HttpResponseError):
        status = exc.status_code
        code = getattr(exc, "error_code", None)
        code = str(code) if code is not None else None
        if isinstance(exc, ResourceNotFoundError) or status == 404:
            return NotFoundError(message, status_code=404, error_code=code, table=table)
        if isinstance(exc, ResourceExistsError) or status == 409:
            return ConflictError(message, status_code=409, error_code=code, table=table)
        if isinstance(exc, ResourceModifiedError) or status == 412:
            return PreconditionFailedError(message, status_code=412, error_code=code, table=table)
        if status is None or status in (408, 429) or status >= 500:
            return TransientStoreError(message, status_code=status, error_code=code, table=table)
        return PermanentStoreError(message, status_code=status, error_code=code, table=table)
    if isinstance(exc, (TimeoutError, OSError)):
        return TransientStoreError(message, table=table)
    if isinstance(exc, AzureError):
        return PermanentStoreError(message, table=table)
    return exc


def _plain(entity: Any) -> Entity:
    # Flatten SDK entities to dicts carrying the ETag under a reserved key.
    result = dict(entity)
    metadata = getattr(entity, "metadata", None) or {}
    if metadata.get("etag"):
        result[ETAG_KEY] = metadata["etag"]
    return result


def _writable(entity: Entity) -> Entity:
    # Drop the ETag and None values; absent and null are the same thing in a table.
    return {key: value for key, value in entity.items() if key != ETAG_KEY and value is not None}


def _azure_mode(mode: UpdateMode) -> AzureUpdateMode:
    return AzureUpdateMode.MERGE if mode == UpdateMode.MERGE else AzureUpdateMode.REPLACE


class AzureTableStore:
    """TableStore backed by ``azure.data.tables.aio.TableClient``."""

    def __init__(self, client: TableClient) -> None:
        self._client = client
        self.name = client.table_name

    async def _call(self, operation: str, coro: Any) -> Any:
        # Classify errors exactly once and record latency for every call.
        started = time.perf_counter()
        try:
            result = await coro
        except AzureError as exc:
            record_store_call(
                table=self.name,
                operation=operation,
                latency_ms=(time.perf_counter() - started) * 1000.0,
                success=False,
            )
            raise classify_store_error(exc, table=self.name) from exc
        record_store_call(
            table=self.name,
            operation=operation,
            latency_ms=(time.perf_counter() - started) * 1000.0,
            success=True,
        )
        return result

    async def get_entity(self, partition_key: str, row_key: str) -> Entity:
        entity = await self._call(
            "get", self._client.get_entity(partition_key=partition_key, row_key=row_key)
        )
        return _plain(entity)

    async def upsert_entity(self, entity: Entity, mode: UpdateMode = UpdateMode.REPLACE) -> None:
        await self._call("upsert", self._client.upsert_entity(_writable(entity), mode=_azure_mode(mode)))

    async def create_entity(self, entity: Entity) -> None:
        await self._call("create", self._client.create_entity(_writable(entity)))

    async def update_entity(
        self, entity: Entity, mode: UpdateMode = UpdateMode.REPLACE, *, etag: str | None = None
    ) -> None:
        kwargs: dict[str, Any] = {"mode": _azure_mode(mode)}
        if etag:
            kwargs["etag"] = etag
            kwargs["match_condition"] = MatchConditions.IfNotModified
        await self._call("update", self._client.update_entity(_writable(entity), **kwargs))

    async def delete_entity(self, partition_key: str, row_key: str) -> None:
        # The SDK swallows 404 on delete; read first so absence stays distinguishable.
        await self.get_entity(partition_key, row_key)
        await self._call(
            "delete", self._client.delete_entity(partition_key=partition_key, row_key=row_key)
        )

    def _pager(self, query_filter: str | None, select: list[str] | None, page_size: int | None) -> Any:
        kwargs: dict[str, Any] = {}
        if select:
            kwargs["select"] = select
        if page_size:
            kwargs["results_per_page"] = page_size
        if query_filter:
            return self._client.query_entities(query_filter, **kwargs)
        return self._client.list_entities(**kwargs)

    async def query_entities(
        self,
        query_filter: str | None = None,
        *,
        select: list[str] | None = None,
        page_size: int | None = None,
    ) -> AsyncIterator[Entity]:
        pager = self._pager(query_filter, select, page_size)
        try:
            async for entity in pager:
                yield _plain(entity)
        except AzureError as exc:
            raise classify_store_error(exc, table=self.name) from exc

    async def query_page(
        self,
        query_filter: str | None = None,
        *,
        page_size: int,
        continuation: Any = None,
    ) -> EntityPage:
        pages = self._pager(query_filter, None, page_size).by_page(continuation_token=continuation)
        try:
            page = await pages.__anext__()
            items = [_plain(entity) async for entity in page]
        except StopAsyncIteration:
            return EntityPage()
        except AzureError as exc:
            raise classify_store_error(exc, table=self.name) from exc
        return EntityPage(items=items, continuation=pages.continuation_token)

    async def create_table_if_not_exists(self) -> bool:
        try:
            await self._call("create_table", self._client.create_table())
        except ConflictError:
            logger.debug("table_exists table=%s", self.name)
            return False
        logger.info("table_created table=%s", self.name)
        return True

    async def close(self) -> None:
        await self._client.close()
