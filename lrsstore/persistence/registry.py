from __future__ import annotations

import logging
from typing import Mapping

from azure.core.credentials import AzureNamedKeyCredential
from azure.data.tables.aio import TableClient

from lrsstore.core.config import TABLE_KEYS, Settings, get_settings
from lrsstore.core.errors import TableConfigError
from lrsstore.persistence.memory import MemoryTableStore
from lrsstore.persistence.store import AzureTableStore, TableStore


logger = logging.getLogger(__name__)


class TableRegistry:
    """One table client per logical table, constructed once and passed to repositories."""

    def __init__(self, stores: Mapping[str, TableStore], *, auto_create: bool = False) -> None:
        self._stores = dict(stores)
        self._auto_create = auto_create

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TableRegistry":
        settings = settings or get_settings()
        if settings.table_backend == "memory":
            return cls.in_memory(settings)
        stores: dict[str, TableStore] = {}
        for key in TABLE_KEYS:
            stores[key] = AzureTableStore(_azure_client(settings, settings.table_name(key)))
        logger.info("table_registry_ready backend=azure tables=%s", len(stores))
        return cls(stores, auto_create=settings.table_auto_create)

    @classmethod
    def in_memory(cls, settings: Settings | None = None) -> "TableRegistry":
        settings = settings or get_settings()
        stores = {key: MemoryTableStore(settings.table_name(key)) for key in TABLE_KEYS}
        return cls(stores, auto_create=settings.table_auto_create)

    def table(self, key: str) -> TableStore:
        try:
            return self._stores[key]
        except KeyError:
            raise TableConfigError(f"Table '{key}' is not registered") from None

    def keys(self) -> list[str]:
        return list(self._stores)

    async def ensure_tables(self) -> list[str]:
        # Create missing tables; existing ones are left untouched.
        created = []
        for key, store in self._stores.items():
            if await store.create_table_if_not_exists():
                created.append(key)
        return created

    async def close(self) -> None:
        for store in self._stores.values():
            await store.close()

    async def __aenter__(self) -> "TableRegistry":
        if self._auto_create:
            await self.ensure_tables()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()


def _azure_client(settings: Settings, table_name: str) -> TableClient:
    # Fail on first use rather than at import so tests never need credentials.
    if settings.azure_storage_connection_string:
        return TableClient.from_connection_string(
            settings.azure_storage_connection_string, table_name=table_name
        )
    if not settings.azure_storage_account_name or not settings.azure_storage_account_key:
        raise TableConfigError(
            "Azure Storage credentials not configured. Set AZURE_STORAGE_ACCOUNT_NAME and "
            "AZURE_STORAGE_ACCOUNT_KEY or AZURE_STORAGE_CONNECTION_STRING"
        )
    credential = AzureNamedKeyCredential(
        settings.azure_storage_account_name, settings.azure_storage_account_key
    )
    return TableClient(settings.table_endpoint, table_name=table_name, credential=credential)
