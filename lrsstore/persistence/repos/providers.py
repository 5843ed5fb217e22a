from __future__ import annotations

import logging

from lrsstore.domain.models import Provider
from lrsstore.persistence.filters import build_eq_filter
from lrsstore.persistence.repos.base import EntityRepository, require, require_key_safe
from lrsstore.persistence.store import Entity, UpdateMode


logger = logging.getLogger(__name__)

PROVIDER_PARTITION_KEY = "provider"


class ProviderRepository(EntityRepository[Provider]):
    """Flat provider catalog under a single partition."""

    table_key = "providers"

    def to_entity(self, obj: Provider) -> Entity:
        return {
            "PartitionKey": PROVIDER_PARTITION_KEY,
            "RowKey": obj.provider_id,
            "name": obj.name,
            "createdAt": obj.created_at,
            "updatedAt": obj.updated_at,
        }

    def from_entity(self, entity: Entity) -> Provider:
        return Provider(
            provider_id=entity["RowKey"],
            name=entity.get("name") or "",
            created_at=entity.get("createdAt"),
            updated_at=entity.get("updatedAt"),
        )

    async def list_providers(self) -> list[Provider]:
        return await self.list(build_eq_filter("PartitionKey", PROVIDER_PARTITION_KEY))

    async def get_provider(self, provider_id: str | None) -> Provider | None:
        if not provider_id:
            return None
        return await self.get(PROVIDER_PARTITION_KEY, provider_id)

    async def save_provider(self, provider: Provider) -> Provider:
        require(provider_id=provider.provider_id, name=provider.name)
        require_key_safe(provider_id=provider.provider_id)
        now = self.now()
        if not provider.created_at:
            # Renames must not reset the original creation time.
            existing = await self.get(PROVIDER_PARTITION_KEY, provider.provider_id)
            provider.created_at = existing.created_at if existing and existing.created_at else now
        provider.updated_at = now
        await self.upsert(provider, UpdateMode.REPLACE)
        logger.info("provider_saved provider=%s", provider.provider_id)
        return provider

    async def delete_provider(self, provider_id: str | None) -> bool:
        if not provider_id:
            return False
        deleted = await self.delete(PROVIDER_PARTITION_KEY, provider_id)
        if deleted:
            logger.info("provider_deleted provider=%s", provider_id)
        return deleted
