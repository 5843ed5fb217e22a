from __future__ import annotations

import logging

from lrsstore.domain.models import ProviderCourse
from lrsstore.persistence.filters import build_eq_filter
from lrsstore.persistence.repos.base import EntityRepository, require, require_key_safe
from lrsstore.persistence.store import Entity, UpdateMode


logger = logging.getLogger(__name__)


class ProviderCourseRepository(EntityRepository[ProviderCourse]):
    table_key = "provider_courses"

    def to_entity(self, obj: ProviderCourse) -> Entity:
        return {
            "PartitionKey": obj.provider_id,
            "RowKey": obj.course_id,
            "assignedAt": obj.assigned_at,
            "createdAt": obj.created_at,
            "updatedAt": obj.updated_at,
        }

    def from_entity(self, entity: Entity) -> ProviderCourse:
        return ProviderCourse(
            provider_id=entity["PartitionKey"],
            course_id=entity["RowKey"],
            assigned_at=entity.get("assignedAt") or None,
            created_at=entity.get("createdAt"),
            updated_at=entity.get("updatedAt"),
        )

    async def get_provider_course(self, provider_id: str | None, course_id: str | None) -> ProviderCourse | None:
        if not provider_id or not course_id:
            return None
        return await self.get(provider_id, course_id)

    async def list_provider_courses(self, provider_id: str | None) -> list[ProviderCourse]:
        if not provider_id:
            return []
        return await self.list(build_eq_filter("PartitionKey", provider_id))

    async def assign_course_to_provider(
        self, provider_id: str, course_id: str, assigned_at: str | None = None
    ) -> ProviderCourse:
        require(provider_id=provider_id, course_id=course_id)
        require_key_safe(provider_id=provider_id, course_id=course_id)
        now = self.now()
        assignment = ProviderCourse(
            provider_id=provider_id,
            course_id=course_id,
            assigned_at=assigned_at or now,
            created_at=now,
            updated_at=now,
        )
        await self.upsert(assignment, UpdateMode.REPLACE)
        logger.info("provider_course_assigned provider=%s course=%s", provider_id, course_id)
        return assignment

    async def remove_course_from_provider(self, provider_id: str | None, course_id: str | None) -> bool:
        if not provider_id or not course_id:
            return False
        removed = await self.delete(provider_id, course_id)
        if removed:
            logger.info("provider_course_removed provider=%s course=%s", provider_id, course_id)
        return removed

    async def delete_courses_for_provider(self, provider_id: str | None) -> int:
        if not provider_id:
            return 0
        deleted = 0
        for assignment in await self.list_provider_courses(provider_id):
            if await self.delete(assignment.provider_id, assignment.course_id):
                deleted += 1
        logger.info("provider_courses_deleted provider=%s count=%s", provider_id, deleted)
        return deleted
