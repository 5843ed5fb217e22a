from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from lrsstore.domain.models import UserAssignment
from lrsstore.persistence.filters import Condition, build_eq_filter, build_filter
from lrsstore.persistence.keys import composite_key, split_composite_key
from lrsstore.persistence.repos.base import EntityRepository, require, require_key_safe
from lrsstore.persistence.store import Entity, UpdateMode


logger = logging.getLogger(__name__)


def assignment_row_key(user_id: str, course_id: str) -> str:
    return composite_key(user_id, course_id)


class UserAssignmentRepository(EntityRepository[UserAssignment]):
    """Per-user course assignments grouped by provider."""

    table_key = "user_assignments"

    def to_entity(self, obj: UserAssignment) -> Entity:
        return {
            "PartitionKey": obj.provider_id,
            "RowKey": assignment_row_key(obj.user_id, obj.course_id),
            "providerId": obj.provider_id,
            "userId": obj.user_id,
            "courseId": obj.course_id,
            "assignedAt": obj.assigned_at,
            "dueDate": obj.due_date,
            "createdAt": obj.created_at,
            "updatedAt": obj.updated_at,
        }

    def from_entity(self, entity: Entity) -> UserAssignment:
        user_id, course_id = entity.get("userId"), entity.get("courseId")
        if not user_id or not course_id:
            parts = split_composite_key(entity.get("RowKey", ""))
            if len(parts) == 2:
                user_id, course_id = user_id or parts[0], course_id or parts[1]
        return UserAssignment(
            provider_id=entity["PartitionKey"],
            user_id=user_id or "",
            course_id=course_id or "",
            assigned_at=entity.get("assignedAt") or None,
            due_date=entity.get("dueDate") or None,
            created_at=entity.get("createdAt"),
            updated_at=entity.get("updatedAt"),
        )

    async def list_assignments_by_provider(self, provider_id: str | None) -> list[UserAssignment]:
        if not provider_id:
            return []
        return await self.list(build_eq_filter("PartitionKey", provider_id))

    async def list_assignments_by_provider_user(
        self, provider_id: str | None, user_id: str | None
    ) -> list[UserAssignment]:
        if not provider_id or not user_id:
            return []
        query_filter = build_filter([Condition("PartitionKey", provider_id), Condition("userId", user_id)])
        return await self.list(query_filter)

    async def list_assignments_by_provider_course(
        self, provider_id: str | None, course_id: str | None
    ) -> list[UserAssignment]:
        if not provider_id or not course_id:
            return []
        query_filter = build_filter([Condition("PartitionKey", provider_id), Condition("courseId", course_id)])
        return await self.list(query_filter)

    async def get_assignment(self, provider_id: str, user_id: str, course_id: str) -> UserAssignment | None:
        require(provider_id=provider_id, user_id=user_id, course_id=course_id)
        return await self.get(provider_id, assignment_row_key(user_id, course_id))

    async def upsert_assignments(self, assignments: Iterable[UserAssignment]) -> list[UserAssignment]:
        """Write a batch of assignments concurrently, each as a full Replace.

        Every item is validated before any write is issued, so a bad item fails
        the batch without partial writes.
        """
        batch = list(assignments or [])
        if not batch:
            return []
        for assignment in batch:
            require(
                provider_id=assignment.provider_id,
                user_id=assignment.user_id,
                course_id=assignment.course_id,
            )
            require_key_safe(provider_id=assignment.provider_id)
        now = self.now()
        for assignment in batch:
            assignment.assigned_at = assignment.assigned_at or now
            assignment.created_at = assignment.created_at or now
            assignment.updated_at = now
        await asyncio.gather(*(self.upsert(assignment, UpdateMode.REPLACE) for assignment in batch))
        logger.info("user_assignments_upserted count=%s", len(batch))
        return batch

    async def delete_assignment(self, provider_id: str, user_id: str, course_id: str) -> bool:
        require(provider_id=provider_id, user_id=user_id, course_id=course_id)
        return await self.delete(provider_id, assignment_row_key(user_id, course_id))

    async def _delete_all(self, assignments: list[UserAssignment]) -> int:
        deleted = 0
        for assignment in assignments:
            if await self.delete(assignment.provider_id, assignment_row_key(assignment.user_id, assignment.course_id)):
                deleted += 1
        return deleted

    async def delete_assignments_by_provider_user(self, provider_id: str | None, user_id: str | None) -> int:
        deleted = await self._delete_all(await self.list_assignments_by_provider_user(provider_id, user_id))
        logger.info("user_assignments_deleted provider=%s user=%s count=%s", provider_id, user_id, deleted)
        return deleted

    async def delete_assignments_by_provider_course(self, provider_id: str | None, course_id: str | None) -> int:
        deleted = await self._delete_all(await self.list_assignments_by_provider_course(provider_id, course_id))
        logger.info("user_assignments_deleted provider=%s course=%s count=%s", provider_id, course_id, deleted)
        return deleted

    async def delete_assignments_by_provider(self, provider_id: str | None) -> int:
        deleted = await self._delete_all(await self.list_assignments_by_provider(provider_id))
        logger.info("user_assignments_deleted provider=%s count=%s", provider_id, deleted)
        return deleted
