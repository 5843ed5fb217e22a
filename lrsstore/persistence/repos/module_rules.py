from __future__ import annotations

import logging
from typing import Any

from lrsstore.domain.models import ModuleRules
from lrsstore.persistence.repos.base import EntityRepository, dump_json, load_json, require, require_key_safe
from lrsstore.persistence.store import Entity, UpdateMode


logger = logging.getLogger(__name__)

RULES_ROW_KEY = "rules"


class ModuleRulesRepository(EntityRepository[ModuleRules]):
    """One JSON rules document per course."""

    table_key = "module_rules"

    def to_entity(self, obj: ModuleRules) -> Entity:
        return {
            "PartitionKey": obj.course_id,
            "RowKey": RULES_ROW_KEY,
            "rules": dump_json(list(obj.rules or [])),
            "updatedAt": obj.updated_at,
        }

    def from_entity(self, entity: Entity) -> ModuleRules:
        return ModuleRules(
            course_id=entity["PartitionKey"],
            rules=load_json(entity.get("rules"), []) or [],
            updated_at=entity.get("updatedAt"),
        )

    async def get_module_rules(self, course_id: str | None) -> list[Any]:
        if not course_id:
            return []
        stored = await self.get(course_id, RULES_ROW_KEY)
        if stored is None:
            return []
        logger.debug("module_rules_loaded course=%s rules=%s", course_id, len(stored.rules))
        return stored.rules

    async def save_module_rules(self, course_id: str, rules: list[Any] | None) -> list[Any]:
        require(course_id=course_id)
        require_key_safe(course_id=course_id)
        document = ModuleRules(course_id=course_id, rules=list(rules or []), updated_at=self.now())
        await self.upsert(document, UpdateMode.REPLACE)
        logger.info("module_rules_saved course=%s rules=%s", course_id, len(document.rules))
        return document.rules

    async def delete_module_rules(self, course_id: str | None) -> bool:
        if not course_id:
            return False
        deleted = await self.delete(course_id, RULES_ROW_KEY)
        if deleted:
            logger.info("module_rules_deleted course=%s", course_id)
        return deleted
