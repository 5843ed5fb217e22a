from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Mapping

from lrsstore.domain.models import KnowledgeCheckAttempt
from lrsstore.persistence.filters import Condition, build_filter
from lrsstore.persistence.keys import composite_key, normalize_email, split_composite_key
from lrsstore.persistence.repos.base import EntityRepository, require, require_key_safe
from lrsstore.persistence.store import Entity, UpdateMode


logger = logging.getLogger(__name__)

NO_REGISTRATION = "noreg"

_ATTRIBUTES = {
    "attempt_id": "attemptId",
    "user_email": "userEmail",
    "registration_id": "registrationId",
    "course_id": "courseId",
    "activity_id": "activityId",
    "assessment_id": "assessmentId",
    "assessment_name": "assessmentName",
    "verb_id": "verbId",
    "success": "success",
    "score_scaled": "scoreScaled",
    "score_raw": "scoreRaw",
    "score_max": "scoreMax",
    "response": "response",
    "interaction_type": "interactionType",
    "timestamp": "timestamp",
    "stored_at": "storedAt",
}


def kc_row_key(registration_id: str | None, attempt_id: str) -> str:
    # Registration and statement ids are free-form, so both parts are encoded.
    return composite_key(registration_id or NO_REGISTRATION, attempt_id)


def localized(value: Any) -> str | None:
    # Language maps resolve en-US, then en, then whatever comes first.
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("en-US") or value.get("en") or next(iter(value.values()), None)
    return None


def _number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, (int, float)) else None


def _generated_attempt_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class KnowledgeCheckAttemptRepository(EntityRepository[KnowledgeCheckAttempt]):
    """Knowledge-check results partitioned by user email, keyed by encoded registration|attempt."""

    table_key = "kc_attempts"

    def to_entity(self, obj: KnowledgeCheckAttempt) -> Entity:
        entity: Entity = {
            "PartitionKey": normalize_email(obj.user_email),
            "RowKey": kc_row_key(obj.registration_id, obj.attempt_id),
        }
        for name, attribute in _ATTRIBUTES.items():
            entity[attribute] = getattr(obj, name)
        entity["userEmail"] = normalize_email(obj.user_email)
        return entity

    def from_entity(self, entity: Entity) -> KnowledgeCheckAttempt:
        values = {name: entity.get(attribute) for name, attribute in _ATTRIBUTES.items()}
        if not values["attempt_id"]:
            parts = split_composite_key(entity.get("RowKey", ""))
            values["attempt_id"] = parts[-1]
        values["user_email"] = values["user_email"] or entity.get("PartitionKey")
        values["assessment_id"] = values["assessment_id"] or ""
        return KnowledgeCheckAttempt(**values)

    def attempt_from_statement(
        self, statement: Mapping[str, Any], context: Mapping[str, Any]
    ) -> KnowledgeCheckAttempt | None:
        """Build a knowledge-check attempt from an xAPI-shaped statement.

        Returns ``None`` when the statement has no user or no assessment object.
        """
        user_email = normalize_email(context.get("user_email"))
        if not user_email:
            return None
        obj = statement.get("object") or {}
        assessment_id = obj.get("id")
        if not assessment_id:
            return None
        definition = obj.get("definition") or {}
        result = statement.get("result") or {}
        score = result.get("score") or {}
        registration_id = context.get("registration_id") or (statement.get("context") or {}).get("registration")
        success = result.get("success")
        response = result.get("response")
        return KnowledgeCheckAttempt(
            attempt_id=statement.get("id") or _generated_attempt_id(),
            user_email=user_email,
            assessment_id=assessment_id,
            registration_id=registration_id or None,
            course_id=context.get("course_id"),
            activity_id=context.get("activity_id"),
            assessment_name=localized(definition.get("name")),
            verb_id=(statement.get("verb") or {}).get("id"),
            success=success if isinstance(success, bool) else None,
            score_scaled=_number(score.get("scaled")),
            score_raw=_number(score.get("raw")),
            score_max=_number(score.get("max")),
            response=response if isinstance(response, str) else None,
            interaction_type=definition.get("interactionType"),
            timestamp=statement.get("timestamp"),
            stored_at=self.now(),
        )

    async def record_attempt(
        self, statement: Mapping[str, Any], context: Mapping[str, Any]
    ) -> KnowledgeCheckAttempt | None:
        attempt = self.attempt_from_statement(statement, context)
        if attempt is None:
            return None
        require_key_safe(user_email=attempt.user_email)
        # Each statement is a complete record; Replace makes re-delivery idempotent.
        await self.upsert(attempt, UpdateMode.REPLACE)
        logger.debug("kc_attempt_recorded user=%s assessment=%s", attempt.user_email, attempt.assessment_id)
        return attempt

    async def get_attempt(
        self, user_email: str, registration_id: str | None, attempt_id: str
    ) -> KnowledgeCheckAttempt | None:
        require(user_email=user_email, attempt_id=attempt_id)
        require_key_safe(user_email=normalize_email(user_email))
        return await self.get(normalize_email(user_email), kc_row_key(registration_id, attempt_id))

    async def list_attempts_by_user(
        self,
        user_email: str | None,
        *,
        registration_id: str | None = None,
        course_id: str | None = None,
        assessment_id: str | None = None,
        limit: int | None = None,
    ) -> list[KnowledgeCheckAttempt]:
        partition_key = normalize_email(user_email)
        if not partition_key:
            return []
        query_filter = build_filter(
            [
                Condition("PartitionKey", partition_key),
                Condition("registrationId", registration_id),
                Condition("courseId", course_id),
                Condition("assessmentId", assessment_id),
            ],
            "and",
        )
        return await self.list(query_filter, limit=limit)

    async def list_attempts_by_course(
        self,
        course_id: str | None,
        *,
        registration_id: str | None = None,
        assessment_id: str | None = None,
        limit: int | None = None,
    ) -> list[KnowledgeCheckAttempt]:
        if not course_id:
            return []
        query_filter = build_filter(
            [
                Condition("courseId", course_id),
                Condition("registrationId", registration_id),
                Condition("assessmentId", assessment_id),
            ],
            "and",
        )
        return await self.list(query_filter, limit=limit)

    async def delete_attempt(self, user_email: str, registration_id: str | None, attempt_id: str) -> bool:
        require(user_email=user_email, attempt_id=attempt_id)
        require_key_safe(user_email=normalize_email(user_email))
        return await self.delete(normalize_email(user_email), kc_row_key(registration_id, attempt_id))
