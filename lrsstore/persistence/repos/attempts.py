from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from lrsstore.core.config import get_settings
from lrsstore.core.errors import ConflictError, NotFoundError, PreconditionFailedError
from lrsstore.domain.models import (
    Attempt,
    AttemptUpdate,
    CompletionStatus,
    Page,
    parse_timestamp,
)
from lrsstore.persistence.filters import build_eq_filter
from lrsstore.persistence.keys import normalize_email
from lrsstore.persistence.repos.base import EntityRepository, dump_json, load_json, require, require_key_safe
from lrsstore.persistence.store import ETAG_KEY, Entity, UpdateMode
from lrsstore.services.reconcile import reconcile, resolve_completion


logger = logging.getLogger(__name__)

# Entity attribute name per domain field.
_ATTRIBUTES = {
    "registration_id": "registrationId",
    "user_email": "userEmail",
    "user_name": "userName",
    "course_id": "courseId",
    "activity_id": "activityId",
    "launched_at": "launchedAt",
    "completion_status": "completionStatus",
    "completion_verb": "completionVerb",
    "completion_statement_id": "completionStatementId",
    "success": "success",
    "score": "score",
    "progress_percent": "progressPercent",
    "time_spent": "timeSpent",
    "completed_at": "completedAt",
    "eligible_for_raise": "eligibleForRaise",
    "module_progress": "moduleProgress",
    "updated_at": "updatedAt",
}

# Defaults for fields neither supplied nor previously stored.
ATTEMPT_DEFAULTS: dict[str, Any] = {
    "user_name": None,
    "course_id": None,
    "activity_id": None,
    "launched_at": None,
    "completion_status": CompletionStatus.IN_PROGRESS.value,
    "completion_verb": None,
    "completion_statement_id": None,
    "success": None,
    "score": None,
    "progress_percent": None,
    "time_spent": 0,
    "completed_at": None,
    "eligible_for_raise": None,
    "module_progress": None,
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class AttemptRepository(EntityRepository[Attempt]):
    """Course attempts partitioned by normalized user email, keyed by registration id."""

    table_key = "course_attempts"

    def to_entity(self, obj: Attempt) -> Entity:
        entity: Entity = {
            "PartitionKey": normalize_email(obj.user_email),
            "RowKey": obj.registration_id,
        }
        for name, attribute in _ATTRIBUTES.items():
            value = getattr(obj, name)
            if name == "user_email":
                value = normalize_email(value)
            elif name == "module_progress":
                value = dump_json(value)
            entity[attribute] = value
        return entity

    def from_entity(self, entity: Entity) -> Attempt:
        values = {name: entity.get(attribute) for name, attribute in _ATTRIBUTES.items()}
        values["registration_id"] = values["registration_id"] or entity.get("RowKey")
        values["user_email"] = values["user_email"] or entity.get("PartitionKey")
        values["completion_status"] = values["completion_status"] or CompletionStatus.IN_PROGRESS.value
        values["time_spent"] = values["time_spent"] or 0
        values["module_progress"] = load_json(values["module_progress"])
        return Attempt(**values)

    async def create_attempt(self, attempt: Attempt) -> Attempt:
        # Launch writes a complete snapshot, so Replace is safe without a prior read.
        require(user_email=attempt.user_email, registration_id=attempt.registration_id)
        require_key_safe(user_email=normalize_email(attempt.user_email), registration_id=attempt.registration_id)
        now = self.now()
        attempt.user_email = normalize_email(attempt.user_email)
        attempt.launched_at = attempt.launched_at or now
        attempt.completion_status = attempt.completion_status or CompletionStatus.IN_PROGRESS.value
        attempt.updated_at = now
        await self.upsert(attempt, UpdateMode.REPLACE)
        logger.debug(
            "attempt_created registration=%s user=%s course=%s",
            attempt.registration_id,
            attempt.user_email,
            attempt.course_id,
        )
        return attempt

    async def get_attempt(self, user_email: str, registration_id: str) -> Attempt | None:
        require(user_email=user_email, registration_id=registration_id)
        require_key_safe(user_email=normalize_email(user_email), registration_id=registration_id)
        return await self.get(normalize_email(user_email), registration_id)

    async def upsert_attempt_progress(
        self,
        user_email: str,
        registration_id: str,
        update: AttemptUpdate,
    ) -> Attempt:
        """Reconcile a partial progress update with the stored attempt and replace it.

        The write is conditional on the ETag observed by the read; if another writer
        got there first the record is re-read and re-merged, up to
        ``reconcile_max_conflicts`` times.
        """
        require(user_email=user_email, registration_id=registration_id)
        partition_key = normalize_email(user_email)
        require_key_safe(user_email=partition_key, registration_id=registration_id)
        patch = update.as_patch()
        max_conflicts = max(get_settings().reconcile_max_conflicts, 1)
        attempt_no = 1
        while True:
            stored = await self.get_entity(partition_key, registration_id)
            prior = asdict(self.from_entity(stored)) if stored is not None else None
            now = self.now()
            merged = reconcile(prior, patch, ATTEMPT_DEFAULTS)
            merged = resolve_completion(merged, prior, patch, now=now)
            attempt = Attempt(
                registration_id=registration_id,
                user_email=partition_key,
                updated_at=now,
                **{name: merged[name] for name in ATTEMPT_DEFAULTS},
            )
            entity = self.to_entity(attempt)
            try:
                if stored is None:
                    await self._retry(lambda: self._store.create_entity(entity))
                else:
                    etag = stored.get(ETAG_KEY)
                    await self._retry(lambda: self._store.update_entity(entity, UpdateMode.REPLACE, etag=etag))
            except (ConflictError, PreconditionFailedError, NotFoundError) as exc:
                # Lost the race (created, modified or deleted underneath us); merge again from fresh state.
                if attempt_no >= max_conflicts:
                    raise
                logger.info(
                    "attempt_progress_conflict registration=%s retry=%s error=%s",
                    registration_id,
                    attempt_no,
                    type(exc).__name__,
                )
                attempt_no += 1
                continue
            logger.debug(
                "attempt_progress_updated registration=%s status=%s",
                registration_id,
                attempt.completion_status,
            )
            return attempt

    async def list_attempts(self, *, limit: int | None = None) -> list[Attempt]:
        return await self.list(None, limit=limit)

    async def list_attempts_page(self, *, page_size: int = 100, continuation: Any = None) -> Page:
        return await self.list_page(None, page_size=page_size, continuation=continuation)

    async def list_attempts_by_user(self, user_email: str | None, *, limit: int | None = None) -> list[Attempt]:
        partition_key = normalize_email(user_email)
        if not partition_key:
            return []
        return await self.list(build_eq_filter("PartitionKey", partition_key), limit=limit)

    async def list_attempts_by_course(self, course_id: str | None, *, limit: int | None = None) -> list[Attempt]:
        # Cross-partition scan; reporting only.
        if not course_id:
            return []
        return await self.list(build_eq_filter("courseId", course_id), limit=limit)

    async def get_latest_open_attempt(self, user_email: str | None, course_id: str | None) -> Attempt | None:
        """Return the most recently *launched* non-terminal attempt for a user and course."""
        if not user_email or not course_id:
            return None
        attempts = await self.list_attempts_by_user(user_email)
        open_attempts = [attempt for attempt in attempts if attempt.course_id == course_id and attempt.is_open]
        if not open_attempts:
            return None
        # Ties on launch time fall back to the registration id so the choice is stable.
        return max(
            open_attempts,
            key=lambda attempt: (parse_timestamp(attempt.launched_at) or _EPOCH, attempt.registration_id),
        )

    async def delete_attempt(self, user_email: str, registration_id: str) -> bool:
        require(user_email=user_email, registration_id=registration_id)
        require_key_safe(user_email=normalize_email(user_email), registration_id=registration_id)
        deleted = await self.delete(normalize_email(user_email), registration_id)
        if deleted:
            logger.info("attempt_deleted registration=%s", registration_id)
        return deleted
