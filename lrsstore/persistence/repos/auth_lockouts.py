from __future__ import annotations

import logging
import math
from datetime import timedelta

from lrsstore.core.config import get_settings
from lrsstore.core.errors import AccountLockedError
from lrsstore.domain.models import Lockout, format_timestamp
from lrsstore.persistence.keys import is_key_safe, normalize_email
from lrsstore.persistence.repos.base import EntityRepository, require, require_key_safe
from lrsstore.persistence.store import Entity, UpdateMode


logger = logging.getLogger(__name__)

LOCKOUT_PARTITION_KEY = "lockout"


class AuthLockoutRepository(EntityRepository[Lockout]):
    """Failed-login counters and lockout windows keyed by normalized email."""

    table_key = "auth_lockouts"

    def to_entity(self, obj: Lockout) -> Entity:
        # Merge ignores absent attributes, so an empty string is what clears lockoutUntil.
        return {
            "PartitionKey": LOCKOUT_PARTITION_KEY,
            "RowKey": normalize_email(obj.email),
            "failedAttempts": int(obj.failed_attempts or 0),
            "lockoutUntil": obj.lockout_until or "",
            "lastAttempt": obj.last_attempt or self.now(),
        }

    def from_entity(self, entity: Entity) -> Lockout:
        try:
            failed = int(entity.get("failedAttempts") or 0)
        except (TypeError, ValueError):
            failed = 0
        return Lockout(
            email=entity["RowKey"],
            failed_attempts=failed,
            lockout_until=entity.get("lockoutUntil") or None,
            last_attempt=entity.get("lastAttempt") or None,
        )

    async def get_lockout(self, email: str | None) -> Lockout | None:
        # An email that cannot be a row key can never have been locked.
        row_key = normalize_email(email)
        if not row_key or not is_key_safe(row_key):
            return None
        return await self.get(LOCKOUT_PARTITION_KEY, row_key)

    async def upsert_lockout(self, lockout: Lockout) -> Lockout:
        require(email=normalize_email(lockout.email))
        require_key_safe(email=normalize_email(lockout.email))
        lockout.email = normalize_email(lockout.email)
        lockout.last_attempt = lockout.last_attempt or self.now()
        await self.upsert(lockout, UpdateMode.MERGE)
        logger.debug("lockout_updated email=%s failed_attempts=%s", lockout.email, lockout.failed_attempts)
        return lockout

    async def clear_lockout(self, email: str | None) -> bool:
        row_key = normalize_email(email)
        if not row_key:
            return False
        if not is_key_safe(row_key):
            return True
        # Clearing an account that was never locked still counts as cleared.
        if await self.delete(LOCKOUT_PARTITION_KEY, row_key):
            logger.info("lockout_cleared email=%s", row_key)
        return True

    async def record_failed_login(self, email: str) -> Lockout:
        """Count a failed login and lock the account once the threshold is reached."""
        require(email=normalize_email(email))
        require_key_safe(email=normalize_email(email))
        settings = get_settings()
        now = self._clock()
        current = await self.get_lockout(email) or Lockout(email=normalize_email(email))
        locked_until = current.locked_until()
        if locked_until is not None and locked_until <= now:
            # A finished lockout window starts a fresh count.
            current.failed_attempts = 0
            current.lockout_until = None
        current.failed_attempts += 1
        current.last_attempt = format_timestamp(now)
        if current.failed_attempts >= settings.lockout_max_failed_attempts and not current.lockout_until:
            current.lockout_until = format_timestamp(now + timedelta(minutes=settings.lockout_duration_minutes))
            logger.warning("account_locked email=%s until=%s", current.email, current.lockout_until)
        return await self.upsert_lockout(current)

    async def check_lockout(self, email: str | None) -> Lockout | None:
        """Raise :class:`AccountLockedError` while a lockout is active.

        An expired lockout is removed so the next failure starts from zero.
        """
        lockout = await self.get_lockout(email)
        if lockout is None:
            return None
        locked_until = lockout.locked_until()
        if locked_until is None:
            return lockout
        now = self._clock()
        if now < locked_until:
            remaining = math.ceil((locked_until - now).total_seconds() / 60)
            raise AccountLockedError(
                f"Account locked. Try again in {remaining} minute(s)",
                locked_until=lockout.lockout_until,
                remaining_minutes=remaining,
            )
        await self.clear_lockout(email)
        return None

    async def is_locked_out(self, email: str | None) -> bool:
        try:
            await self.check_lockout(email)
        except AccountLockedError:
            return True
        return False
