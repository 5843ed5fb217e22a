from __future__ import annotations


class LrsStoreError(Exception):
    """Base error for lrsstore."""


class ValidationError(LrsStoreError):
    """A required identifier is missing or malformed; raised before any I/O."""


class FilterError(ValidationError):
    """Filter field name or operator outside the allowed grammar."""


class TableConfigError(LrsStoreError):
    """Missing or invalid table backend configuration."""


class StoreError(LrsStoreError):
    """Table service failure, classified once at the store-client boundary."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        table: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.table = table


class NotFoundError(StoreError):
    """Point-read or delete target is absent."""


class TransientStoreError(StoreError):
    """Throttling, timeout, transient server or network failure; safe to retry."""


class PermanentStoreError(StoreError):
    """Any other client-side failure; semantically final."""


class ConflictError(PermanentStoreError):
    """Entity or table already exists."""


class PreconditionFailedError(PermanentStoreError):
    """ETag no longer matches the stored entity."""


class AccountLockedError(LrsStoreError):
    """Too many failed logins; the account is locked until ``locked_until``."""

    def __init__(self, message: str, *, locked_until: str | None = None, remaining_minutes: int = 0) -> None:
        super().__init__(message)
        self.locked_until = locked_until
        self.remaining_minutes = remaining_minutes
