from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Logical table keys; repositories address tables only through these names.
TABLE_KEYS = (
    "course_attempts",
    "kc_attempts",
    "module_rules",
    "providers",
    "provider_courses",
    "user_assignments",
    "auth_lockouts",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "lrsstore"
    log_level: str = "INFO"

    # Select the table backend: azure for production, memory for tests and local runs.
    table_backend: str = "azure"
    azure_storage_account_name: str | None = None
    azure_storage_account_key: str | None = None
    # Defaults to https://{account}.table.core.windows.net when unset.
    azure_storage_table_endpoint: str | None = None
    # A connection string wins over account name/key when both are present.
    azure_storage_connection_string: str | None = None
    # Create missing tables when the registry starts.
    table_auto_create: bool = True

    # Physical table names per logical table.
    table_course_attempts: str = "CourseAttempts"
    table_kc_attempts: str = "KnowledgeCheckAttempts"
    table_module_rules: str = "ModuleRules"
    table_providers: str = "Providers"
    table_provider_courses: str = "ProviderCourses"
    table_user_assignments: str = "UserAssignments"
    table_auth_lockouts: str = "AuthLockouts"

    # Bounded retries for transient store failures.
    store_retry_max_attempts: int = 3
    # Base backoff between attempts (ms), doubled per attempt.
    store_retry_backoff_ms: int = 1000
    # Upper bound of the random jitter added to each backoff (ms).
    store_retry_jitter_ms: int = 500
    # Per-attempt timeout for a single store call (ms).
    store_call_timeout_ms: int = 10000

    # Cap filter literals to keep query strings bounded.
    filter_value_max_length: int = 1000

    # Failed logins before an account is locked.
    lockout_max_failed_attempts: int = 5
    lockout_duration_minutes: int = 15

    # Re-read and re-merge attempts when a concurrent writer wins the ETag race.
    reconcile_max_conflicts: int = 3

    @field_validator("table_backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        backend = (value or "").strip().lower()
        if backend not in {"azure", "memory"}:
            raise ValueError(f"Unsupported table backend: {value}")
        return backend

    def table_name(self, key: str) -> str:
        # Resolve a logical table key to its configured physical name.
        if key not in TABLE_KEYS:
            raise KeyError(key)
        return getattr(self, f"table_{key}")

    @property
    def table_endpoint(self) -> str | None:
        if self.azure_storage_table_endpoint:
            return self.azure_storage_table_endpoint
        if self.azure_storage_account_name:
            return f"https://{self.azure_storage_account_name}.table.core.windows.net"
        return None


@lru_cache
def get_settings() -> Settings:
    return Settings()
