from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from lrsstore.core.config import get_settings
from lrsstore.persistence.registry import TableRegistry
from lrsstore.services.resilience import RetryPolicy
from lrsstore.services.telemetry import reset_telemetry


class FixedClock:
    # Deterministic clock for timestamps and lockout windows.
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current = self.current + timedelta(**delta)


@pytest.fixture(autouse=True)
def memory_backend(monkeypatch) -> None:
    # Tests never reach Azure; settings are rebuilt from the patched environment.
    monkeypatch.setenv("TABLE_BACKEND", "memory")
    monkeypatch.delenv("AZURE_STORAGE_CONNECTION_STRING", raising=False)
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def registry() -> TableRegistry:
    return TableRegistry.in_memory()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_ms=0, jitter_ms=0, timeout_ms=1000)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))
