from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from lrsstore.core.config import get_settings
from lrsstore.core.errors import PermanentStoreError, TransientStoreError
from lrsstore.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TransientStoreError, TimeoutError, OSError)
RETRYABLE_STATUS = {408, 429}


def default_retryable(exc: Exception) -> bool:
    # Retry throttling, timeouts and transient server/network failures only.
    if isinstance(exc, PermanentStoreError):
        return False
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status in RETRYABLE_STATUS or status >= 500):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize store retry behavior so every repository backs off the same way.
    max_attempts: int
    backoff_ms: int
    jitter_ms: int
    timeout_ms: int

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff with additive jitter for the given (1-based) failed attempt.
        jitter = random.uniform(0, self.jitter_ms) if self.jitter_ms > 0 else 0.0
        return (self.backoff_ms * (2 ** (attempt - 1)) + jitter) / 1000.0


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.store_retry_max_attempts,
        backoff_ms=settings.store_retry_backoff_ms,
        jitter_ms=settings.store_retry_jitter_ms,
        timeout_ms=settings.store_call_timeout_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> Any:
    # Retry helper with jittered backoff; the final error is re-raised unchanged.
    policy = policy or default_retry_policy()
    retryable = retryable or default_retryable
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            if policy.timeout_ms > 0:
                return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - non-retryable errors propagate as-is
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect throttling storms.
            increment_counter("store_retries_total")
            delay = policy.delay_s(attempt)
            logger.debug("store_retry attempt=%s delay_s=%.3f error=%s", attempt, delay, type(exc).__name__)
            await sleep(delay)
            attempt += 1
