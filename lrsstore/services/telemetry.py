from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class StoreCallSample:
    ts: float
    table: str
    operation: str
    latency_ms: float
    success: bool


_store_samples: Deque[StoreCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_store_call(*, table: str, operation: str, latency_ms: float, success: bool) -> None:
    # Capture table call latency and outcomes.
    _store_samples.append(
        StoreCallSample(
            ts=time.time(),
            table=table,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for retry storms and degraded reads.
    _counters[name] += value


def store_latency_by_table(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p95/max latency and failure counts per table in the window.
    cutoff = time.time() - window_s
    latencies: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    for sample in _store_samples:
        if sample.ts < cutoff:
            continue
        latencies[sample.table].append(sample.latency_ms)
        if not sample.success:
            failures[sample.table] += 1
    result: dict[str, dict[str, float | None]] = {}
    for table, values in latencies.items():
        values.sort()
        p95_idx = max(0, math.ceil(0.95 * len(values)) - 1)
        result[table] = {
            "p95": values[p95_idx],
            "max": values[-1],
            "failures": float(failures[table]),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _counters.clear()
    _store_samples.clear()
