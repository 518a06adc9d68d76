from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import math
import time
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture analytics sink latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for limit decisions and credit outcomes.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_stats(integration: str, window_s: int = 300) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    samples = [
        sample
        for sample in _external_samples
        if sample.integration == integration and sample.ts >= cutoff
    ]
    if not samples:
        return {"count": 0, "error_rate": None, "p95_ms": None}
    latencies = sorted(sample.latency_ms for sample in samples)
    failures = sum(1 for sample in samples if not sample.success)
    index = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return {
        "count": len(samples),
        "error_rate": failures / len(samples),
        "p95_ms": latencies[index],
    }


def reset_telemetry() -> None:
    # Clear in-process state between tests.
    _external_samples.clear()
    _counters.clear()
