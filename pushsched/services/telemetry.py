from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import time


@dataclass(frozen=True, slots=True)
class DeliveryCallSample:
    recorded_at: float
    channel: str
    latency_ms: float
    success: bool


# Process-local only; the worker logs a summary on shutdown and nothing is exported.
_delivery_samples: deque[DeliveryCallSample] = deque(maxlen=5000)
_counters: Counter[str] = Counter()


def record_delivery_call(channel: str, *, latency_ms: float, success: bool) -> None:
    _delivery_samples.append(
        DeliveryCallSample(recorded_at=time.time(), channel=channel, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def get_counters() -> dict[str, int]:
    return dict(_counters)


def delivery_call_stats(channel: str, *, window_s: int = 300) -> dict[str, float | int | None]:
    """Summarize provider calls for ``channel`` over the last ``window_s`` seconds."""
    since = time.time() - window_s
    recent = [sample for sample in _delivery_samples if sample.channel == channel and sample.recorded_at >= since]
    if not recent:
        return {"count": 0, "error_rate": None, "avg_latency_ms": None}
    errors = sum(1 for sample in recent if not sample.success)
    return {
        "count": len(recent),
        "error_rate": round(errors / len(recent), 4),
        "avg_latency_ms": round(sum(sample.latency_ms for sample in recent) / len(recent), 1),
    }


def reset_counters() -> None:
    # Tests reset process-wide state between cases.
    _counters.clear()
    _delivery_samples.clear()
