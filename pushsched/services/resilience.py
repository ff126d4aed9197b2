from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Awaitable, Callable, TypeVar

from pushsched.core.config import get_settings
from pushsched.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Throttling and request timeouts are worth another try even though they are 4xx.
_RETRYABLE_STATUS = frozenset({408, 429})
# Never back off longer than a fraction of the dispatch interval would tolerate.
_MAX_BACKOFF_S = 10.0


def is_transient(exc: Exception) -> bool:
    # Connection drops, timeouts and provider 5xx are the only failures a retry can fix.
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status in _RETRYABLE_STATUS)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded in-call retry for one outbound delivery request.

    This only smooths over transient provider errors inside a single delivery
    attempt; a notification that still fails stays eligible for the next tick.
    """

    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        base = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        return min(base * random.uniform(0.5, 1.5), _MAX_BACKOFF_S)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=max(1, settings.ext_retry_max_attempts),
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    integration: str,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
) -> T:
    policy = policy or default_retry_policy()
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient and attempts remain
            if attempt >= attempts or not retryable(exc):
                raise
            delay = policy.delay_s(attempt)
            increment_counter(f"{integration}.retries_total")
            logger.info(
                "delivery_call_retry integration=%s attempt=%d/%d sleep_s=%.3f error=%s",
                integration,
                attempt,
                attempts,
                delay,
                type(exc).__name__,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
