from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from redis.asyncio import Redis

from pushsched.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

DISPATCHER_HEARTBEAT_KEY = "pushsched:dispatcher:heartbeat_ts"
# Health checks never treat a heartbeat younger than this as stale.
_MIN_STALE_AFTER_S = 60


class HeartbeatStore:
    """Last-tick timestamp of the dispatcher, kept in Redis.

    The dispatcher publishes after every completed tick; health checks read
    it back to spot a stalled loop without querying the notification store.
    """

    def __init__(self, redis: Any, *, stale_after_s: int, key: str = DISPATCHER_HEARTBEAT_KEY) -> None:
        self._redis = redis
        self._key = key
        self._stale_after_s = max(_MIN_STALE_AFTER_S, int(stale_after_s))

    @property
    def stale_after_s(self) -> int:
        return self._stale_after_s

    async def publish(self, *, timestamp: datetime | None = None) -> None:
        beat = timestamp or datetime.now(timezone.utc)
        # Expire long after staleness so a dead dispatcher still shows its last tick for a while.
        await self._redis.set(self._key, beat.isoformat(), ex=self._stale_after_s * 10)

    async def read(self) -> datetime | None:
        raw = await self._redis.get(self._key)
        if not raw:
            return None
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        try:
            return datetime.fromisoformat(str(raw))
        except ValueError:
            logger.warning("dispatcher_heartbeat_unreadable key=%s", self._key)
            return None

    async def is_stale(self, *, now: datetime | None = None) -> bool:
        beat = await self.read()
        if beat is None:
            return True
        age_s = ((now or datetime.now(timezone.utc)) - beat).total_seconds()
        return age_s > self._stale_after_s

    async def aclose(self) -> None:
        close = getattr(self._redis, "aclose", None)
        if close is not None:
            await close()


def build_heartbeat_store(settings: Settings | None = None) -> HeartbeatStore | None:
    # No REDIS_URL means heartbeats are simply not published.
    settings = settings or get_settings()
    if not settings.redis_url:
        return None
    redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    return HeartbeatStore(redis, stale_after_s=settings.dispatch_heartbeat_stale_after_s)
