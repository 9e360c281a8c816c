"""
Sync Rate Limiter
=================

Per-user sliding window limit on trip sync batches.

WHY THIS FILE EXISTS
--------------------
A misbehaving client retrying in a tight loop re-verifies and re-hashes every
trip in every batch. Retries are safe (idempotency keys), so the limiter only
protects server capacity: a limited batch is rejected whole with
RATE_LIMITED and the client retries the same batch later.

HOW
---
Redis sorted set per user, scores are call timestamps:
- Key format: "sync_rate:{user_id}"
- Entries older than the window are trimmed on each check
- Without a Redis client (development, tests) limiting is disabled

RELATED FILES
-------------
- tripsync/routers/trips.py: checks before POST /api/trips/bulk
- tripsync/errors.py: RateLimited
"""

import logging
import time
import uuid
from functools import lru_cache
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

WINDOW_SIZE_SECONDS = 60


class SyncRateLimiter:
    def __init__(self, redis_client: Optional[Redis], limit_per_minute: int = 30):
        self.redis = redis_client
        self.limit = limit_per_minute

    @staticmethod
    def _key(user_id: str) -> str:
        return f"sync_rate:{user_id}"

    def allow(self, user_id: str) -> bool:
        """Record one batch for `user_id`; False when the window is already full."""
        if not self.redis:
            return True

        key = self._key(user_id)
        now = time.time()
        try:
            self.redis.zremrangebyscore(key, "-inf", now - WINDOW_SIZE_SECONDS)
            current = self.redis.zcard(key)
            if current >= self.limit:
                logger.warning(
                    "[RATE_LIMITER] %s hit the sync limit (%d/%d batches/min)",
                    user_id, current, self.limit,
                )
                return False
            self.redis.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            self.redis.expire(key, WINDOW_SIZE_SECONDS * 2)
        except RedisError as exc:
            # Limiter outage must not block syncing.
            logger.warning("[RATE_LIMITER] Redis unavailable, allowing batch for %s: %s", user_id, exc)
            return True
        return True


@lru_cache()
def get_rate_limiter() -> SyncRateLimiter:
    from tripsync.deps import get_settings

    settings = get_settings()
    client = Redis.from_url(settings.REDIS_URL) if settings.RATE_LIMIT_ENABLED else None
    if client is None:
        logger.info("[RATE_LIMITER] Sync rate limiting disabled")
    return SyncRateLimiter(client, settings.SYNC_BATCHES_PER_MINUTE)
