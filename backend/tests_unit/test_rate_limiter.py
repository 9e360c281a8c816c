"""
Sync Rate Limiter Tests (Unit)
==============================

WHAT: Unit tests for the per-user sliding window on sync batches.
WHY: A limiter bug either blocks every device or protects nothing.

REFERENCES:
- backend/tripsync/rate_limiter.py
"""

from unittest.mock import MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from tripsync.rate_limiter import WINDOW_SIZE_SECONDS, SyncRateLimiter


def test_without_redis_every_batch_is_allowed() -> None:
    limiter = SyncRateLimiter(None, limit_per_minute=1)

    assert all(limiter.allow("u-1") for _ in range(10))


def test_batch_under_the_limit_is_recorded() -> None:
    redis = MagicMock()
    redis.zcard.return_value = 2

    assert SyncRateLimiter(redis, limit_per_minute=3).allow("u-1") is True

    redis.zremrangebyscore.assert_called_once()
    key = redis.zadd.call_args.args[0]
    assert key == "sync_rate:u-1"
    redis.expire.assert_called_once_with("sync_rate:u-1", WINDOW_SIZE_SECONDS * 2)


def test_full_window_rejects_without_recording() -> None:
    redis = MagicMock()
    redis.zcard.return_value = 3

    assert SyncRateLimiter(redis, limit_per_minute=3).allow("u-1") is False

    redis.zadd.assert_not_called()


def test_redis_outage_fails_open() -> None:
    redis = MagicMock()
    redis.zremrangebyscore.side_effect = RedisConnectionError("down")

    assert SyncRateLimiter(redis).allow("u-1") is True
