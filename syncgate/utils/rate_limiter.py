"""
Sliding-window request limiter for webhook intake, backed by a Redis sorted set.

Each request adds a member scored by its arrival time; members older than the
window are trimmed before counting. When Redis is unreachable the limiter
fails open so deliveries keep flowing.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
KEY_PREFIX = "syncgate:ratelimit:"


async def _retry_after(redis, redis_key: str, window: int, now: float) -> int:
    oldest = await redis.zrange(redis_key, 0, 0, withscores=True)
    if not oldest:
        return window
    # the slot frees up once the oldest member ages out of the window
    return max(int(oldest[0][1] + window - now), 1)


async def check_rate_limit(
    key: str,
    limit: int,
    window: int = WINDOW_SECONDS,
) -> tuple[bool, Optional[int]]:
    """
    Record one request against `key` and report whether it is within `limit`.

    Returns (allowed, retry_after_seconds); retry_after is None when allowed.
    """
    redis_key = f"{KEY_PREFIX}{key}"
    now = time.time()
    try:
        from syncgate.utils.redis_client import get_redis
        redis = await get_redis()

        pipe = redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window)
        pipe.zadd(redis_key, {str(now): now})
        pipe.zcard(redis_key)
        pipe.expire(redis_key, window + 1)
        _, _, in_window, _ = await pipe.execute()

        if in_window <= limit:
            return True, None

        retry_after = await _retry_after(redis, redis_key, window, now)
    except Exception as e:
        logger.warning("Rate limiter unavailable, allowing request (key=%s): %s", key, str(e))
        return True, None

    logger.warning("Rate limit exceeded: key=%s count=%d limit=%d", key, in_window, limit)
    return False, retry_after


async def check_webhook_rate_limit(source: str, client_ip: str) -> tuple[bool, Optional[int]]:
    """Per-source, per-client-IP limit for webhook intake."""
    from syncgate.config import get_settings
    limit = get_settings().webhook_rate_limit_per_minute
    return await check_rate_limit(f"webhook:{source}:{client_ip}", limit)
