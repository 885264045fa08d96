"""Redis connection management.

Redis is optional for the engine: locks fall back to process-local locks
and events to the log when no connection is available.
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from roster.logging_config import get_logger, mask_url

logger = get_logger(__name__)

_redis: aioredis.Redis | None = None


async def init_redis(url: str, required: bool = False) -> aioredis.Redis | None:
    """Connect to Redis and verify it answers a PING.

    When ``required`` is False an unreachable server is logged and the
    engine keeps running on its in-process fallbacks.
    """
    global _redis
    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        await client.aclose()
        if required:
            raise
        logger.warning("redis_unavailable", url=mask_url(url), error=str(e))
        return None
    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the Redis connection."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
