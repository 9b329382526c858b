"""
Redis client for the deployment event stream.

The event publisher only needs an async publish(channel, message) primitive;
this module owns the shared redis.asyncio client that provides it.
"""

import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import get_settings

logger = logging.getLogger(__name__)

_client: Optional[Redis] = None


def get_redis_client(redis_url: Optional[str] = None) -> Redis:
    """
    Get or create the shared Redis client.

    Connections are opened lazily on first command, so this never blocks.
    """
    global _client
    if _client is None:
        url = redis_url or get_settings().redis_url
        _client = Redis.from_url(url, decode_responses=True)
        logger.info("Redis client created for deployment events")
    return _client


async def check_redis_health() -> bool:
    """Ping the broker. Returns False instead of raising."""
    try:
        return bool(await get_redis_client().ping())
    except (RedisError, OSError) as e:
        logger.error(f"Redis health check failed: {e}")
        return False


async def close_redis_client() -> None:
    """Close the shared client on shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("Redis client closed")
