"""
Shared async Redis pool for the statistics cache.

Redis is optional: with REDIS_URL unset nothing connects and the cache
reports itself disabled.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from onchain_kyc.core.config import settings

log = logging.getLogger(__name__)

_redis_pool: Optional[redis.ConnectionPool] = None

POOL_MAX_CONNECTIONS = 10
# Short timeouts: a slow Redis must not hold up a statistics query.
SOCKET_TIMEOUT = 1.0


def redis_enabled() -> bool:
    return bool(settings.REDIS_URL)


async def get_redis() -> redis.Redis:
    global _redis_pool
    if not settings.REDIS_URL:
        raise RuntimeError("REDIS_URL is not configured")
    if _redis_pool is None:
        _redis_pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=POOL_MAX_CONNECTIONS,
            socket_timeout=SOCKET_TIMEOUT,
            socket_connect_timeout=SOCKET_TIMEOUT,
            decode_responses=True,
        )
        log.info(f"Statistics cache pool initialized (max_connections={POOL_MAX_CONNECTIONS})")
    return redis.Redis(connection_pool=_redis_pool)


async def close_redis():
    """Called from the FastAPI lifespan and the maintenance script on shutdown."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        log.info("Statistics cache pool closed")
