import json
import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from onchain_kyc.schemas.verification import StatisticsResponse
from onchain_kyc.utils.redis_pool import get_redis

log = logging.getLogger(__name__)

STATISTICS_KEY = "kyc:statistics"


class StatisticsCache:
    """
    Short-lived Redis copy of the derived statistics.

    The session table stays the source of truth; a miss or any Redis error
    simply means the caller rebuilds from a full scan.
    """

    def __init__(
        self,
        ttl: int,
        enabled: bool,
        redis_getter: Callable[[], Awaitable[redis.Redis]] = get_redis,
    ):
        self.ttl = ttl
        self.enabled = enabled
        self._get_redis = redis_getter

    async def get(self) -> Optional[StatisticsResponse]:
        if not self.enabled:
            return None
        try:
            r = await self._get_redis()
            cached = await r.get(STATISTICS_KEY)
        except Exception as e:
            log.error("Statistics cache read failed: %s", e, exc_info=True)
            return None
        if not cached:
            return None
        try:
            return StatisticsResponse.model_validate(json.loads(cached))
        except ValueError:
            log.warning("Discarding malformed statistics cache entry")
            return None

    async def set(self, stats: StatisticsResponse) -> None:
        if not self.enabled:
            return
        try:
            r = await self._get_redis()
            await r.setex(STATISTICS_KEY, self.ttl, json.dumps(stats.model_dump(by_alias=True)))
        except Exception as e:
            log.error("Statistics cache write failed: %s", e, exc_info=True)

    async def invalidate(self) -> None:
        if not self.enabled:
            return
        try:
            r = await self._get_redis()
            await r.delete(STATISTICS_KEY)
        except Exception as e:
            log.error("Statistics cache invalidation failed: %s", e, exc_info=True)
