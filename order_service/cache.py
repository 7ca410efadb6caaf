import json
import logging

import redis.asyncio as redis

from . import config

logger = logging.getLogger(__name__)

redis_pool = None


def get_redis_client() -> redis.Redis:
    global redis_pool
    if redis_pool is None:
        logger.info(f"Creating Redis connection pool for {config.REDIS_HOST}:{config.REDIS_PORT}")
        redis_pool = redis.ConnectionPool(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            decode_responses=True # Decode responses to strings
        )
    return redis.Redis(connection_pool=redis_pool)


class TrackingCache:
    """
    Short-lived cache of public tracking views.

    Never a source of truth: every failure is logged and treated as a miss, and
    entries are invalidated after each committed order change.
    """

    def __init__(self, client, ttl_seconds: int = config.TRACKING_CACHE_TTL_SECONDS):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(order_id: str) -> str:
        return f"order_tracking:{order_id}"

    async def get(self, order_id: str) -> dict | None:
        try:
            value = await self.client.get(self.key(order_id))
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.error(f"Failed to get tracking for order {order_id} from Redis: {e}")
            return None

    async def set(self, order_id: str, view: dict) -> None:
        try:
            await self.client.setex(self.key(order_id), self.ttl_seconds, json.dumps(view))
            logger.debug(f"Cached tracking for order {order_id} for {self.ttl_seconds}s")
        except Exception as e:
            logger.error(f"Failed to cache tracking for order {order_id} in Redis: {e}")

    async def invalidate(self, order_id: str) -> None:
        try:
            await self.client.delete(self.key(order_id))
        except Exception as e:
            logger.error(f"Failed to invalidate tracking for order {order_id} in Redis: {e}")


def create_tracking_cache() -> TrackingCache | None:
    if not config.TRACKING_CACHE_ENABLED:
        logger.info("Tracking cache disabled")
        return None
    return TrackingCache(get_redis_client())


async def close_redis_pool() -> None:
    global redis_pool
    if redis_pool is not None:
        await redis_pool.disconnect()
        redis_pool = None
