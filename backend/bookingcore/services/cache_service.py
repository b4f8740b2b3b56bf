"""
Redis caching for restaurant notification preferences.

CACHING STRATEGY
================

What we cache:
  - The resolved NotificationPreference of a restaurant, JSON-serialized
  - Cache key pattern: "prefs:{restaurant_id}"

Why:
  - The delivery worker checks preferences for every outbox entry it drains,
    and a broadcast can put thousands of entries for one restaurant in a
    single batch
  - Preferences change rarely (a manager edits a settings screen)

Invalidation strategy:
  - On preference update: delete the restaurant's key
  - TTL-based expiry as safety net (PREFERENCE_CACHE_TTL)

Failure policy:
  Redis is advisory. Every error is logged and treated as a miss so the
  worker falls back to the database; a Redis outage slows delivery but never
  stops it.
"""

import json
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from bookingcore.core.config import Settings
from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import record_cache_operation

logger = get_logger(__name__)


async def create_redis(settings: Settings) -> Optional[redis.Redis]:
    """Open a Redis connection. Returns None if Redis is disabled or unreachable."""
    if not settings.REDIS_ENABLED:
        return None

    client = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )
    try:
        # Test connection
        await client.ping()
    except (RedisError, OSError) as e:
        logger.error("redis_connection_failed", error=str(e))
        await client.aclose()
        return None

    logger.info("redis_connected", url=settings.REDIS_URL)
    return client


def _make_preference_key(restaurant_id: str) -> str:
    return f"prefs:{restaurant_id}"


class PreferenceCache:
    """Holds its own client; a cache built with client=None is a no-op."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl: int = 300):
        self.client = client
        self.ttl = ttl

    async def get(self, restaurant_id: str) -> Optional[dict]:
        if not self.client:
            return None

        key = _make_preference_key(restaurant_id)
        try:
            data = await self.client.get(key)
        except RedisError as e:
            logger.error("cache_get_error", key=key, error=str(e))
            return None

        record_cache_operation("get", hit=data is not None)
        if data:
            logger.debug("cache_hit", key=key)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
        return None

    async def set(self, restaurant_id: str, data: dict) -> None:
        if not self.client:
            return

        key = _make_preference_key(restaurant_id)
        try:
            await self.client.setex(key, self.ttl, json.dumps(data))
            logger.debug("cache_set", key=key, ttl=self.ttl)
        except RedisError as e:
            logger.error("cache_set_error", key=key, error=str(e))

    async def invalidate(self, restaurant_id: str) -> None:
        if not self.client:
            return

        key = _make_preference_key(restaurant_id)
        try:
            await self.client.delete(key)
            logger.info("cache_invalidated", key=key)
        except RedisError as e:
            logger.error("cache_invalidation_error", key=key, error=str(e))

    async def stats(self) -> dict:
        """Redis cache statistics for the health endpoint."""
        if not self.client:
            return {"status": "disabled"}

        try:
            info = await self.client.info("stats")
        except RedisError as e:
            return {"status": "error", "error": str(e)}

        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None
