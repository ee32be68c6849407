"""
Redis caching service for studio schedule listings.

CACHING STRATEGY
================

What we cache:
  - Schedule listing responses for a studio and date range (JSON-serialized)
  - Cache key pattern: "schedule:{studio_id}:from={date_from}&to={date_to}"

Invalidation strategy:
  - On any reservation, cancellation, capacity or status change: delete every
    schedule key of that studio (booked counts changed)
  - TTL-based expiry as safety net (SCHEDULE_CACHE_TTL)

  Keys are prefixed per studio so one studio's traffic never evicts another's.

What we never cache:
  - Availability and seat math. Those read the class row directly; a stale
    "seats left" figure is how overselling starts.
"""

import json
from datetime import date
from typing import Optional

import redis.asyncio as redis
from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import record_cache_operation

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except redis.RedisError as e:
            logger.error("redis_connection_failed", error=str(e))
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def _studio_prefix(studio_id: int) -> str:
    return f"schedule:{studio_id}:"


def _make_schedule_key(studio_id: int, date_from: Optional[date], date_to: Optional[date]) -> str:
    return f"{_studio_prefix(studio_id)}from={date_from}&to={date_to}"


async def get_cached_schedule(
    studio_id: int,
    date_from: Optional[date],
    date_to: Optional[date],
) -> Optional[dict]:
    """Retrieve cached schedule response."""
    client = await get_redis()
    if not client:
        return None

    key = _make_schedule_key(studio_id, date_from, date_to)
    try:
        data = await client.get(key)
        record_cache_operation("get", hit=data is not None)
        if data:
            logger.debug("cache_hit", key=key)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
    except redis.RedisError as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_schedule(
    studio_id: int,
    date_from: Optional[date],
    date_to: Optional[date],
    data: dict,
) -> None:
    """Cache schedule response with TTL."""
    client = await get_redis()
    if not client:
        return

    key = _make_schedule_key(studio_id, date_from, date_to)
    try:
        await client.setex(key, settings.SCHEDULE_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.SCHEDULE_CACHE_TTL)
    except redis.RedisError as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_schedule_cache(studio_id: int) -> None:
    """Drop every cached schedule page of one studio."""
    client = await get_redis()
    if not client:
        return

    try:
        keys = [key async for key in client.scan_iter(match=f"{_studio_prefix(studio_id)}*", count=100)]
        if keys:
            await client.unlink(*keys)
        record_cache_operation("invalidate")
        logger.info("cache_invalidated", studio_id=studio_id, keys_deleted=len(keys))
    except redis.RedisError as e:
        logger.error("cache_invalidation_error", studio_id=studio_id, error=str(e))


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}
