"""
Redis cache layer — lazy Redis client with JSON helpers.

Used to keep raw forecast payloads for a short TTL so that a re-triggered
run (or two regions sharing a rounded coordinate) does not hit the
provider again. Every failure degrades to "cache miss"; the cache is
never required for correctness.

Usage:
    from backend.app.core.cache import cache_get, cache_set

    cache_set("forecast:27.72:85.32", data, ttl=1800)
    cached = cache_get("forecast:27.72:85.32")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client, initialised on first use
_redis_client: Optional[redis.Redis] = None


def _get_redis() -> Optional[redis.Redis]:
    """Get or create the Redis client. None when Redis is not configured."""
    global _redis_client
    if not settings.REDIS_URL:
        return None
    if _redis_client is None:
        try:
            _redis_client = redis.Redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        except (redis.RedisError, ValueError) as e:
            logger.warning("Redis unavailable: %s — caching disabled", e)
            return None
    return _redis_client


def cache_get(key: str) -> Optional[Any]:
    """Get a cached value by key. Returns None on miss or error."""
    client = _get_redis()
    if client is None:
        return None
    try:
        raw = client.get(key)
        if raw is not None:
            return json.loads(raw)
    except (redis.RedisError, ValueError) as e:
        logger.warning("Cache GET error for %s: %s", key, e)
    return None


def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """Set a cached value with optional TTL (seconds)."""
    client = _get_redis()
    if client is None:
        return False
    try:
        client.set(key, json.dumps(value, default=str), ex=ttl or settings.REDIS_FORECAST_TTL)
        return True
    except redis.RedisError as e:
        logger.warning("Cache SET error for %s: %s", key, e)
        return False


def ping() -> bool:
    """True if Redis answers a PING."""
    client = _get_redis()
    if client is None:
        return False
    try:
        return bool(client.ping())
    except redis.RedisError:
        return False


def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")
