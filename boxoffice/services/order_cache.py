"""
Redis cache for customer order views (order detail + the owner's order list).

Optional: only active when REDIS_URL is configured.  Reads and writes are
best-effort – a cache outage degrades to uncached reads, never to a failed
request.  Anything that changes an order's status must call
``invalidate_order_views`` after committing.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from boxoffice.config import get_settings

logger = logging.getLogger(__name__)

_KEY_PREFIX = "boxoffice:"

_redis_client = None


def _get_redis():
    """Lazily build the asyncio Redis client; None when caching is disabled."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        if not settings.redis_url:
            return None
        import redis.asyncio as redis

        _redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def order_key(order_id: str) -> str:
    return f"{_KEY_PREFIX}order:{order_id}"


def orders_key(user_email: str) -> str:
    return f"{_KEY_PREFIX}orders:{user_email.lower()}"


async def get(key: str) -> Optional[Any]:
    r = _get_redis()
    if r is None:
        return None
    try:
        raw = await r.get(key)
    except Exception as exc:
        logger.warning("Cache get failed key=%s: %s", key, exc)
        return None
    return json.loads(raw) if raw is not None else None


async def set(key: str, value: Any, ttl: Optional[int] = None) -> None:
    r = _get_redis()
    if r is None:
        return
    if ttl is None:
        ttl = get_settings().order_cache_ttl_seconds
    try:
        await r.set(key, json.dumps(value, default=str), ex=ttl)
    except Exception as exc:
        logger.warning("Cache set failed key=%s: %s", key, exc)


async def delete(*keys: str) -> None:
    r = _get_redis()
    if r is None or not keys:
        return
    try:
        await r.delete(*keys)
    except Exception as exc:
        logger.error("Cache invalidation failed keys=%s: %s", keys, exc)


async def invalidate_order_views(order_id: str, user_email: Optional[str] = None) -> None:
    keys = [order_key(order_id)]
    if user_email:
        keys.append(orders_key(user_email))
    await delete(*keys)
