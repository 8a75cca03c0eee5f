"""
Redis-backed cache for routing lookups.

A cycling route between two addresses does not change between matching
runs, so the provider is asked once per leg per TTL. Redis is optional:
when it is down every helper here reports a miss and the caller goes to
the provider (or the straight-line estimate) instead.
"""
import json
import logging
import time
from typing import Any, Optional

import redis
from redis.exceptions import RedisError

from core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None
_next_connect_attempt: float = 0.0
RECONNECT_COOLDOWN_S = 30


def get_redis_client() -> Optional[redis.Redis]:
    """Shared client, or None while Redis is unreachable."""
    global _client, _next_connect_attempt

    if _client is not None:
        return _client
    if time.monotonic() < _next_connect_attempt:
        return None

    candidate = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )
    try:
        candidate.ping()
    except RedisError as e:
        logger.warning(f"Redis unreachable ({e}); routing cache off for {RECONNECT_COOLDOWN_S}s")
        _next_connect_attempt = time.monotonic() + RECONNECT_COOLDOWN_S
        return None

    _client = candidate
    logger.info("Routing cache connected")
    return _client


def cache_key(prefix: str, *parts: Any) -> str:
    """Colon-joined key; None parts are dropped."""
    return ":".join([prefix, *(str(p) for p in parts if p is not None)])


def get_cache(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None
    try:
        raw = client.get(key)
    except RedisError as e:
        logger.warning(f"Routing cache read failed for {key}: {e}")
        return None
    return json.loads(raw) if raw else None


def set_cache(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    client = get_redis_client()
    if client is None:
        return False
    try:
        client.setex(key, ttl or settings.DISTANCE_CACHE_TTL, json.dumps(value))
    except RedisError as e:
        logger.warning(f"Routing cache write failed for {key}: {e}")
        return False
    return True
