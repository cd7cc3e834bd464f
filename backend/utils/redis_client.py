"""Shared Redis connection for rate limiting, caching and job locks.

Redis is optional. When REDIS_URL is not set every caller falls back to
in-process state, which is correct for a single instance only.
"""

import os
import logging
from typing import Optional

import redis

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "").strip()
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "1.0"))

_client: Optional[redis.Redis] = None
_initialized = False


def get_redis() -> Optional[redis.Redis]:
    """Return the shared client, or None when Redis is not configured."""
    global _client, _initialized
    if _initialized:
        return _client
    _initialized = True

    if not REDIS_URL:
        logger.info("REDIS_URL not set; using in-process rate limiting and caching")
        return None

    _client = redis.Redis.from_url(
        REDIS_URL,
        decode_responses=True,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=REDIS_SOCKET_TIMEOUT,
    )
    logger.info("Redis client configured")
    return _client


def reset_redis(client: Optional[redis.Redis] = None) -> None:
    """Replace the shared client (used by tests and on shutdown)."""
    global _client, _initialized
    if _client is not None and client is None:
        try:
            _client.close()
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis client: {e}")
    _client = client
    _initialized = client is not None
