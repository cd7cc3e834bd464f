"""JSON read-through cache for per-home expense data.

Values live in Redis when it is configured and in a small in-process TTL
store otherwise. The cache is an optimization only: every read or write
failure is logged and treated as a miss.
"""

import os
import json
import time
import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Dict, Optional

import redis

from utils.redis_client import get_redis

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "120"))
CACHE_PREFIX = "cache:expenses"


@dataclass
class _Entry:
    value: str
    expires_at: float


class JsonCache:
    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: int = CACHE_TTL_SECONDS, max_items: int = 2048):
        self.client = client
        self.ttl_seconds = max(1, int(ttl_seconds))
        self._max = max(64, int(max_items))
        self._data: Dict[str, _Entry] = {}
        self._lock = RLock()

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._read(key)
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None

        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable cache entry {key}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else max(1, int(ttl_seconds))
        payload = json.dumps(value, default=str)
        try:
            if self.client is not None:
                self.client.set(key, payload, ex=ttl)
                return
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return

        with self._lock:
            if len(self._data) >= self._max:
                self._prune_locked()
                if len(self._data) >= self._max:
                    self._data.pop(next(iter(self._data)), None)
            self._data[key] = _Entry(value=payload, expires_at=time.time() + ttl)

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        if self.client is not None:
            try:
                self.client.delete(*keys)
            except redis.RedisError as e:
                logger.warning(f"Cache invalidation failed for {', '.join(keys)}: {e}")
            return

        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def _read(self, key: str) -> Optional[str]:
        if self.client is not None:
            return self.client.get(key)

        with self._lock:
            entry = self._data.get(key)
            if not entry:
                return None
            if entry.expires_at <= time.time():
                self._data.pop(key, None)
                return None
            return entry.value

    def _prune_locked(self) -> None:
        now = time.time()
        for key in [k for k, entry in self._data.items() if entry.expires_at <= now]:
            self._data.pop(key, None)


_cache: Optional[JsonCache] = None


def get_cache() -> JsonCache:
    global _cache
    if _cache is None:
        _cache = JsonCache(client=get_redis())
    return _cache


def reset_cache(cache: Optional[JsonCache] = None) -> None:
    """Replace the shared cache (used by tests)."""
    global _cache
    _cache = cache


def balances_key(home_id: int) -> str:
    return f"{CACHE_PREFIX}:balances:{home_id}"


def categories_key(home_id: int) -> str:
    return f"{CACHE_PREFIX}:categories:{home_id}"


def invalidate_expense_cache(home_id: int) -> None:
    """Drop cached balances and categories for a home. Call after the write commits."""
    get_cache().delete(balances_key(home_id), categories_key(home_id))
