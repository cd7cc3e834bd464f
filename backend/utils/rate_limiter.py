from fastapi import HTTPException, status
import os
import time
import threading
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Union

import redis

from utils.redis_client import get_redis

logger = logging.getLogger(__name__)

AUTH_WINDOW_MS = int(os.getenv("AUTH_WINDOW_MS", str(15 * 60 * 1000)))
AUTH_MAX_ATTEMPTS = int(os.getenv("AUTH_MAX_ATTEMPTS", "7"))
AUTH_BLOCK_MS = int(os.getenv("AUTH_BLOCK_MS", str(15 * 60 * 1000)))
AUTH_REDIS_PREFIX = os.getenv("AUTH_REDIS_PREFIX", "").strip() or "auth:rate-limit"

TOO_MANY_ATTEMPTS_DETAIL = "Too many attempts. Please wait a few minutes and try again."


@dataclass
class AttemptState:
    count: int
    first_attempt_at: float
    blocked_until: Optional[float] = None


class LocalAttemptStore:
    """In-process attempt counters. Only protects a single instance."""

    def __init__(self, window_ms: int, max_attempts: int, block_ms: int, clock: Callable[[], float] = time.time):
        self.window = window_ms / 1000
        self.max_attempts = max_attempts
        self.block = block_ms / 1000
        self.clock = clock
        self.attempts: Dict[str, AttemptState] = {}
        # Sync routes run in a threadpool and share one store
        self._lock = threading.RLock()

    def is_blocked(self, key: str) -> bool:
        with self._lock:
            self._cleanup()
            attempt = self.attempts.get(key)
            if not attempt:
                return False
            return bool(attempt.blocked_until and attempt.blocked_until > self.clock())

    def register_failure(self, key: str) -> None:
        with self._lock:
            now = self.clock()
            current = self.attempts.get(key)

            if current and current.blocked_until and current.blocked_until > now:
                # A block lasts its full duration no matter how many failures follow
                return

            if (
                not current
                or now - current.first_attempt_at > self.window
                or (current.blocked_until and current.blocked_until <= now)
            ):
                current = AttemptState(count=0, first_attempt_at=now)

            count = current.count + 1
            blocked_until = now + self.block if count >= self.max_attempts else None
            self.attempts[key] = AttemptState(
                count=count,
                first_attempt_at=current.first_attempt_at,
                blocked_until=blocked_until,
            )

    def clear(self, key: str) -> None:
        with self._lock:
            self.attempts.pop(key, None)

    def _cleanup(self) -> None:
        now = self.clock()
        expired = [
            key for key, attempt in list(self.attempts.items())
            if now - attempt.first_attempt_at > self.window
            and (not attempt.blocked_until or attempt.blocked_until <= now)
        ]
        for key in expired:
            self.attempts.pop(key, None)


class RedisAttemptStore:
    """Attempt counters shared by every instance through Redis.

    Each key uses a counter (INCR + EXPIRE for the window) and a separate
    blocked flag whose TTL is the block duration.
    """

    def __init__(self, client: redis.Redis, window_ms: int, max_attempts: int, block_ms: int, prefix: str = AUTH_REDIS_PREFIX):
        self.client = client
        self.window_seconds = max(1, -(-window_ms // 1000))
        self.max_attempts = max_attempts
        self.block_ms = block_ms
        self.prefix = prefix

    def counter_key(self, key: str) -> str:
        return f"{self.prefix}:counter:{key}"

    def blocked_key(self, key: str) -> str:
        return f"{self.prefix}:blocked:{key}"

    def is_blocked(self, key: str) -> bool:
        return self.client.exists(self.blocked_key(key)) > 0

    def register_failure(self, key: str) -> None:
        if self.client.exists(self.blocked_key(key)) > 0:
            return

        count = self.client.incr(self.counter_key(key))
        if count == 1:
            self.client.expire(self.counter_key(key), self.window_seconds)

        if count >= self.max_attempts:
            self.client.set(self.blocked_key(key), "1", px=self.block_ms)
            self.client.delete(self.counter_key(key))

    def clear(self, key: str) -> None:
        self.client.delete(self.counter_key(key), self.blocked_key(key))


class AuthRateLimiter:
    """Failure-based lockout for authentication endpoints.

    Callers pass one or more keys (e.g. source IP and account identifier);
    a block on any of them rejects the request. The distributed store is
    preferred; if it raises, the local store answers for that call.
    """

    def __init__(
        self,
        distributed: Optional[RedisAttemptStore] = None,
        local: Optional[LocalAttemptStore] = None,
        window_ms: int = AUTH_WINDOW_MS,
        max_attempts: int = AUTH_MAX_ATTEMPTS,
        block_ms: int = AUTH_BLOCK_MS,
    ):
        self.distributed = distributed
        self.local = local or LocalAttemptStore(window_ms, max_attempts, block_ms)

    def assert_allowed(self, keys: Union[str, Iterable[str]]) -> None:
        for key in self._normalize_keys(keys):
            if self._call("is_blocked", key):
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=TOO_MANY_ATTEMPTS_DETAIL
                )

    def register_failure(self, keys: Union[str, Iterable[str]]) -> None:
        for key in self._normalize_keys(keys):
            self._call("register_failure", key)

    def register_success(self, keys: Union[str, Iterable[str]]) -> None:
        for key in self._normalize_keys(keys):
            self._call("clear", key)

    def _call(self, operation: str, key: str):
        if self.distributed is not None:
            try:
                return getattr(self.distributed, operation)(key)
            except redis.RedisError as e:
                logger.warning(f"Rate limit store unavailable ({operation}), using local state: {e}")
        return getattr(self.local, operation)(key)

    @staticmethod
    def _normalize_keys(keys: Union[str, Iterable[str]]) -> List[str]:
        if isinstance(keys, str):
            keys = [keys]
        normalized = []
        for key in keys:
            key = key.strip()
            if key and key not in normalized:
                normalized.append(key)
        return normalized


def build_auth_rate_limiter() -> AuthRateLimiter:
    client = get_redis()
    distributed = None
    if client is not None:
        distributed = RedisAttemptStore(client, AUTH_WINDOW_MS, AUTH_MAX_ATTEMPTS, AUTH_BLOCK_MS)
    return AuthRateLimiter(distributed=distributed)


_auth_rate_limiter: Optional[AuthRateLimiter] = None


def get_auth_rate_limiter() -> AuthRateLimiter:
    """FastAPI dependency returning the process-wide limiter."""
    global _auth_rate_limiter
    if _auth_rate_limiter is None:
        _auth_rate_limiter = build_auth_rate_limiter()
    return _auth_rate_limiter
