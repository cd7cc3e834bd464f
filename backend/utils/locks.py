"""Token-guarded distributed lock on Redis.

acquire() is SET key token NX PX ttl. release() only deletes the key while
it still holds this holder's token, so a run whose TTL already expired
cannot release a lock someone else acquired afterwards.
"""

import logging
from typing import Optional

import redis

logger = logging.getLogger(__name__)


class DistributedLock:
    def __init__(self, client: Optional[redis.Redis], key: str, ttl_ms: int):
        self.client = client
        self.key = key
        self.ttl_ms = ttl_ms

    def acquire(self, token: str) -> bool:
        """
        Try to take the lock for this token.

        Returns False only when another holder has it. When no store is
        configured, or the store cannot be reached, returns True so the
        caller proceeds.
        """
        if self.client is None:
            return True
        try:
            return bool(self.client.set(self.key, token, nx=True, px=self.ttl_ms))
        except redis.RedisError as e:
            logger.warning(f"Lock store unavailable for {self.key}, proceeding without lock: {e}")
            return True

    def release(self, token: str) -> bool:
        """Delete the key if it still holds this token. Errors are logged, never raised."""
        if self.client is None:
            return False
        try:
            if self.client.get(self.key) != token:
                return False
            return bool(self.client.delete(self.key))
        except redis.RedisError as e:
            logger.warning(f"Failed to release lock {self.key}: {e}")
            return False
