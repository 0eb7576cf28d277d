"""
Caching and coordination helpers.

- TTLCache: small in-process cache with an injectable clock, used for the
  DB-backed runtime settings. Tests pass a fake clock to expire entries
  deterministically.
- Redis: only used for the delivery tick lock. Degrades gracefully if Redis
  is unavailable.
"""
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from core.config import settings

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """
    In-memory key/value cache with per-entry expiry.

    `clock` returns monotonic seconds; defaults to time.monotonic.
    """

    def __init__(self, ttl_seconds: float, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return default
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (self._clock() + ttl, value)

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """Return the cached value, calling `loader` on a miss. None results are cached too."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self.set(key, value)
        return value

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate(self, prefix: Optional[str] = None) -> int:
        """Drop all entries (or those whose key starts with `prefix`). Returns count dropped."""
        if prefix is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        # Test connection
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Tick lock disabled.")
        _redis_client = None
        return None


def acquire_lock(name: str, ttl_seconds: int) -> bool:
    """
    Try to take a short-lived named lock (SET NX EX).

    Returns True when the lock was acquired or Redis is unavailable (fail open:
    a missed tick is worse than an overlapping one, and every mutation is
    DB-atomic anyway).
    """
    client = get_redis_client()
    if not client:
        return True
    try:
        return bool(client.set(f"lock:{name}", "1", nx=True, ex=ttl_seconds))
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Lock acquire error for {name}: {e}")
        return True


def release_lock(name: str) -> None:
    client = get_redis_client()
    if not client:
        return
    try:
        client.delete(f"lock:{name}")
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Lock release error for {name}: {e}")
