"""Unified caching interface with Redis / in-memory swap.

Provides a simple get/set/delete/clear API. When REDIS_URL is configured
and reachable, uses Redis; otherwise an in-memory TTL cache. The backend is
stored on the app (``app.extensions["cache"]``) rather than in a module
global, and the in-memory cache takes its clock as a constructor argument
so expiry is deterministic under test.

Usage:
    from cache_backend import init_cache
    cache = init_cache(app)  # called once in create_app()
    cache.set("key", value, ttl=60)
    value = cache.get("key")
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

EXTENSION_KEY = "cache"


# ── Protocol ───────────────────────────────────────────────

class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 60) -> None: ...
    def delete(self, key: str) -> None: ...
    def clear(self) -> None: ...
    def cleanup(self) -> int: ...


# ── In-Memory Implementation ──────────────────────────────

class InMemoryCache:
    """Dict with expiry timestamps; evicts the soonest-expiring entry when full."""

    MAX_ENTRIES = 1000

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, tuple[str, float]] = {}  # key -> (json, expires_at)
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if self._clock() >= expires_at:
                del self._store[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = 60) -> None:
        raw = json.dumps(value, default=str)
        with self._lock:
            if key not in self._store and len(self._store) >= self.MAX_ENTRIES:
                self._evict_oldest()
            self._store[key] = (raw, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def cleanup(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._store.items() if now >= exp]
            for k in expired:
                del self._store[k]
            return len(expired)

    def _evict_oldest(self) -> None:
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k][1])
        del self._store[oldest_key]


# ── Redis Implementation ──────────────────────────────────

class RedisCache:
    """Wraps redis.Redis; errors degrade to cache misses."""

    def __init__(self, redis_client, prefix: str = "progress:") -> None:
        self._redis = redis_client
        self._prefix = prefix

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(self._prefix + key)
        except Exception as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = 60) -> None:
        try:
            self._redis.setex(self._prefix + key, ttl, json.dumps(value, default=str))
        except Exception as e:
            logger.warning("Redis SET error (key=%s): %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(self._prefix + key)
        except Exception as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)

    def clear(self) -> None:
        try:
            keys = list(self._redis.scan_iter(match=self._prefix + "*"))
            if keys:
                self._redis.delete(*keys)
        except Exception as e:
            logger.warning("Redis CLEAR error: %s", e)

    def cleanup(self) -> int:
        # Redis handles expiry natively
        return 0


# ── App wiring ────────────────────────────────────────────

def init_cache(app, clock: Callable[[], float] | None = None) -> CacheBackend:
    """Initialize the cache backend for ``app``. Call once from create_app()."""
    cache: CacheBackend | None = None

    redis_url = app.config.get("REDIS_URL", "")
    if redis_url:
        try:
            import redis
            client = redis.Redis.from_url(redis_url)
            client.ping()
            cache = RedisCache(client, prefix=app.config.get("CACHE_KEY_PREFIX", "progress:"))
            app.logger.info("Cache backend: Redis (%s)", redis_url)
        except Exception as e:
            app.logger.warning("Redis connection failed (%s); falling back to in-memory cache.", e)

    if cache is None:
        cache = InMemoryCache(clock or time.monotonic)
        app.logger.info("Cache backend: in-memory")

    app.extensions[EXTENSION_KEY] = cache
    return cache
