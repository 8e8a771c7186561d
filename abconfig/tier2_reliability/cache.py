"""
abconfig.tier2_reliability.cache
───────────────────────────────────
Cache for the denormalised experiment dataset: an in-process dict (dev,
single worker) or Redis (shared between workers).

Writers never patch a cached entry: they delete it, and the next reader
rebuilds it. Readers therefore see either the old or the new snapshot.
Stampede protection via a per-key mutex on cache miss.

Configure via: REDIS_URL, ABCONFIG_CACHE_TTL
"""
from __future__ import annotations

import pickle
import threading
import time
from typing import Any, Callable

from abconfig.tier0_core.config import get_settings


class _MemoryCache:
    """
    Thread-safe in-process cache.

    Each key has a generation that ``delete`` bumps. A value loaded by
    ``get_or_set`` is only stored if no delete happened while it loaded,
    so a snapshot taken before a write can't outlive that write.
    """

    def __init__(self) -> None:
        self._store: dict[str, tuple[Any, float]] = {}  # key → (value, expires_at)
        self._generations: dict[str, int] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def generation(self, key: str) -> int:
        with self._guard:
            return self._generations.get(key, 0)

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at and time.monotonic() > expires_at:
            self._store.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = (time.monotonic() + ttl) if ttl else 0.0
        self._store[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._guard:
            self._store.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def _set_if_current(self, key: str, value: Any, ttl: int | None, generation: int) -> bool:
        with self._guard:
            if self._generations.get(key, 0) != generation:
                return False
            self.set(key, value, ttl)
            return True

    def get_or_set(
        self, key: str, fn: Callable[[], Any], ttl: int | None = None
    ) -> Any:
        """Get from cache or call fn() and cache the result. Stampede-safe."""
        val = self.get(key)
        if val is not None:
            return val
        with self._lock_for(key):
            val = self.get(key)
            if val is not None:
                return val
            generation = self.generation(key)
            val = fn()
            self._set_if_current(key, val, ttl, generation)
            return val

    def clear(self) -> None:
        with self._guard:
            for key in set(self._store) | set(self._generations):
                self._generations[key] = self._generations.get(key, 0) + 1
            self._store.clear()


class _RedisCache:
    """
    Redis-backed cache, values pickled.

    ``<key>:generation`` is INCRed on every delete; ``get_or_set`` stores
    its value under WATCH on that counter and drops it if the counter moved.
    """

    def __init__(self, url: str) -> None:
        import redis
        self._redis = redis.Redis.from_url(url, decode_responses=False)
        self._watch_error = redis.WatchError

    @staticmethod
    def _generation_key(key: str) -> str:
        return f"{key}:generation"

    def get(self, key: str) -> Any | None:
        val = self._redis.get(key)
        return pickle.loads(val) if val else None

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        data = pickle.dumps(value)
        if ttl:
            self._redis.setex(key, ttl, data)
        else:
            self._redis.set(key, data)

    def delete(self, key: str) -> None:
        with self._redis.pipeline() as pipe:
            pipe.delete(key)
            pipe.incr(self._generation_key(key))
            pipe.execute()

    def get_or_set(
        self, key: str, fn: Callable[[], Any], ttl: int | None = None
    ) -> Any:
        val = self.get(key)
        if val is not None:
            return val
        generation_key = self._generation_key(key)
        generation = self._redis.get(generation_key)
        val = fn()
        data = pickle.dumps(val)
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(generation_key)
                if pipe.get(generation_key) != generation:
                    return val
                pipe.multi()
                if ttl:
                    pipe.setex(key, ttl, data)
                else:
                    pipe.set(key, data)
                pipe.execute()
            except self._watch_error:
                # Invalidated mid-store; the next reader reloads
                pass
        return val

    def clear(self) -> None:
        self._redis.flushdb()


# ── Provider registry ─────────────────────────────────────────────────────────

Cache = _MemoryCache | _RedisCache

_cache: Cache | None = None


def get_cache() -> Cache:
    global _cache
    if _cache is None:
        redis_url = get_settings().redis_url
        if redis_url:
            _cache = _RedisCache(redis_url)
        else:
            _cache = _MemoryCache()
    return _cache


def _reset_cache() -> None:
    global _cache
    _cache = None


__all__ = ["Cache", "get_cache"]
