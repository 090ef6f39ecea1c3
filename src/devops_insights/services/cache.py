"""Key-value store for KPI caching and per-repository sync locks.

Redis when REDIS_URL is set and reachable, otherwise an in-process
dictionary. The in-process fallback only coordinates within one process.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

SYNC_LOCK_TTL_SECONDS = 3600
KPI_CACHE_TTL_SECONDS = 300


class CacheKeys:
    @staticmethod
    def sync_lock(repository_id: Any) -> str:
        return f"sync:lock:{repository_id}"

    @staticmethod
    def kpis(name: str, filters: Dict[str, Any]) -> str:
        return f"kpis:{name}:{json.dumps(filters, sort_keys=True, default=str)}"


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Get a value from the cache."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Set a value in the cache with TTL."""

    @abstractmethod
    def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Set ``key`` only when it does not exist. True when set."""

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def status(self) -> str:
        """Return "ok" or "down"."""


class MemoryBackend(CacheBackend):
    """In-memory cache backend (default)."""

    def __init__(self) -> None:
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[float, Any]]:
        entry = self._store.get(key)
        if not entry:
            return None
        if time.time() > entry[0]:
            self._store.pop(key, None)
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return entry[1] if entry else None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._store[key] = (time.time() + ttl_seconds, value)

    def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store[key] = (time.time() + ttl_seconds, value)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def status(self) -> str:
        return "ok"


class RedisBackend(CacheBackend):
    """Redis-backed cache for distributed deployments."""

    def __init__(self, redis_url: str) -> None:
        self._fallback = MemoryBackend()
        try:
            import redis

            self._client = redis.from_url(redis_url, decode_responses=True)
            self._client.ping()
            self._available = True
            logger.info("Redis cache connected: %s", redis_url.split("@")[-1])
        except Exception as e:
            logger.warning("Redis unavailable, falling back to memory: %s", e)
            self._available = False

    def get(self, key: str) -> Optional[Any]:
        if not self._available:
            return self._fallback.get(key)
        try:
            raw = self._client.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            logger.warning("Redis get failed: %s", e)
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if not self._available:
            self._fallback.set(key, value, ttl_seconds)
            return
        try:
            self._client.setex(key, ttl_seconds, json.dumps(value))
        except Exception as e:
            logger.warning("Redis set failed: %s", e)

    def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if not self._available:
            return self._fallback.set_if_absent(key, value, ttl_seconds)
        # Lock errors propagate; a silently granted lock would allow
        # concurrent syncs of one repository.
        return bool(
            self._client.set(key, json.dumps(value), nx=True, ex=ttl_seconds)
        )

    def delete(self, key: str) -> None:
        if not self._available:
            self._fallback.delete(key)
            return
        try:
            self._client.delete(key)
        except Exception as e:
            logger.warning("Redis delete failed: %s", e)

    def status(self) -> str:
        if not self._available:
            return "down"
        try:
            self._client.ping()
            return "ok"
        except Exception:
            return "down"


class TTLCache:
    """Cache with a fixed TTL over a configurable backend."""

    def __init__(
        self,
        ttl_seconds: int,
        backend: Optional[CacheBackend] = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._backend = backend or MemoryBackend()

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def get(self, key: str) -> Optional[Any]:
        return self._backend.get(key)

    def set(self, key: str, value: Any) -> None:
        self._backend.set(key, value, self.ttl_seconds)

    def status(self) -> str:
        return self._backend.status()


def create_backend(redis_url: Optional[str] = None) -> CacheBackend:
    """Redis when REDIS_URL (or ``redis_url``) is set, otherwise memory."""
    url = redis_url or os.getenv("REDIS_URL")
    if url:
        return RedisBackend(url)
    return MemoryBackend()


def create_cache(
    ttl_seconds: int,
    redis_url: Optional[str] = None,
) -> TTLCache:
    return TTLCache(ttl_seconds=ttl_seconds, backend=create_backend(redis_url))


_kv_store: Optional[CacheBackend] = None


def get_kv_store() -> CacheBackend:
    """Process-wide backend shared by the sync lock and the KPI cache."""
    global _kv_store
    if _kv_store is None:
        _kv_store = create_backend()
    return _kv_store


def set_kv_store(backend: Optional[CacheBackend]) -> None:
    global _kv_store
    _kv_store = backend
