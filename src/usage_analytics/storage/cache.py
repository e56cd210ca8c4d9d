"""
Shared key/value cache stores.

The aggregation engine, rate limiter, cost monitor and export records all
share one store; isolation comes from key namespaces, not locking.

This module provides:
- The CacheStore interface (a small Redis-shaped API with TTLs)
- An in-memory store with lazy TTL expiry and statistics
- A Redis store backed by redis.asyncio
"""

import asyncio
import fnmatch
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Union

import redis.asyncio as redis

from ..utils.logging import get_logger
from ..utils.errors import CacheError

logger = get_logger("usage-analytics.cache")


class CacheStore(ABC):
    """Key/value store with TTL, counters and hashes."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a string value or None."""

    @abstractmethod
    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        """Set a string value with a TTL."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def incrby(self, key: str, amount: int) -> int:
        """Increment an integer counter, creating it at 0."""

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Set the TTL of an existing key."""

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int) -> int:
        """Increment an integer hash field."""

    @abstractmethod
    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        """Increment a float hash field."""

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        """Set several hash fields."""

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        """Get every field of a hash, empty if missing."""

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """List keys matching a glob pattern."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity."""

    async def close(self) -> None:
        """Release connections."""


@dataclass
class CacheEntry:
    """Single cache entry; value is a string or a hash dict."""
    value: Union[str, Dict[str, str]]
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class CacheStats:
    """Cache statistics."""
    hits: int = 0
    misses: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class InMemoryCacheStore(CacheStore):
    """Process-local store with lazy TTL expiry."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        """
        Args:
            clock: Returns the current epoch time in seconds
        """
        self._clock = clock or time.time
        self._data: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.stats = CacheStats()

    def _live(self, key: str) -> Optional[CacheEntry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            self.stats.expirations += 1
            return None
        return entry

    def ttl(self, key: str) -> Optional[float]:
        """Remaining TTL in seconds, None when persistent or missing."""
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return entry.expires_at - self._clock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, str):
                self.stats.misses += 1
                return None
            self.stats.hits += 1
            return entry.value

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        async with self._lock:
            self._data[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    async def incrby(self, key: str, amount: int) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = CacheEntry(value="0")
                self._data[key] = entry
            if not isinstance(entry.value, str):
                raise CacheError(f"Key {key} does not hold a counter")
            entry.value = str(int(entry.value) + amount)
            return int(entry.value)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._clock() + ttl_seconds
            return True

    def _hash(self, key: str) -> Dict[str, str]:
        entry = self._live(key)
        if entry is None:
            entry = CacheEntry(value={})
            self._data[key] = entry
        if not isinstance(entry.value, dict):
            raise CacheError(f"Key {key} does not hold a hash")
        return entry.value

    async def hincrby(self, key: str, field: str, amount: int) -> int:
        async with self._lock:
            values = self._hash(key)
            values[field] = str(int(values.get(field, "0")) + amount)
            return int(values[field])

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        async with self._lock:
            values = self._hash(key)
            values[field] = repr(float(values.get(field, "0")) + amount)
            return float(values[field])

    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        async with self._lock:
            values = self._hash(key)
            values.update({k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key: str) -> Dict[str, str]:
        async with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, dict):
                return {}
            return dict(entry.value)

    async def keys(self, pattern: str) -> List[str]:
        async with self._lock:
            return sorted(
                key for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            )

    async def ping(self) -> bool:
        return True

    async def flushall(self) -> None:
        """Remove everything."""
        async with self._lock:
            self._data.clear()


class RedisCacheStore(CacheStore):
    """Store backed by a Redis server."""

    def __init__(self, url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.url = url
        self.client = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        await self.client.setex(key, ttl_seconds, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def incrby(self, key: str, amount: int) -> int:
        return await self.client.incrby(key, amount)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def hincrby(self, key: str, field: str, amount: int) -> int:
        return await self.client.hincrby(key, field, amount)

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        return float(await self.client.hincrbyfloat(key, field, amount))

    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        await self.client.hset(key, mapping={k: str(v) for k, v in mapping.items()})

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self.client.hgetall(key)

    async def keys(self, pattern: str) -> List[str]:
        return sorted([key async for key in self.client.scan_iter(match=pattern)])

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.client.aclose()


def create_cache_store(backend: str = "memory", redis_url: Optional[str] = None) -> CacheStore:
    """Create a cache store for the configured backend."""
    if backend == "memory":
        return InMemoryCacheStore()
    if backend == "redis":
        return RedisCacheStore(redis_url or "redis://localhost:6379/0")
    raise CacheError(f"Unknown cache backend: {backend}")


__all__ = [
    'CacheStore',
    'CacheEntry',
    'CacheStats',
    'InMemoryCacheStore',
    'RedisCacheStore',
    'create_cache_store',
]
