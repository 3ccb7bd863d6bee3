"""Bounded in-memory cache with TTL expiry and least-recently-used eviction.

Entries expire ``ttl`` seconds after they were stored. Two ceilings are
enforced on insert: an estimated memory budget (evict LRU entries until the
new entry fits) and an entry count (evict a tenth of ``max_size``, rounded up,
once the cache is full).
"""

import asyncio
import json
import math
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict

from ..config import MemoryCacheOptions
from ..events import CallbackRegistry

T = TypeVar("T")

CACHE_EVENTS = ["set", "delete", "eviction", "cleanup", "invalidate", "clear"]

UNSERIALIZABLE_SIZE_ESTIMATE = 1024


class CacheEntry(BaseModel):
    """Represents a cache entry with access metadata."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    access_count: int = 0
    size_estimate_bytes: int = 0


def estimate_size(value: Any) -> int:
    """Estimate the in-memory footprint of a value as twice its JSON length."""
    try:
        if isinstance(value, BaseModel):
            text = value.model_dump_json()
        else:
            text = json.dumps(value)
    except (TypeError, ValueError):
        return UNSERIALIZABLE_SIZE_ESTIMATE
    return len(text) * 2


class BoundedCache(Generic[T]):
    """In-memory key/value cache with TTL, memory and size ceilings."""

    def __init__(self, options: MemoryCacheOptions | None = None, name: str = "cache", logger: Any = None):
        self.options = options or MemoryCacheOptions()
        self.name = name
        self._logger = (logger or structlog.get_logger(__name__)).bind(cache=name)
        self.events = CallbackRegistry(CACHE_EVENTS, logger=self._logger)

        # Insertion order doubles as recency order; accessed entries move to the end
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._memory_usage = 0
        self.stats = {
            "hits": 0,
            "misses": 0,
            "eviction_count": 0,
            "last_cleanup": None,
        }

        self._cleanup_task: asyncio.Task | None = None

    def start(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._cleanup_task is None and self.options.cleanup_interval > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        """Background sweep task."""
        while True:
            try:
                await asyncio.sleep(self.options.cleanup_interval)
                self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("Cache cleanup error", error=str(e))

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.options.ttl

    def get(self, key: str) -> T | None:
        """Return the cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        now = time.time()

        if entry is None:
            self.stats["misses"] += 1
            return None

        if self._is_expired(entry, now):
            self._remove(key)
            self.stats["misses"] += 1
            return None

        entry.last_accessed_at = now
        entry.access_count += 1
        self._entries.move_to_end(key)
        self.stats["hits"] += 1
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._is_expired(entry, time.time()):
            self._remove(key)
            return False
        return True

    def set(self, key: str, value: T, size_hint: int | None = None) -> None:
        """Store a value, evicting older entries when a ceiling is reached.

        A value larger than ``max_memory_usage`` is not cached; any previous
        value under the same key is dropped.

        Args:
            key: Cache key
            value: Value to store
            size_hint: Known size in bytes; estimated from the value when omitted
        """
        size = size_hint if size_hint is not None else estimate_size(value)

        if key in self._entries:
            self._remove(key)

        if size > self.options.max_memory_usage:
            self._logger.warning(
                "Value exceeds cache memory limit, not cached",
                key=key,
                size=size,
                max_memory_usage=self.options.max_memory_usage,
            )
            return

        self._ensure_capacity(size)

        now = time.time()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            last_accessed_at=now,
            size_estimate_bytes=size,
        )
        self._memory_usage += size
        self.events.emit("set", key=key, size=size)

    def delete(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._remove(key)
        self.events.emit("delete", key=key)
        return True

    def invalidate(self, predicate: Callable[[str, T], bool]) -> int:
        """Remove every entry for which ``predicate(key, value)`` is true."""
        keys = [key for key, entry in self._entries.items() if predicate(key, entry.value)]
        for key in keys:
            self._remove(key)
        if keys:
            self.events.emit("invalidate", count=len(keys), keys=keys)
        return len(keys)

    def cleanup(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = time.time()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            self._remove(key)

        self.stats["last_cleanup"] = now
        if expired:
            self._logger.debug("Expired entries removed", removed=len(expired))
        self.events.emit("cleanup", removed=len(expired))
        return len(expired)

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        self._memory_usage = 0
        self.events.emit("clear", count=count)

    def keys(self) -> list[str]:
        now = time.time()
        return [key for key, entry in self._entries.items() if not self._is_expired(entry, now)]

    def values(self) -> list[T]:
        now = time.time()
        return [entry.value for entry in self._entries.values() if not self._is_expired(entry, now)]

    def items(self) -> list[tuple[str, T]]:
        now = time.time()
        return [(key, entry.value) for key, entry in self._entries.items() if not self._is_expired(entry, now)]

    def size(self) -> int:
        return len(self._entries)

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._memory_usage -= entry.size_estimate_bytes

    def _evict_lru(self, count: int, reason: str) -> None:
        evicted = []
        while self._entries and len(evicted) < count:
            key, entry = self._entries.popitem(last=False)
            self._memory_usage -= entry.size_estimate_bytes
            evicted.append(key)

        if evicted:
            self.stats["eviction_count"] += len(evicted)
            self._logger.debug("Cache entries evicted", reason=reason, count=len(evicted))
            self.events.emit("eviction", reason=reason, keys=evicted, count=len(evicted))

    def _ensure_capacity(self, required: int) -> None:
        if self._memory_usage + required > self.options.max_memory_usage:
            count = 0
            freed = 0
            for entry in self._entries.values():
                if self._memory_usage - freed + required <= self.options.max_memory_usage:
                    break
                freed += entry.size_estimate_bytes
                count += 1
            self._evict_lru(count, "memory_pressure")

        if len(self._entries) >= self.options.max_size:
            self._evict_lru(math.ceil(self.options.max_size * 0.1), "size_limit")

    def entries_by_access_pattern(self) -> list[dict[str, Any]]:
        """Entries ordered from most to least frequently accessed."""
        now = time.time()
        ordered = sorted(self._entries.values(), key=lambda e: e.access_count, reverse=True)
        return [
            {
                "key": entry.key,
                "access_count": entry.access_count,
                "last_accessed_at": entry.last_accessed_at,
                "age": now - entry.created_at,
                "size_estimate_bytes": entry.size_estimate_bytes,
            }
            for entry in ordered
        ]

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total_requests = self.stats["hits"] + self.stats["misses"]
        return {
            "size": len(self._entries),
            "max_size": self.options.max_size,
            "hits": self.stats["hits"],
            "misses": self.stats["misses"],
            "hit_rate": self.stats["hits"] / total_requests if total_requests else 0.0,
            "total_memory_usage": self._memory_usage,
            "last_cleanup": self.stats["last_cleanup"],
            "eviction_count": self.stats["eviction_count"],
        }

    async def destroy(self) -> None:
        """Stop the sweep task and drop all entries and statistics."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        self._entries.clear()
        self._memory_usage = 0
        self.stats = {"hits": 0, "misses": 0, "eviction_count": 0, "last_cleanup": None}
