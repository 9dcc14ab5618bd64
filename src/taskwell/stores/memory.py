"""In-memory cache store."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Iterable
from typing import Any

from taskwell.stores.base import StoreEvents
from taskwell.types import CacheEntry, CacheEvent, CacheKey


class MemoryCacheStore(StoreEvents):
    """In-memory store with tag support and optional LRU eviction.

    Emits ``set`` on write, ``invalidate`` on delete, eviction and tag
    invalidation, and ``clear`` on clear.
    """

    def __init__(self, max_items: int | None = None) -> None:
        super().__init__()
        self._cache: OrderedDict[CacheKey, CacheEntry[Any]] = OrderedDict()
        self._tag_index: dict[str, set[CacheKey]] = {}
        self._max_items = max_items
        self._lock = asyncio.Lock()

    async def get(self, key: CacheKey) -> CacheEntry[Any] | None:
        """Get a cache entry by key."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                self._cache.move_to_end(key)  # LRU touch
            return entry

    async def set(self, key: CacheKey, entry: CacheEntry[Any]) -> None:
        """Store a cache entry, replacing tag memberships of the old one."""
        evicted: list[tuple[CacheKey, CacheEntry[Any] | None]] = []
        async with self._lock:
            existing = self._cache.get(key)
            if existing is not None:
                self._untag(key, existing.tags)
            self._cache[key] = entry
            self._cache.move_to_end(key)
            self._tag(key, entry.tags)
            if self._max_items:
                while len(self._cache) > self._max_items:
                    oldest = next(iter(self._cache))
                    evicted.append((oldest, self._remove(oldest)))
        self.emit(CacheEvent("set", key, entry))
        for old_key, old_entry in evicted:
            self.emit(CacheEvent("invalidate", old_key, old_entry))

    async def delete(self, key: CacheKey) -> None:
        """Delete a cache entry."""
        async with self._lock:
            existing = self._remove(key)
        self.emit(CacheEvent("invalidate", key, existing))

    async def clear(self) -> None:
        """Clear all cached entries."""
        async with self._lock:
            self._cache.clear()
            self._tag_index.clear()
        self.emit(CacheEvent("clear"))

    async def has(self, key: CacheKey) -> bool:
        """Check whether a key exists."""
        async with self._lock:
            return key in self._cache

    async def keys(self) -> list[CacheKey]:
        """List all keys, least recently used first."""
        async with self._lock:
            return list(self._cache)

    async def invalidate_tags(self, tags: Iterable[str]) -> None:
        """Remove every entry carrying any of ``tags``."""
        removed: list[tuple[CacheKey, CacheEntry[Any] | None]] = []
        async with self._lock:
            for tag in tags:
                for key in list(self._tag_index.get(tag, ())):
                    removed.append((key, self._remove(key)))
        for key, entry in removed:
            self.emit(CacheEvent("invalidate", key, entry))

    # -------------------------------------------------------------------------
    # Internal helpers (call with the lock held)
    # -------------------------------------------------------------------------

    def _remove(self, key: CacheKey) -> CacheEntry[Any] | None:
        entry = self._cache.pop(key, None)
        if entry is not None:
            self._untag(key, entry.tags)
        return entry

    def _tag(self, key: CacheKey, tags: Iterable[str]) -> None:
        for tag in tags:
            self._tag_index.setdefault(tag, set()).add(key)

    def _untag(self, key: CacheKey, tags: Iterable[str]) -> None:
        for tag in tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]
