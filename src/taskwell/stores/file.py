"""JSON file cache store."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from taskwell.stores.base import StoreEvents, entry_from_dict, entry_to_dict
from taskwell.types import CacheEntry, CacheEvent, CacheKey

logger = logging.getLogger(__name__)


class FileCacheStore(StoreEvents):
    """Store persisted to a JSON file.

    The file holds a JSON object keyed by the stringified cache key. The
    whole map is loaded at construction and rewritten on every mutation.
    An unreadable file starts the store empty; malformed entries are
    dropped and treated as misses. Values must be JSON serializable.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        super().__init__()
        self._path = Path(path)
        self._cache: dict[str, CacheEntry[Any]] = {}
        self._lock = asyncio.Lock()
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: CacheKey) -> CacheEntry[Any] | None:
        """Get a cache entry by key."""
        async with self._lock:
            return self._cache.get(str(key))

    async def set(self, key: CacheKey, entry: CacheEntry[Any]) -> None:
        """Store a cache entry and persist.

        Raises ``TypeError`` for values JSON cannot encode; the store is left
        unchanged.
        """
        async with self._lock:
            self._commit({**self._cache, str(key): entry})
        self.emit(CacheEvent("set", key, entry))

    async def delete(self, key: CacheKey) -> None:
        """Delete a cache entry and persist."""
        async with self._lock:
            remaining = dict(self._cache)
            existing = remaining.pop(str(key), None)
            self._commit(remaining)
        self.emit(CacheEvent("invalidate", key, existing))

    async def clear(self) -> None:
        """Clear all entries."""
        async with self._lock:
            self._commit({})
        self.emit(CacheEvent("clear"))

    async def has(self, key: CacheKey) -> bool:
        """Check whether a key exists."""
        async with self._lock:
            return str(key) in self._cache

    async def keys(self) -> list[CacheKey]:
        """List all (stringified) keys."""
        async with self._lock:
            return list(self._cache)

    async def invalidate_tags(self, tags: Iterable[str]) -> None:
        """Remove every entry carrying any of ``tags``."""
        wanted = set(tags)
        async with self._lock:
            removed = [
                (key, entry)
                for key, entry in self._cache.items()
                if wanted.intersection(entry.tags)
            ]
            if removed:
                self._commit(
                    {
                        key: entry
                        for key, entry in self._cache.items()
                        if not wanted.intersection(entry.tags)
                    }
                )
        for key, entry in removed:
            self.emit(CacheEvent("invalidate", key, entry))

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable cache file %s", self._path)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed cache file %s", self._path)
            return

        loaded: dict[str, CacheEntry[Any]] = {}
        for key, obj in data.items():
            entry = entry_from_dict(obj)
            if entry is not None:
                loaded[key] = entry
        dropped = len(data) - len(loaded)
        if dropped:
            logger.warning("Dropped %d malformed entries from %s", dropped, self._path)
            self._commit(loaded)
        else:
            self._cache = loaded

    def _commit(self, cache: dict[str, CacheEntry[Any]]) -> None:
        """Write ``cache`` to disk, then make it the current map.

        Encoding happens first so a failed write leaves memory and file as
        they were.
        """
        payload = json.dumps({key: entry_to_dict(entry) for key, entry in cache.items()})
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(payload, encoding="utf-8")
        self._cache = cache
