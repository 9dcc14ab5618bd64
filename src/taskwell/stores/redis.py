"""Redis cache store."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from taskwell.duration import parse_optional_duration
from taskwell.stores.base import StoreEvents, entry_from_dict, entry_to_dict
from taskwell.types import CacheEntry, CacheEvent, CacheKey, Duration

logger = logging.getLogger(__name__)


def _serialize_entry(entry: CacheEntry[Any]) -> str:
    """Serialize a cache entry to JSON."""
    return json.dumps(entry_to_dict(entry))


def _deserialize_entry(data: bytes | str) -> CacheEntry[Any] | None:
    """Deserialize JSON to a cache entry. None when malformed."""
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        obj = json.loads(data)
    except ValueError:
        return None
    return entry_from_dict(obj)


class RedisCacheStore(StoreEvents):
    """Async Redis store.

    Entries live under ``{prefix}:entry:{key}`` as JSON; each tag is a set
    of member keys under ``{prefix}:tag:{tag}``. Events are emitted
    in-process only.
    """

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "taskwell",
        expire: Duration | None = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._prefix = prefix
        expire_ms = parse_optional_duration(expire)
        self._expire_ms = int(expire_ms) if expire_ms else None

    def _entry_key(self, key: CacheKey) -> str:
        """Generate full Redis key for cache entries."""
        return f"{self._prefix}:entry:{key}"

    def _tag_key(self, tag: str) -> str:
        """Generate full Redis key for a tag's member set."""
        return f"{self._prefix}:tag:{tag}"

    def _strip(self, redis_key: bytes | str) -> str:
        if isinstance(redis_key, bytes):
            redis_key = redis_key.decode("utf-8")
        return redis_key[len(self._entry_key("")) :]

    async def get(self, key: CacheKey) -> CacheEntry[Any] | None:
        """Get a cache entry. Malformed entries are removed."""
        data = await self._client.get(self._entry_key(key))
        if data is None:
            return None
        entry = _deserialize_entry(data)
        if entry is None:
            logger.warning("Removing malformed cache entry %r", key)
            await self._client.delete(self._entry_key(key))
        return entry

    async def set(self, key: CacheKey, entry: CacheEntry[Any]) -> None:
        """Store a cache entry and record its tag memberships."""
        previous = await self.get(key)
        member = str(key)
        async with self._client.pipeline(transaction=True) as pipe:
            if previous is not None:
                for tag in previous.tags:
                    pipe.srem(self._tag_key(tag), member)
            pipe.set(self._entry_key(key), _serialize_entry(entry), px=self._expire_ms)
            for tag in entry.tags:
                pipe.sadd(self._tag_key(tag), member)
            await pipe.execute()
        self.emit(CacheEvent("set", key, entry))

    async def delete(self, key: CacheKey) -> None:
        """Delete a cache entry."""
        existing = await self.get(key)
        await self._remove(key, existing)
        self.emit(CacheEvent("invalidate", key, existing))

    async def has(self, key: CacheKey) -> bool:
        """Check whether a key exists."""
        return bool(await self._client.exists(self._entry_key(key)))

    async def keys(self) -> list[CacheKey]:
        """List all keys under the prefix."""
        return [
            self._strip(redis_key)
            async for redis_key in self._client.scan_iter(
                match=self._entry_key("*"), count=100
            )
        ]

    async def clear(self) -> None:
        """Clear all entries and tag sets under the prefix."""
        for pattern in (self._entry_key("*"), self._tag_key("*")):
            batch = [k async for k in self._client.scan_iter(match=pattern, count=100)]
            if batch:
                await self._client.delete(*batch)
        self.emit(CacheEvent("clear"))

    async def invalidate_tags(self, tags: Iterable[str]) -> None:
        """Remove every entry carrying any of ``tags``."""
        for tag in tags:
            members = await self._client.smembers(self._tag_key(tag))
            for member in members:
                key = member.decode("utf-8") if isinstance(member, bytes) else member
                entry = await self.get(key)
                await self._remove(key, entry)
                self.emit(CacheEvent("invalidate", key, entry))
            await self._client.delete(self._tag_key(tag))

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()

    async def _remove(self, key: CacheKey, entry: CacheEntry[Any] | None) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(self._entry_key(key))
            if entry is not None:
                for tag in entry.tags:
                    pipe.srem(self._tag_key(tag), str(key))
            await pipe.execute()
