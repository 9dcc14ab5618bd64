"""Store protocols for cache backends.

The cache engine needs only ``get``/``set``/``delete``/``has``. Key
enumeration, events and tag invalidation are optional capabilities detected
with ``isinstance`` against the runtime-checkable protocols below.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol, runtime_checkable

from taskwell.listeners import Listeners
from taskwell.types import CacheEntry, CacheEvent, CacheKey

logger = logging.getLogger(__name__)

EventListener = Callable[[CacheEvent], None]


@runtime_checkable
class CacheStore(Protocol):
    """Async cache store interface."""

    async def get(self, key: CacheKey) -> CacheEntry[Any] | None:
        """Get a cache entry by key."""
        ...

    async def set(self, key: CacheKey, entry: CacheEntry[Any]) -> None:
        """Store a cache entry, replacing any previous one."""
        ...

    async def delete(self, key: CacheKey) -> None:
        """Delete a cache entry."""
        ...

    async def has(self, key: CacheKey) -> bool:
        """Check whether a key exists."""
        ...

    async def clear(self) -> None:
        """Clear all cached entries."""
        ...


@runtime_checkable
class KeyedStore(Protocol):
    """Optional mixin for stores that can enumerate their keys."""

    async def keys(self) -> list[CacheKey]:
        """List all keys."""
        ...


@runtime_checkable
class EventedStore(Protocol):
    """Optional mixin for stores that publish cache events."""

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to cache events. Returns an unsubscribe function."""
        ...

    def emit(self, event: CacheEvent) -> None:
        """Deliver an event to every subscriber."""
        ...


@runtime_checkable
class TaggedStore(Protocol):
    """Optional mixin for stores with bulk invalidation by tag."""

    async def invalidate_tags(self, tags: Iterable[str]) -> None:
        """Remove every entry carrying any of ``tags``."""
        ...


class StoreEvents:
    """Event subscription shared by the bundled stores.

    Listener errors are caught and logged.
    """

    def __init__(self) -> None:
        self._event_listeners: Listeners[CacheEvent] = Listeners(
            logger, "Cache listener error"
        )

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to cache events."""
        return self._event_listeners.add(listener)

    def emit(self, event: CacheEvent) -> None:
        """Emit a cache event to listeners."""
        self._event_listeners.notify(event)


def entry_to_dict(entry: CacheEntry[Any]) -> dict[str, Any]:
    """Convert a cache entry to a JSON-compatible dict."""
    return {
        "value": entry.value,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
        "tags": list(entry.tags),
    }


def entry_from_dict(obj: Any) -> CacheEntry[Any] | None:
    """Rebuild a cache entry. Returns None when ``obj`` is malformed."""
    if not isinstance(obj, dict) or "value" not in obj:
        return None
    created_at = obj.get("created_at")
    updated_at = obj.get("updated_at", created_at)
    tags = obj.get("tags") or []
    if not isinstance(created_at, (int, float)) or not isinstance(
        updated_at, (int, float)
    ):
        return None
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        return None
    return CacheEntry(
        value=obj["value"],
        created_at=int(created_at),
        updated_at=int(updated_at),
        tags=tuple(tags),
    )
