"""Cache engine - keyed caching, dedupe and stale-while-revalidate.

This module wraps operations with a store:
- Cache.cache(): serve fresh entries, otherwise invoke and store
- Cache.stale_while_revalidate(): also serve stale entries while refreshing
- Cache.invalidate_on_resolve(): drop keys or tags after a successful call

A Cache owns the coalescing table for its store: concurrent calls for the
same key share one underlying invocation until it settles.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from functools import wraps
from typing import Any, TypeVar, Union

from taskwell.cancellation import CancellationToken
from taskwell.duration import parse_optional_duration
from taskwell.stores.base import CacheStore, EventedStore, KeyedStore, TaggedStore
from taskwell.types import (
    CacheEntry,
    CacheEvent,
    CacheEventType,
    CacheKey,
    Combinator,
    Duration,
    Operation,
    Tags,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]

InvalidationTarget = Union[CacheKey, list, set, frozenset, Tags]


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True, slots=True)
class CacheOptions:
    """Freshness and coalescing options for a cached key.

    ``ttl`` of None means entries never go stale once written.
    """

    ttl: float | None = None
    stale_ttl: float = 0
    tags: tuple[str, ...] = ()
    dedupe: bool = True

    @classmethod
    def build(
        cls,
        *,
        ttl: Duration | None = None,
        stale_ttl: Duration | None = None,
        tags: Iterable[str] = (),
        dedupe: bool = True,
    ) -> CacheOptions:
        return cls(
            ttl=parse_optional_duration(ttl),
            stale_ttl=parse_optional_duration(stale_ttl) or 0,
            tags=tuple(tags),
            dedupe=dedupe,
        )

    def is_fresh(self, entry: CacheEntry[Any], now: float) -> bool:
        if self.ttl is None:
            return True
        return now - entry.updated_at <= self.ttl

    def is_within_stale(self, entry: CacheEntry[Any], now: float) -> bool:
        if self.ttl is None:
            return False
        age = now - entry.updated_at
        return self.ttl < age <= self.ttl + self.stale_ttl


class Cache:
    """Store wrapper with request coalescing and background refresh."""

    def __init__(self, store: CacheStore, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or _now_ms
        self._in_flight: dict[CacheKey, asyncio.Future[Any]] = {}
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def store(self) -> CacheStore:
        return self._store

    def cache(
        self,
        key: CacheKey,
        *,
        ttl: Duration | None = None,
        stale_ttl: Duration | None = None,
        tags: Iterable[str] = (),
        dedupe: bool = True,
    ) -> Combinator:
        """Cache operation results under ``key``.

        Returns cached data when fresh; otherwise invokes the operation and
        stores the result. Failures (including cancellation) are never
        stored and propagate to every joined caller. When deduped, only the
        first caller's token reaches the operation.

        Example:
            users = pipe(fetch_users, cache.cache("users", ttl="10s"))
        """
        options = CacheOptions.build(
            ttl=ttl, stale_ttl=stale_ttl, tags=tags, dedupe=dedupe
        )

        def combinator(operation: Operation) -> Operation:
            @wraps(operation)
            async def cached(token: CancellationToken | None, *args: Any) -> Any:
                entry = await self._store.get(key)
                if entry is not None and options.is_fresh(entry, self._clock()):
                    self._emit("hit", key, entry)
                    return entry.value

                self._emit("stale" if entry is not None else "miss", key, entry)
                return await self._resolve(key, operation, token, args, options, entry)

            return cached

        return combinator

    def stale_while_revalidate(
        self,
        key: CacheKey,
        *,
        ttl: Duration | None = None,
        stale_ttl: Duration | None = None,
        tags: Iterable[str] = (),
        dedupe: bool = True,
    ) -> Combinator:
        """Serve stale data while refreshing it in the background.

        Within ``ttl`` the entry is returned as is. Within the following
        ``stale_ttl`` it is returned immediately and a background refresh
        starts without the caller's token. Background failures emit
        ``revalidate-error`` and leave the entry untouched. Past both
        windows the caller waits for a fresh invocation.

        Example:
            feed = pipe(fetch_feed, cache.stale_while_revalidate(
                "feed", ttl="5s", stale_ttl="30s"))
        """
        options = CacheOptions.build(
            ttl=ttl, stale_ttl=stale_ttl, tags=tags, dedupe=dedupe
        )

        def combinator(operation: Operation) -> Operation:
            @wraps(operation)
            async def revalidating(token: CancellationToken | None, *args: Any) -> Any:
                entry = await self._store.get(key)
                if entry is not None:
                    now = self._clock()
                    if options.is_fresh(entry, now):
                        self._emit("hit", key, entry)
                        return entry.value
                    if options.is_within_stale(entry, now):
                        self._emit("stale", key, entry)
                        self._emit("revalidate", key, entry)
                        self._refresh_in_background(key, operation, args, options, entry)
                        return entry.value

                self._emit("miss", key, entry)
                return await self._resolve(key, operation, token, args, options, entry)

            return revalidating

        return combinator

    def invalidate_on_resolve(
        self,
        target: InvalidationTarget | Callable[[Any], InvalidationTarget],
    ) -> Combinator:
        """Invalidate keys or tags after the operation succeeds.

        ``target`` is a key, a list or set of keys, a ``Tags`` value, or a
        callable receiving the result and returning one of those. Nothing is
        invalidated when the operation fails.

        Example:
            create = pipe(create_post, cache.invalidate_on_resolve(by_tags("posts")))
        """

        def combinator(operation: Operation) -> Operation:
            @wraps(operation)
            async def invalidating(token: CancellationToken | None, *args: Any) -> Any:
                result = await operation(token, *args)
                resolved = target(result) if callable(target) else target
                if isinstance(resolved, Tags):
                    await self.invalidate_tags(*resolved.names)
                elif isinstance(resolved, (list, set, frozenset)):
                    await self.invalidate(*resolved)
                else:
                    await self.invalidate(resolved)
                return result

            return invalidating

        return combinator

    def is_in_flight(self, key: CacheKey) -> bool:
        """Whether a coalesced invocation for ``key`` is outstanding."""
        return key in self._in_flight

    async def invalidate(self, *keys: CacheKey) -> None:
        """Delete entries by key."""
        for key in keys:
            await self._store.delete(key)

    async def invalidate_tags(self, *tags: str) -> None:
        """Delete every entry carrying any of ``tags``.

        Uses the store's tag support when present, otherwise scans its keys.
        """
        if isinstance(self._store, TaggedStore):
            await self._store.invalidate_tags(tags)
            return
        if isinstance(self._store, KeyedStore):
            wanted = set(tags)
            for key in await self._store.keys():
                entry = await self._store.get(key)
                if entry is not None and wanted.intersection(entry.tags):
                    await self._store.delete(key)
            return
        logger.warning(
            "Store %s supports neither tags nor key listing; skipping invalidation",
            type(self._store).__name__,
        )

    async def clear(self) -> None:
        """Clear all cached entries."""
        await self._store.clear()

    async def drain(self) -> None:
        """Wait for outstanding background refreshes."""
        while self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _emit(
        self,
        type_: CacheEventType,
        key: CacheKey,
        entry: CacheEntry[Any] | None,
        error: BaseException | None = None,
    ) -> None:
        if isinstance(self._store, EventedStore):
            self._store.emit(CacheEvent(type_, key, entry, error))

    async def _store_value(
        self,
        key: CacheKey,
        value: Any,
        options: CacheOptions,
        previous: CacheEntry[Any] | None,
    ) -> None:
        now = int(self._clock())
        entry: CacheEntry[Any] = CacheEntry(
            value=value,
            created_at=previous.created_at if previous is not None else now,
            updated_at=now,
            tags=options.tags,
        )
        await self._store.set(key, entry)

    async def _fetch(
        self,
        key: CacheKey,
        operation: Operation,
        token: CancellationToken | None,
        args: tuple[Any, ...],
        options: CacheOptions,
        previous: CacheEntry[Any] | None,
    ) -> Any:
        value = await operation(token, *args)
        await self._store_value(key, value, options, previous)
        return value

    def _resolve(
        self,
        key: CacheKey,
        operation: Operation,
        token: CancellationToken | None,
        args: tuple[Any, ...],
        options: CacheOptions,
        previous: CacheEntry[Any] | None,
    ) -> Awaitable[Any]:
        """Invoke through the coalescing table (stampede protection).

        Lookup and registration happen without yielding to the loop, so every
        caller for a key gets the handle created by the first one.
        """
        if not options.dedupe:
            return self._fetch(key, operation, token, args, options, previous)

        existing = self._in_flight.get(key)
        if existing is not None:
            return asyncio.shield(existing)

        future = asyncio.ensure_future(
            self._fetch(key, operation, token, args, options, previous)
        )
        self._in_flight[key] = future

        def settled(done: asyncio.Future[Any]) -> None:
            if self._in_flight.get(key) is done:
                del self._in_flight[key]
            if not done.cancelled():
                done.exception()  # mark retrieved; callers get it via shield

        future.add_done_callback(settled)
        return asyncio.shield(future)

    def _refresh_in_background(
        self,
        key: CacheKey,
        operation: Operation,
        args: tuple[Any, ...],
        options: CacheOptions,
        previous: CacheEntry[Any],
    ) -> None:
        """Refresh a stale entry; failures only emit ``revalidate-error``."""

        async def refresh() -> None:
            try:
                await self._resolve(key, operation, None, args, options, previous)
            except Exception as err:
                logger.debug("Background revalidation of %r failed", key, exc_info=True)
                self._emit("revalidate-error", key, previous, err)

        task = asyncio.create_task(refresh())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


def create_cache(*, store: CacheStore, clock: Clock | None = None) -> Cache:
    """Create a cache engine for ``store``.

    Args:
        store: Cache store
        clock: Callable returning the current time in epoch milliseconds

    Returns:
        Cache instance with cache, stale_while_revalidate and
        invalidate_on_resolve combinators
    """
    return Cache(store, clock=clock)


__all__ = ["Cache", "CacheOptions", "create_cache"]
