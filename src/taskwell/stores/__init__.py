"""Cache stores for taskwell."""

from taskwell.stores.base import (
    CacheStore,
    EventedStore,
    KeyedStore,
    StoreEvents,
    TaggedStore,
)
from taskwell.stores.file import FileCacheStore
from taskwell.stores.memory import MemoryCacheStore
from taskwell.stores.redis import RedisCacheStore

__all__ = [
    "CacheStore",
    "EventedStore",
    "FileCacheStore",
    "KeyedStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    "StoreEvents",
    "TaggedStore",
]
