"""Core types for taskwell."""

from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import (
    Any,
    Generic,
    Literal,
    TypeVar,
)

T = TypeVar("T")

# Operation: (token, *args) -> awaitable result
Operation = Callable[..., Awaitable[Any]]
Combinator = Callable[[Operation], Operation]

CacheKey = Hashable

CacheEventType = Literal[
    "hit",
    "miss",
    "stale",
    "set",
    "invalidate",
    "clear",
    "revalidate",
    "revalidate-error",
]

# Duration type alias
Duration = str | int | float  # "30s", "5m", "2h", "1d" or milliseconds


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata."""

    value: T
    created_at: int  # Unix timestamp ms, kept across refreshes
    updated_at: int  # Unix timestamp ms, bumped on every write
    tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CacheEvent:
    """Notification emitted by stores that support events."""

    type: CacheEventType
    key: CacheKey | None = None
    entry: CacheEntry[Any] | None = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class Tags:
    """Invalidation target naming tags rather than keys."""

    names: tuple[str, ...]


def by_tags(*names: str) -> Tags:
    """Build a tag invalidation target."""
    return Tags(tuple(names))
