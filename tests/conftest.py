"""Shared pytest fixtures."""

import pytest

from taskwell import Cache, MemoryCacheStore


class FakeClock:
    """Manually advanced clock in epoch milliseconds."""

    def __init__(self, start: float = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def store() -> MemoryCacheStore:
    """Create a fresh MemoryCacheStore for each test."""
    return MemoryCacheStore()


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def cache(store: MemoryCacheStore, clock: FakeClock) -> Cache:
    """Create a cache engine over the memory store with the fake clock."""
    return Cache(store, clock=clock)


@pytest.fixture
def events(store: MemoryCacheStore) -> list:
    """Collect every event emitted by the memory store."""
    collected: list = []
    store.subscribe(collected.append)
    return collected
