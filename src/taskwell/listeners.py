"""Guarded listener dispatch.

Each listener runs inside its own try block; one failing listener is logged
and never stops the rest from being notified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

Listener = Callable[[T], None]


class Listeners(Generic[T]):
    """An ordered set of callbacks with isolated dispatch."""

    __slots__ = ("_listeners", "_logger", "_message")

    def __init__(self, logger: logging.Logger, message: str) -> None:
        # dict as an insertion-ordered set
        self._listeners: dict[Listener[T], None] = {}
        self._logger = logger
        self._message = message

    def add(self, listener: Listener[T]) -> Callable[[], None]:
        """Register a listener. Returns an idempotent remover.

        Listeners form a set: adding the same callable again keeps a single
        registration, and any of its removers unregisters it.
        """
        self._listeners[listener] = None

        def remove() -> None:
            self._listeners.pop(listener, None)

        return remove

    def call(self, listener: Listener[T], payload: T) -> None:
        """Invoke one listener, logging instead of raising on failure."""
        try:
            listener(payload)
        except Exception:
            self._logger.exception(self._message)

    def notify(self, payload: T) -> None:
        """Invoke every listener registered at the time of the call."""
        for listener in list(self._listeners):
            self.call(listener, payload)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
