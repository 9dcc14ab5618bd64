"""Cancellation tokens and cancellable waits.

A token is a one-shot signal handed to every operation. Operations check
``token.cancelled`` or register listeners; nothing is interrupted implicitly.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from taskwell.duration import parse_duration, to_seconds
from taskwell.errors import AbortError
from taskwell.listeners import Listeners
from taskwell.types import Duration

logger = logging.getLogger(__name__)

CancelListener = Callable[["CancellationToken"], None]


class CancellationToken:
    """A token that can be checked for cancellation."""

    __slots__ = ("_cancelled", "_event", "_listeners", "_reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._event: asyncio.Event | None = None
        self._listeners: Listeners[CancellationToken] = Listeners(
            logger, "Cancellation listener error"
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_listener(self, listener: CancelListener) -> Callable[[], None]:
        """Call ``listener`` once on cancellation. Returns a remover.

        If the token is already cancelled the listener runs immediately.
        """
        if self._cancelled:
            self._listeners.call(listener, self)
            return _noop
        return self._listeners.add(listener)

    def raise_if_cancelled(self) -> None:
        """Raise AbortError if cancelled."""
        if self._cancelled:
            raise AbortError(self._reason or "Aborted")

    async def wait(self) -> None:
        """Wait until cancellation is signalled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _fire(self, reason: str | None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        self._listeners.notify(self)
        self._listeners.clear()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


class CancellationSource:
    """Creates and controls a cancellation token.

    A source may be linked to a parent token so that an externally supplied
    token still cancels an internal boundary.
    """

    __slots__ = ("_detach", "_token")

    def __init__(self) -> None:
        self._token = CancellationToken()
        self._detach: Callable[[], None] = _noop

    @classmethod
    def linked(cls, parent: CancellationToken | None) -> CancellationSource:
        """Create a source cancelled whenever ``parent`` is."""
        source = cls()
        if parent is not None:
            source._detach = parent.add_listener(
                lambda token: source.cancel(token.reason)
            )
        return source

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def cancel(self, reason: str | None = None) -> None:
        """Fire the token. Further calls are no-ops."""
        self._token._fire(reason)

    def close(self) -> None:
        """Stop listening to the parent token."""
        self._detach()
        self._detach = _noop


async def sleep(delay: Duration, token: CancellationToken | None = None) -> None:
    """Wait for ``delay``; raise AbortError as soon as ``token`` fires."""
    if token is not None:
        token.raise_if_cancelled()
    ms = parse_duration(delay)
    if token is None:
        await asyncio.sleep(to_seconds(ms))
        return

    loop = asyncio.get_running_loop()
    waiter: asyncio.Future[None] = loop.create_future()

    def wake() -> None:
        if not waiter.done():
            waiter.set_result(None)

    def abort(t: CancellationToken) -> None:
        if not waiter.done():
            waiter.set_exception(AbortError(t.reason or "Aborted"))

    handle = loop.call_later(to_seconds(ms), wake)
    remove = token.add_listener(abort)
    try:
        await waiter
    finally:
        handle.cancel()
        remove()


def _noop() -> None:
    pass
