"""Rate-limiting combinators and task polling.

Each call to ``debounce``/``throttle``/``queue`` produces a wrapper with
its own timers and counters; wrapping the same operation twice gives two
independent limiters.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from functools import update_wrapper
from typing import Any

from taskwell.cancellation import CancellationToken
from taskwell.duration import parse_duration, to_seconds
from taskwell.errors import AbortError
from taskwell.task import Task
from taskwell.types import Combinator, Duration, Operation

logger = logging.getLogger(__name__)


class _Debounced:
    """Only the last call within the wait window executes."""

    def __init__(self, operation: Operation, wait_ms: float) -> None:
        self._operation = operation
        self._wait_ms = wait_ms
        self._waiter: asyncio.Future[None] | None = None
        self._handle: asyncio.TimerHandle | None = None
        update_wrapper(self, operation, updated=())

    def _supersede(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(AbortError("superseded"))
        self._waiter = None

    async def __call__(self, token: CancellationToken | None, *args: Any) -> Any:
        self._supersede()
        if token is not None:
            token.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiter = waiter

        def fire() -> None:
            self._handle = None
            if not waiter.done():
                waiter.set_result(None)

        def abort(t: CancellationToken) -> None:
            if not waiter.done():
                waiter.set_exception(AbortError(t.reason or "Aborted"))
            if self._waiter is waiter:
                self._supersede()

        self._handle = loop.call_later(to_seconds(self._wait_ms), fire)
        remove = token.add_listener(abort) if token is not None else None
        try:
            await waiter
        except asyncio.CancelledError:
            if self._waiter is waiter:
                self._supersede()
            raise
        finally:
            if remove is not None:
                remove()

        if self._waiter is waiter:
            self._waiter = None
        return await self._operation(token, *args)


class _Throttled:
    """Calls within the window share the first call's in-flight result."""

    def __init__(self, operation: Operation, window_ms: float) -> None:
        self._operation = operation
        self._window_ms = window_ms
        self._last_run = float("-inf")
        self._in_flight: asyncio.Future[Any] | None = None
        update_wrapper(self, operation, updated=())

    async def __call__(self, token: CancellationToken | None, *args: Any) -> Any:
        now = asyncio.get_running_loop().time() * 1000
        if self._in_flight is not None and now - self._last_run < self._window_ms:
            return await asyncio.shield(self._in_flight)

        self._last_run = now
        future = asyncio.ensure_future(self._operation(token, *args))
        self._in_flight = future

        def settled(done: asyncio.Future[Any]) -> None:
            if self._in_flight is done:
                self._in_flight = None
            if not done.cancelled():
                done.exception()

        future.add_done_callback(settled)
        return await asyncio.shield(future)


class _Queued:
    """At most ``concurrency`` invocations run at once, in arrival order."""

    def __init__(self, operation: Operation, concurrency: int) -> None:
        self._operation = operation
        self._concurrency = concurrency
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        update_wrapper(self, operation, updated=())

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def _abandon(self, waiter: asyncio.Future[None], reason: str | None) -> None:
        if waiter in self._waiters:
            self._waiters.remove(waiter)
            waiter.set_exception(AbortError(reason or "Aborted"))

    def _release(self) -> None:
        self._active -= 1
        while self._waiters and self._active < self._concurrency:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)

    async def _acquire(self, token: CancellationToken | None) -> None:
        if self._active < self._concurrency and not self._waiters:
            self._active += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        remove = (
            token.add_listener(lambda t: self._abandon(waiter, t.reason))
            if token is not None
            else None
        )
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            elif waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Slot was granted but the caller left before using it
                self._release()
            raise
        finally:
            if remove is not None:
                remove()

    async def __call__(self, token: CancellationToken | None, *args: Any) -> Any:
        if token is not None:
            token.raise_if_cancelled()
        await self._acquire(token)
        try:
            return await self._operation(token, *args)
        finally:
            self._release()


def debounce(*, wait: Duration) -> Combinator:
    """Debounce an operation so only the last call within ``wait`` runs.

    Superseded calls fail with ``AbortError`` as soon as a newer call
    arrives. A call whose token fires while waiting fails with
    ``AbortError`` and never runs.

    Example:
        search = pipe(search_api, debounce(wait="300ms"))
    """
    wait_ms = parse_duration(wait)

    def combinator(operation: Operation) -> Operation:
        return _Debounced(operation, wait_ms)

    return combinator


def throttle(*, window: Duration) -> Combinator:
    """Throttle an operation so calls within ``window`` share one run.

    Joined calls ignore their own token and arguments; the first call's are
    used. A call after the window starts a new run even if the previous one
    is still in flight.
    """
    window_ms = parse_duration(window)

    def combinator(operation: Operation) -> Operation:
        return _Throttled(operation, window_ms)

    return combinator


def queue(*, concurrency: int = 1) -> Combinator:
    """Run calls in arrival order with at most ``concurrency`` at once.

    A call whose token fires before it starts is removed from the queue and
    fails with ``AbortError``.
    """
    limit = max(1, concurrency)

    def combinator(operation: Operation) -> Operation:
        return _Queued(operation, limit)

    return combinator


class Poller:
    """Handle returned by ``poll_task``."""

    def __init__(
        self, task: Task[Any], interval_ms: float, immediate: bool, args: tuple[Any, ...]
    ) -> None:
        self._task = task
        self._interval = to_seconds(interval_ms)
        self._args = args
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(self._loop(immediate))
        self._runner.add_done_callback(self._finished)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set() or self._runner.done()

    def stop(self) -> None:
        """Cancel future ticks. A run already in progress completes."""
        self._stop.set()

    async def _wait(self) -> bool:
        """Sleep one interval. Returns False once stopped."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            return True
        return False

    async def _loop(self, immediate: bool) -> None:
        if not immediate and not await self._wait():
            return
        while not self._stop.is_set():
            await self._task.run(*self._args)
            if self._stop.is_set() or not await self._wait():
                return

    def _finished(self, runner: asyncio.Task[None]) -> None:
        if not runner.cancelled() and runner.exception() is not None:
            logger.error("Polling stopped", exc_info=runner.exception())


def poll_task(
    task: Task[Any], *args: Any, interval: Duration, immediate: bool = True
) -> Poller:
    """Run ``task.run(*args)`` repeatedly, ``interval`` apart.

    The interval is measured from the end of one run to the start of the
    next. Polling stops if ``run`` raises (for example after ``dispose``).

    Example:
        poller = poll_task(status_task, interval="5s")
        ...
        poller.stop()
    """
    return Poller(task, parse_duration(interval), immediate, args)


__all__ = ["Poller", "debounce", "poll_task", "queue", "throttle"]
