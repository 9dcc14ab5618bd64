"""Operation combinators.

Every combinator takes an operation ``(token, *args) -> awaitable`` and
returns another one, so they compose with ``pipe``:

    fetch_active_users = pipe(
        fetch_users,
        map_(lambda users: [u for u in users if u.active]),
        retry(2),
        timeout("5s"),
        catch_error([]),
    )

Cancellation (``AbortError`` or ``asyncio.CancelledError``) passes through
every combinator unchanged: it is never retried, recovered, or mapped.
"""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable, Sequence
from functools import reduce, wraps
from typing import Any, TypeVar

from taskwell.cancellation import CancellationSource, CancellationToken, sleep
from taskwell.duration import parse_duration, to_seconds
from taskwell.errors import AbortError, TaskTimeoutError, is_abort_error, to_error
from taskwell.types import Combinator, Duration, Operation

T = TypeVar("T")

RetryCallback = Callable[[Exception, int], None]
DelayFn = Callable[[int, Exception], Duration]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# =============================================================================
# Transforms
# =============================================================================


def map_(fn: Callable[[Any], Any]) -> Combinator:
    """Transform the result of an operation."""

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def mapped(token: CancellationToken | None, *args: Any) -> Any:
            return fn(await operation(token, *args))

        return mapped

    return combinator


def flat_map(
    fn: Callable[[Any, CancellationToken | None], Awaitable[Any]],
) -> Combinator:
    """Chain into another async step that also receives the token."""

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def chained(token: CancellationToken | None, *args: Any) -> Any:
            return await fn(await operation(token, *args), token)

        return chained

    return combinator


def tap(fn: Callable[[Any], Any]) -> Combinator:
    """Run a side effect on success, passing the result through."""

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def tapped(token: CancellationToken | None, *args: Any) -> Any:
            result = await operation(token, *args)
            await _maybe_await(fn(result))
            return result

        return tapped

    return combinator


def tap_error(fn: Callable[[Exception], Any]) -> Combinator:
    """Run a side effect on failure (not on cancellation), then re-raise."""

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def tapped(token: CancellationToken | None, *args: Any) -> Any:
            try:
                return await operation(token, *args)
            except Exception as err:
                if not is_abort_error(err):
                    await _maybe_await(fn(err))
                raise

        return tapped

    return combinator


def tap_abort(fn: Callable[[BaseException], Any]) -> Combinator:
    """Run a side effect on cancellation only, then re-raise."""

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def tapped(token: CancellationToken | None, *args: Any) -> Any:
            try:
                return await operation(token, *args)
            except (AbortError, asyncio.CancelledError) as err:
                fn(err)
                raise

        return tapped

    return combinator


def map_error(fn: Callable[[Exception], Any]) -> Combinator:
    """Replace a failure with the error ``fn`` returns. Skips cancellation."""

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def mapped(token: CancellationToken | None, *args: Any) -> Any:
            try:
                return await operation(token, *args)
            except Exception as err:
                if is_abort_error(err):
                    raise
                raise to_error(fn(err)) from err

        return mapped

    return combinator


def catch_error(fallback: Any) -> Combinator:
    """Recover from failures with a fallback value.

    ``fallback`` is a value, or a callable receiving the error and
    returning the value (sync or async). Cancellation is never caught.
    """

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def recovering(token: CancellationToken | None, *args: Any) -> Any:
            try:
                return await operation(token, *args)
            except Exception as err:
                if is_abort_error(err):
                    raise
                if callable(fallback):
                    return await _maybe_await(fallback(err))
                return await _maybe_await(fallback)

        return recovering

    return combinator


# =============================================================================
# Retry
# =============================================================================


def retry(attempts: int, *, on_retry: RetryCallback | None = None) -> Combinator:
    """Retry on failure. ``retry(2)`` means 3 total attempts.

    The token is checked before every attempt. ``on_retry(err, attempt)``
    fires for each failed attempt that will be retried, never for the final
    one. Negative ``attempts`` is treated as 0.
    """
    max_retries = max(0, attempts)

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def retrying(token: CancellationToken | None, *args: Any) -> Any:
            attempt = 0
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                try:
                    return await operation(token, *args)
                except Exception as err:
                    if is_abort_error(err) or attempt >= max_retries:
                        raise
                    attempt += 1
                    if on_retry is not None:
                        on_retry(err, attempt)

        return retrying

    return combinator


def retry_when(
    should_retry: Callable[[Exception, int], bool | Awaitable[bool]],
    *,
    max_attempts: int | None = None,
    delay: DelayFn | None = None,
    on_retry: RetryCallback | None = None,
) -> Combinator:
    """Retry while ``should_retry(err, attempt)`` holds.

    ``attempt`` counts failures so far (1-based). ``max_attempts`` caps the
    number of retries after the first call (None: unbounded). ``delay``
    returns the wait before the next attempt; the wait ends early with
    ``AbortError`` when the token fires.
    """
    limit = None if max_attempts is None else max(0, max_attempts)

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def retrying(token: CancellationToken | None, *args: Any) -> Any:
            attempt = 0
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                try:
                    return await operation(token, *args)
                except Exception as err:
                    if is_abort_error(err):
                        raise
                    attempt += 1
                    if limit is not None and attempt > limit:
                        raise
                    if not await _maybe_await(should_retry(err, attempt)):
                        raise
                    if on_retry is not None:
                        on_retry(err, attempt)
                    wait = parse_duration(delay(attempt, err)) if delay else 0
                    if wait > 0:
                        await sleep(wait, token)

        return retrying

    return combinator


def backoff(
    *,
    attempts: int,
    delay: Duration | DelayFn,
    should_retry: Callable[[Exception], bool] | None = None,
) -> Combinator:
    """Retry with a fixed or computed delay between attempts."""

    def delay_for(attempt: int, err: Exception) -> Duration:
        if callable(delay):
            return delay(attempt, err)
        return delay

    return retry_when(
        lambda err, _attempt: should_retry(err) if should_retry else True,
        max_attempts=attempts,
        delay=delay_for,
    )


def exponential_delay(
    *,
    base: Duration = 100,
    factor: float = 2.0,
    max_delay: Duration = 30_000,
    jitter: bool = False,
) -> DelayFn:
    """Delay function for ``backoff``: ``base * factor ** (attempt - 1)``.

    Capped at ``max_delay``; ``jitter`` scales each delay by 0.5-1.5x.
    """
    base_ms = parse_duration(base)
    max_ms = parse_duration(max_delay)

    def delay(attempt: int, _err: Exception) -> float:
        d = min(base_ms * (factor ** (attempt - 1)), max_ms)
        return d * (0.5 + random.random()) if jitter else d

    return delay


# =============================================================================
# Timeouts
# =============================================================================


async def _with_deadline(
    running: asyncio.Future[Any],
    ms: float,
    token: CancellationToken | None,
    source: CancellationSource | None = None,
) -> Any:
    """Settle with ``running`` or fail at the deadline, whichever is first.

    Without ``source`` the operation keeps running after the deadline and its
    late result is dropped. With ``source`` the deadline also cancels it.
    """
    loop = asyncio.get_running_loop()
    outcome: asyncio.Future[Any] = loop.create_future()
    timed_out = False

    def settle(result: Any = None, error: BaseException | None = None) -> None:
        if outcome.done():
            return
        if error is not None:
            outcome.set_exception(error)
        else:
            outcome.set_result(result)

    def on_done(done: asyncio.Future[Any]) -> None:
        if done.cancelled():
            settle(error=TaskTimeoutError(ms) if timed_out else AbortError())
            return
        error = done.exception()
        if error is None:
            settle(done.result())
        elif timed_out and is_abort_error(error):
            settle(error=TaskTimeoutError(ms))
        else:
            settle(error=error)

    def on_deadline() -> None:
        nonlocal timed_out
        timed_out = True
        if source is not None:
            source.cancel("timeout")
        settle(error=TaskTimeoutError(ms))

    def on_abort(t: CancellationToken) -> None:
        if source is not None:
            source.cancel(t.reason)
        settle(error=AbortError(t.reason or "Aborted"))

    running.add_done_callback(on_done)
    handle = loop.call_later(to_seconds(ms), on_deadline)
    remove = token.add_listener(on_abort) if token is not None else None
    try:
        return await outcome
    except asyncio.CancelledError:
        running.cancel()
        raise
    finally:
        handle.cancel()
        if remove is not None:
            remove()
        if source is not None:
            source.close()


def timeout(duration: Duration) -> Combinator:
    """Fail with ``TaskTimeoutError`` if the operation takes too long.

    The operation is not cancelled: it may run to completion and its result
    is discarded. The external token still aborts the wait.
    """
    ms = parse_duration(duration)

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def timed(token: CancellationToken | None, *args: Any) -> Any:
            if token is not None:
                token.raise_if_cancelled()
            running = asyncio.ensure_future(operation(token, *args))
            return await _with_deadline(running, ms, token)

        return timed

    return combinator


def timeout_abort(duration: Duration) -> Combinator:
    """Like ``timeout``, but cancels the operation's token at the deadline.

    A cancellation caused by the deadline surfaces as ``TaskTimeoutError``;
    one caused by the external token surfaces as ``AbortError``.
    """
    ms = parse_duration(duration)

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def timed(token: CancellationToken | None, *args: Any) -> Any:
            if token is not None:
                token.raise_if_cancelled()
            source = CancellationSource.linked(token)
            running = asyncio.ensure_future(operation(source.token, *args))
            return await _with_deadline(running, ms, token, source)

        return timed

    return combinator


def timeout_with(duration: Duration, fallback: Operation) -> Combinator:
    """On timeout only, run ``fallback`` with the same token and arguments."""

    def combinator(operation: Operation) -> Operation:
        timed = timeout(duration)(operation)

        @wraps(operation)
        async def with_fallback(token: CancellationToken | None, *args: Any) -> Any:
            try:
                return await timed(token, *args)
            except TaskTimeoutError:
                return await fallback(token, *args)

        return with_fallback

    return combinator


# =============================================================================
# Orchestration
# =============================================================================


def _start(
    operations: Sequence[Operation], token: CancellationToken | None, args: tuple[Any, ...]
) -> list[asyncio.Future[Any]]:
    return [asyncio.ensure_future(op(token, *args)) for op in operations]


def _failure(task: asyncio.Future[Any]) -> BaseException | None:
    if task.cancelled():
        return AbortError()
    return task.exception()


async def _gather(
    operations: Sequence[Operation], token: CancellationToken | None, args: tuple[Any, ...]
) -> list[Any]:
    tasks = _start(operations, token, args)
    if not tasks:
        return []
    try:
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise

    failures = [_failure(task) for task in tasks if task.done()]
    first = next((f for f in failures if f is not None), None)
    if first is not None:
        for task in pending:
            task.cancel()
        raise first
    return [task.result() for task in tasks]


def zip_(*operations: Operation) -> Operation:
    """Run operations concurrently; resolve with a tuple of results.

    The first failure is raised and the remaining operations are cancelled.
    """

    async def zipped(token: CancellationToken | None, *args: Any) -> tuple[Any, ...]:
        return tuple(await _gather(operations, token, args))

    return zipped


def all_(operations: Sequence[Operation]) -> Operation:
    """Run operations concurrently; resolve with a list of results."""
    operations = list(operations)

    async def gathered(token: CancellationToken | None, *args: Any) -> list[Any]:
        return await _gather(operations, token, args)

    return gathered


def race(*operations: Operation | Sequence[Operation]) -> Operation:
    """Settle with whichever operation settles first.

    Accepts operations as arguments or as a single sequence. Losers are
    cancelled once a winner settles.
    """
    if len(operations) == 1 and isinstance(operations[0], Sequence):
        ops: list[Operation] = list(operations[0])
    else:
        ops = list(operations)  # type: ignore[arg-type]
    if not ops:
        raise ValueError("race() requires at least one operation")

    async def racing(token: CancellationToken | None, *args: Any) -> Any:
        tasks = _start(ops, token, args)
        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        winner = next(task for task in tasks if task in done)
        for task in done:
            if task is not winner:
                _failure(task)  # mark retrieved
        failure = _failure(winner)
        if failure is not None:
            raise failure
        return winner.result()

    return racing


def sequence(*operations: Operation) -> Operation:
    """Run operations one at a time and resolve with all results.

    Stops with ``AbortError`` if the token is cancelled before the next
    operation starts.
    """

    async def sequenced(token: CancellationToken | None, *args: Any) -> list[Any]:
        results = []
        for op in operations:
            if token is not None:
                token.raise_if_cancelled()
            results.append(await op(token, *args))
        return results

    return sequenced


concat = sequence


def defer(factory: Callable[[], Operation]) -> Operation:
    """Build the operation at call time."""

    async def deferred(token: CancellationToken | None, *args: Any) -> Any:
        return await factory()(token, *args)

    return deferred


lazy = defer


# =============================================================================
# Pipe
# =============================================================================


def pipe(initial: Any, *fns: Callable[[Any], Any]) -> Any:
    """Compose left to right: ``pipe(op, f, g) == g(f(op))``."""
    return reduce(lambda acc, fn: fn(acc), fns, initial)


__all__ = [
    "all_",
    "backoff",
    "catch_error",
    "concat",
    "defer",
    "exponential_delay",
    "flat_map",
    "lazy",
    "map_",
    "map_error",
    "pipe",
    "race",
    "retry",
    "retry_when",
    "sequence",
    "tap",
    "tap_abort",
    "tap_error",
    "timeout",
    "timeout_abort",
    "timeout_with",
    "zip_",
]
