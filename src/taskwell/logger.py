"""Logging helpers for operations, tasks and cache stores.

Records go through the standard ``logging`` module. Pass a logger to route
them; by default they land on ``taskwell.logger``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from functools import wraps
from typing import Any

from taskwell.cancellation import CancellationToken
from taskwell.errors import is_abort_error
from taskwell.stores.base import EventedStore
from taskwell.task import Task, TaskState
from taskwell.types import CacheEvent, Combinator, Operation

_default_logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def log_task(
    label: str = "task",
    logger: logging.Logger | None = None,
    clock: Clock | None = None,
) -> Combinator:
    """Log start, success, error and abort of each invocation.

    Success and failure records carry ``duration_ms`` in their ``extra``.
    Errors are re-raised unchanged.
    """
    log = logger or _default_logger
    now = clock or _monotonic_ms

    def combinator(operation: Operation) -> Operation:
        @wraps(operation)
        async def logged(token: CancellationToken | None, *args: Any) -> Any:
            start = now()
            log.info("%s start", label)
            try:
                result = await operation(token, *args)
            except Exception as err:
                duration = now() - start
                if is_abort_error(err):
                    log.debug("%s abort", label, extra={"duration_ms": duration})
                else:
                    log.error(
                        "%s error",
                        label,
                        exc_info=err,
                        extra={"duration_ms": duration},
                    )
                raise
            except BaseException as err:
                if is_abort_error(err):
                    log.debug("%s abort", label, extra={"duration_ms": now() - start})
                raise
            log.info("%s success", label, extra={"duration_ms": now() - start})
            return result

        return logged

    return combinator


def log_task_state(
    task: Task[Any],
    label: str = "task",
    logger: logging.Logger | None = None,
    clock: Clock | None = None,
) -> Callable[[], None]:
    """Log a task's lifecycle from its state transitions.

    A transition out of loading logs ``error`` when the new state carries an
    error, ``success`` when data changed and ``abort`` otherwise. Returns the
    unsubscribe function.
    """
    log = logger or _default_logger
    now = clock or _monotonic_ms
    last: TaskState[Any] | None = None
    started = 0.0

    def on_state(state: TaskState[Any]) -> None:
        nonlocal last, started
        previous, last = last, state
        if previous is None:
            return
        if not previous.is_loading and state.is_loading:
            started = now()
            log.info("%s start", label)
        elif previous.is_loading and not state.is_loading:
            extra = {"duration_ms": now() - started}
            if state.error is not None:
                log.error("%s error", label, exc_info=state.error, extra=extra)
            elif state.data is not previous.data:
                log.info("%s success", label, extra=extra)
            else:
                log.debug("%s abort", label, extra=extra)

    return task.subscribe(on_state)


def log_cache(
    store: Any,
    label: str = "cache",
    logger: logging.Logger | None = None,
) -> Callable[[], None]:
    """Log every event a store emits at DEBUG level.

    Stores without event support get a no-op unsubscribe.
    """
    log = logger or _default_logger
    if not isinstance(store, EventedStore):
        return _noop

    def on_event(event: CacheEvent) -> None:
        log.debug("%s %s", label, event.type, extra={"cache_key": event.key})

    return store.subscribe(on_event)


def _noop() -> None:
    pass


__all__ = ["log_cache", "log_task", "log_task_state"]
