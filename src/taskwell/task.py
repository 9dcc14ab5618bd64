"""Task - a stateful, cancellable async value holder.

A Task owns at most one active invocation. Every ``run`` starts a new
generation and fires the previous invocation's cancellation token; only the
invocation of the current generation may write state, so the latest run
always wins no matter in which order invocations settle.

``run`` resolves to the value on success and to ``None`` when the invocation
fails, is cancelled or is superseded. Failures are recorded on the state:

    task = Task(fetch_user)
    user = await task.run("123")
    if user is None:
        print(task.get_state().error)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

from taskwell.cancellation import CancellationSource
from taskwell.errors import PASSTHROUGH, TaskwellError, is_abort_error, to_error
from taskwell.listeners import Listeners
from taskwell.types import Operation

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class TaskState(Generic[T]):
    """Immutable snapshot of a task."""

    data: T | None = None
    error: Exception | None = None
    is_loading: bool = False
    is_stale: bool = True

    @classmethod
    def initial(cls) -> TaskState[Any]:
        """The stale-idle snapshot of a task that never ran."""
        return cls()


StateListener = Callable[[TaskState[T]], None]


class Task(Generic[T]):
    """Async primitive with reactive state and latest-run-wins semantics.

    The instance is the state identity: share the instance to share state.
    """

    def __init__(self, operation: Operation | None = None) -> None:
        self._operation = operation
        self._state: TaskState[T] = TaskState()
        self._listeners: Listeners[TaskState[T]] = Listeners(
            logger, "Task listener error"
        )
        self._source: CancellationSource | None = None
        self._generation = 0
        self._disposed = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def operation(self) -> Operation | None:
        return self._operation

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    async def run(self, *args: Any) -> T | None:
        """Execute the operation.

        Starts loading, clears ``error``, cancels any in-flight run and
        enforces latest-run-wins. Returns ``None`` on error, cancellation or
        when superseded.
        """
        if self._disposed:
            raise TaskwellError("Task is disposed")
        operation = self._operation
        if operation is None:
            raise TaskwellError("Task has no operation defined")

        # Nothing below may await before the new generation is in place
        self._generation += 1
        generation = self._generation
        if self._source is not None:
            self._source.cancel("superseded")
        source = CancellationSource()
        self._source = source
        self._update(is_loading=True, is_stale=False, error=None)

        try:
            data = await operation(source.token, *args)
        except asyncio.CancelledError:
            # The awaiting coroutine was cancelled from outside
            if generation == self._generation:
                self._source = None
                source.cancel("cancelled")
                if self._state.is_loading:
                    self._update(is_loading=False)
            raise
        except PASSTHROUGH:
            raise
        except BaseException as err:
            if generation != self._generation:
                return None
            self._source = None
            if is_abort_error(err):
                if self._state.is_loading:
                    self._update(is_loading=False)
                return None
            self._update(error=to_error(err), is_loading=False)
            return None

        if generation != self._generation:
            return None
        self._source = None
        self._set(TaskState(data=data, error=None, is_loading=False, is_stale=False))
        return data

    def get_state(self) -> TaskState[T]:
        """Return the current immutable snapshot."""
        return self._state

    def subscribe(self, listener: StateListener[T]) -> Callable[[], None]:
        """Subscribe to state changes.

        The listener receives the current state immediately and then every
        update. Returns an unsubscribe function.
        """
        if self._disposed:
            self._listeners.call(listener, self._state)
            return _noop
        remove = self._listeners.add(listener)
        self._listeners.call(listener, self._state)
        return remove

    def cancel(self) -> None:
        """Cancel the in-flight run, if any, and clear ``is_loading``."""
        if self._source is None:
            return
        self._abort("cancelled")
        if self._state.is_loading:
            self._update(is_loading=False)

    def fulfill(self, data: T) -> T:
        """Set data immediately, cancelling any in-flight run."""
        self._abort("fulfilled")
        self._set(TaskState(data=data, error=None, is_loading=False, is_stale=False))
        return data

    resolve_with = fulfill

    def reset(self) -> None:
        """Cancel any in-flight run and restore the initial stale state."""
        self._abort("reset")
        self._set(TaskState())

    def define(self, operation: Operation) -> Task[T]:
        """Replace the operation used by subsequent runs."""
        self._operation = operation
        return self

    def dispose(self) -> None:
        """Cancel outstanding work and drop every subscriber."""
        self.cancel()
        self._listeners.clear()
        self._disposed = True

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _abort(self, reason: str) -> None:
        self._generation += 1
        if self._source is not None:
            self._source.cancel(reason)
            self._source = None

    def _set(self, state: TaskState[T]) -> None:
        self._state = state
        self._listeners.notify(state)

    def _update(self, **changes: Any) -> None:
        # No snapshot when nothing changes, e.g. a run issued while loading
        if all(getattr(self._state, name) == value for name, value in changes.items()):
            return
        self._set(replace(self._state, **changes))

    def __repr__(self) -> str:
        state = self._state
        return (
            f"Task(generation={self._generation}, is_loading={state.is_loading}, "
            f"is_stale={state.is_stale}, error={state.error!r})"
        )


def _noop() -> None:
    pass
