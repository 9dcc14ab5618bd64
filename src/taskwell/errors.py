"""Failure kinds shared by tasks, caches and combinators."""

import asyncio

# Signals that must never be captured into task state
PASSTHROUGH = (KeyboardInterrupt, SystemExit, GeneratorExit)


class TaskwellError(Exception):
    """Base class for taskwell errors."""


class AbortError(TaskwellError):
    """Raised when an invocation is superseded or explicitly cancelled."""

    def __init__(self, message: str = "Aborted") -> None:
        super().__init__(message)


class TaskTimeoutError(TaskwellError, TimeoutError):
    """Raised by the timeout combinators when a deadline passes."""

    def __init__(self, timeout: float | None = None, message: str = "Timeout") -> None:
        super().__init__(message)
        self.timeout = timeout


class OperationError(TaskwellError):
    """Wraps a raised value that is not an Exception."""

    def __init__(self, value: object) -> None:
        super().__init__(str(value))
        self.value = value


def is_abort_error(err: BaseException | None) -> bool:
    """Check whether a failure means "cancelled" rather than "failed"."""
    return isinstance(err, (AbortError, asyncio.CancelledError))


def to_error(value: object) -> Exception:
    """Normalize anything raised or returned as an error into an Exception."""
    if isinstance(value, Exception):
        return value
    error = OperationError(value)
    if isinstance(value, BaseException):
        error.__cause__ = value
    return error
