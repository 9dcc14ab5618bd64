"""taskwell - Latest-wins async tasks, caching and resilience combinators."""

# Cache engine
from taskwell.cache import Cache, CacheOptions, create_cache

# Cancellation
from taskwell.cancellation import CancellationSource, CancellationToken, sleep

# Combinators
from taskwell.combinators import (
    all_,
    backoff,
    catch_error,
    concat,
    defer,
    exponential_delay,
    flat_map,
    lazy,
    map_,
    map_error,
    pipe,
    race,
    retry,
    retry_when,
    sequence,
    tap,
    tap_abort,
    tap_error,
    timeout,
    timeout_abort,
    timeout_with,
    zip_,
)

# Duration parsing
from taskwell.duration import parse_duration

# Errors
from taskwell.errors import (
    AbortError,
    OperationError,
    TaskTimeoutError,
    TaskwellError,
    is_abort_error,
    to_error,
)

# Logging helpers
from taskwell.logger import log_cache, log_task, log_task_state

# Scheduling
from taskwell.scheduler import Poller, debounce, poll_task, queue, throttle

# Stores
from taskwell.stores import (
    CacheStore,
    EventedStore,
    FileCacheStore,
    KeyedStore,
    MemoryCacheStore,
    RedisCacheStore,
    TaggedStore,
)

# Task primitive
from taskwell.task import Task, TaskState

# Core types
from taskwell.types import (
    CacheEntry,
    CacheEvent,
    Duration,
    Operation,
    Tags,
    by_tags,
)

__version__ = "0.1.0"

__all__ = [
    "AbortError",
    "Cache",
    "CacheEntry",
    "CacheEvent",
    "CacheOptions",
    "CacheStore",
    "CancellationSource",
    "CancellationToken",
    "Duration",
    "EventedStore",
    "FileCacheStore",
    "KeyedStore",
    "MemoryCacheStore",
    "Operation",
    "OperationError",
    "Poller",
    "RedisCacheStore",
    "TaggedStore",
    "Tags",
    "Task",
    "TaskState",
    "TaskTimeoutError",
    "TaskwellError",
    "all_",
    "backoff",
    "by_tags",
    "catch_error",
    "concat",
    "create_cache",
    "debounce",
    "defer",
    "exponential_delay",
    "flat_map",
    "is_abort_error",
    "lazy",
    "log_cache",
    "log_task",
    "log_task_state",
    "map_",
    "map_error",
    "parse_duration",
    "pipe",
    "poll_task",
    "queue",
    "race",
    "retry",
    "retry_when",
    "sequence",
    "sleep",
    "tap",
    "tap_abort",
    "tap_error",
    "throttle",
    "timeout",
    "timeout_abort",
    "timeout_with",
    "to_error",
    "zip_",
]
