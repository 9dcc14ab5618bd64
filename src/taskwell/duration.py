"""Duration parsing utilities."""

import re

from taskwell.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> float:
    """Parse duration string to milliseconds. Passthrough if already numeric."""
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, (int, float)):
        if duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    ms = float(value) * _UNITS[unit]
    return int(ms) if ms.is_integer() else ms


def parse_optional_duration(duration: Duration | None) -> float | None:
    """Parse a duration, keeping None as "not configured"."""
    if duration is None:
        return None
    return parse_duration(duration)


def to_seconds(ms: float) -> float:
    """Convert milliseconds to the seconds asyncio expects."""
    return ms / 1000
