"""
Small helpers shared across jobctl: durations, timestamps and handler names.
"""
import importlib
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from jobctl.errors import JobResolutionError

Duration = Union[int, float, str, timedelta, None]

# e.g. "20s", "5m", "1h30m", "2d3h", "90m"
COMPACT_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

# e.g. "30 seconds", "+1 hour", "2 days", "1 minute"
PHRASE_RE = re.compile(r"(?i)^\s*\+?\s*(\d+(?:\.\d+)?)\s*(second|minute|hour|day|week)s?\s*$")

UNIT_SECONDS = {
    'second': 1,
    'minute': 60,
    'hour': 3600,
    'day': 86400,
    'week': 604800,
}


def parse_duration(value: Duration) -> float:
    """
    Convert a duration into seconds.

    Accepts numbers (already seconds), timedelta objects, numeric strings,
    compact strings like '1h30m' and phrases like '30 seconds' or '+1 hour'.
    None means zero.

    Raises:
        ValueError: if the value cannot be parsed or is negative

    Example:
        parse_duration(10)            -> 10.0
        parse_duration('5m')          -> 300.0
        parse_duration('+2 hours')    -> 7200.0
    """
    if value is None:
        return 0.0

    if isinstance(value, timedelta):
        seconds = value.total_seconds()
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    elif isinstance(value, str):
        seconds = _parse_duration_string(value)
    else:
        raise ValueError(f"Unsupported duration type: {type(value).__name__}")

    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


def _parse_duration_string(text: str) -> float:
    stripped = text.strip()
    if not stripped:
        raise ValueError("Duration string is empty")

    try:
        return float(stripped)
    except ValueError:
        pass

    phrase = PHRASE_RE.match(stripped)
    if phrase:
        amount, unit = phrase.groups()
        return float(amount) * UNIT_SECONDS[unit.lower()]

    compact = COMPACT_RE.match(stripped)
    if compact and any(compact.groups()):
        d, h, m, s = (int(part) if part else 0 for part in compact.groups())
        return float(d * 86400 + h * 3600 + m * 60 + s)

    raise ValueError(f"Invalid duration format: {text!r}")


def format_timestamp(ts: Optional[float]) -> str:
    """Render an epoch timestamp as a UTC ISO-8601 string ('-' for None)."""
    if ts is None:
        return '-'
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec='seconds')


def handler_name(cls: type) -> str:
    """Return the 'module:QualName' string used to persist a job type."""
    return f"{cls.__module__}:{cls.__qualname__}"


def resolve_handler(name: str) -> type:
    """
    Import a job class from its 'module:QualName' handler string.

    Raises:
        JobResolutionError: if the module or attribute cannot be found
    """
    module_name, sep, qualname = name.partition(':')
    if not sep or not module_name or not qualname:
        raise JobResolutionError(f"Invalid handler name: {name!r}")

    try:
        target = importlib.import_module(module_name)
    except ImportError as e:
        raise JobResolutionError(f"Cannot import module {module_name!r}: {e}") from e

    for attr in qualname.split('.'):
        try:
            target = getattr(target, attr)
        except AttributeError as e:
            raise JobResolutionError(f"{module_name!r} has no attribute {qualname!r}") from e

    if not isinstance(target, type):
        raise JobResolutionError(f"Handler {name!r} is not a class")
    return target
