"""
Fixed-window rate limiting for jobs.

Counts are kept per key and per window, where the window is
floor(now / window_seconds). Counts therefore reset on fixed boundaries, so
up to 2 * limit admissions can happen around a boundary.
"""
import math
import time
from typing import Any, Dict, Optional

from jobctl.cache import Cache, Clock
from jobctl.errors import ConfigurationError

UNIT_SECONDS = {
    'seconds': 1,
    'minutes': 60,
    'hours': 3600,
    'days': 86400,
}


class RateLimit:
    """A parsed rate limit: at most `limit` admissions per `window_seconds` for `key`."""

    def __init__(self, limit: int, window_seconds: float, key: str):
        self.limit = limit
        self.window_seconds = window_seconds
        self.key = key

    @classmethod
    def from_descriptor(cls, descriptor: Dict[str, Any], default_key: str) -> "RateLimit":
        """
        Build a RateLimit from a job's rate_limit() dict.

        Args:
            descriptor: e.g. {'limit': 5, 'minutes': 1, 'key': 'reminder:user:7'}
            default_key: Key used when the descriptor has none

        Raises:
            ConfigurationError: missing/invalid limit, or not exactly one time unit
        """
        if not isinstance(descriptor, dict):
            raise ConfigurationError(f"Rate limit must be a dict, got {type(descriptor).__name__}")

        limit = descriptor.get('limit')
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ConfigurationError(f"Rate limit 'limit' must be a positive integer, got {limit!r}")

        units = [unit for unit in UNIT_SECONDS if unit in descriptor]
        if not units:
            raise ConfigurationError(
                f"Rate limit for {default_key} needs a time unit: one of {', '.join(UNIT_SECONDS)}"
            )
        if len(units) > 1:
            raise ConfigurationError(
                f"Rate limit for {default_key} has several time units ({', '.join(units)}); use exactly one"
            )

        unit = units[0]
        amount = descriptor[unit]
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
            raise ConfigurationError(f"Rate limit '{unit}' must be a positive number, got {amount!r}")

        key = descriptor.get('key') or default_key
        return cls(limit=limit, window_seconds=float(amount * UNIT_SECONDS[unit]), key=str(key))

    def __repr__(self):
        return f"RateLimit(limit={self.limit}, window_seconds={self.window_seconds}, key={self.key!r})"


class RateLimiter:
    """Admission control shared by every worker that uses the same cache."""

    def __init__(self, cache: Cache, clock: Clock = time.time):
        self.cache = cache
        self.clock = clock

    def attempt(self, key: str, limit: int, window_seconds: float) -> bool:
        """
        Count one admission for `key` in the current window.

        Returns:
            True if the count after incrementing is within `limit`
        """
        window = math.floor(self.clock() / window_seconds)
        count = self.cache.increment(f"ratelimit:{key}:{window}", window_seconds)
        return count <= limit

    def check(self, job) -> Optional[RateLimit]:
        """
        Evaluate a job's rate limit.

        Returns:
            None if the job is admitted (or has no limit), otherwise the
            RateLimit that denied it
        """
        descriptor = job.rate_limit()
        if descriptor is None:
            return None

        limit = RateLimit.from_descriptor(descriptor, default_key=job.handler())
        if self.attempt(limit.key, limit.limit, limit.window_seconds):
            return None
        return limit
