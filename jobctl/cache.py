"""
Counter caches backing the rate limiter.

Every cache exposes one primitive, increment(key, ttl) -> int, which must be
atomic across every process sharing the cache.
"""
import threading
import time
from typing import Callable, Dict, Tuple

import redis

from jobctl.errors import BackendUnavailableError
from jobctl.storage import Storage

Clock = Callable[[], float]

# KEYS[1] = counter key, ARGV[1] = ttl in milliseconds
INCREMENT_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""


class Cache:
    """Interface for atomic expiring counters."""

    def increment(self, key: str, ttl: float) -> int:
        """
        Add one to `key` and return the new value.

        A key that does not exist (or has expired) starts from zero and
        expires `ttl` seconds after this first increment.
        """
        raise NotImplementedError


class ArrayCache(Cache):
    """In-process counters. Shared only by threads of one process."""

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}

    def increment(self, key: str, ttl: float) -> int:
        now = self.clock()
        with self._lock:
            self._prune(now)
            count, expires_at = self._counters.get(key, (0, now + ttl))
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]


class DatabaseCache(Cache):
    """Counters in the SQLite cache table, shared by every process using the file."""

    def __init__(self, storage: Storage, clock: Clock = time.time):
        self.storage = storage
        self.clock = clock

    def increment(self, key: str, ttl: float) -> int:
        return self.storage.increment_counter(key, ttl, self.clock())


class RedisCache(Cache):
    """Counters in Redis. INCR and the first-hit expiry run as one Lua script."""

    def __init__(self, client, prefix: str = "jobctl"):
        self.client = client
        self.prefix = prefix
        self._increment = client.register_script(INCREMENT_LUA)

    @classmethod
    def from_url(cls, url: str, prefix: str = "jobctl") -> "RedisCache":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    def increment(self, key: str, ttl: float) -> int:
        try:
            return int(self._increment(
                keys=[f"{self.prefix}:cache:{key}"],
                args=[max(1, int(ttl * 1000))],
            ))
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise BackendUnavailableError(f"Redis cache unavailable: {e}") from e
