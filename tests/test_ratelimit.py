import threading

import pytest

from jobctl.cache import ArrayCache, DatabaseCache, RedisCache
from jobctl.errors import BackendUnavailableError, ConfigurationError
from jobctl.ratelimit import RateLimit, RateLimiter
from jobctl.storage import Storage

from sample_jobs import Reminder, Throttled


@pytest.fixture(params=['array', 'database'])
def limiter(request, storage, clock):
    if request.param == 'array':
        cache = ArrayCache(clock=clock)
    else:
        cache = DatabaseCache(storage, clock=clock)
    return RateLimiter(cache, clock=clock)


def test_fixed_window_admits_up_to_limit(limiter, clock):
    assert limiter.attempt('k', 2, 1) is True
    assert limiter.attempt('k', 2, 1) is True
    assert limiter.attempt('k', 2, 1) is False
    assert limiter.attempt('k', 2, 1) is False

    clock.advance(1)
    assert limiter.attempt('k', 2, 1) is True


def test_window_boundary_allows_burst(limiter, clock):
    # Windows are floor(now / window): 0.9s into one window, then just past the boundary
    clock.now = 1_000_000.9
    assert limiter.attempt('burst', 2, 1) is True
    assert limiter.attempt('burst', 2, 1) is True
    clock.now = 1_000_001.1
    assert limiter.attempt('burst', 2, 1) is True
    assert limiter.attempt('burst', 2, 1) is True
    assert limiter.attempt('burst', 2, 1) is False


def test_keys_have_separate_budgets(limiter):
    assert limiter.attempt('a', 1, 60) is True
    assert limiter.attempt('b', 1, 60) is True
    assert limiter.attempt('a', 1, 60) is False


def test_check_uses_job_type_as_default_key(limiter):
    assert limiter.check(Throttled()) is None
    assert limiter.check(Throttled()) is None

    denied = limiter.check(Throttled())
    assert denied.key == 'sample_jobs:Throttled'
    assert denied.limit == 2
    assert denied.window_seconds == 1


def test_check_uses_custom_key(limiter):
    assert limiter.check(Reminder({'user_id': 1})) is None
    assert limiter.check(Reminder({'user_id': 2})) is None

    denied = limiter.check(Reminder({'user_id': 1}))
    assert denied.key == 'reminder:user:1'
    assert denied.window_seconds == 3600


def test_database_cache_counter_expires(storage, clock):
    cache = DatabaseCache(storage, clock=clock)

    assert cache.increment('c', 10) == 1
    assert cache.increment('c', 10) == 2
    clock.advance(10)
    assert cache.increment('c', 10) == 1


def test_database_cache_increment_is_atomic(db_path):
    workers = 20
    barrier = threading.Barrier(workers)
    values = []
    lock = threading.Lock()

    def bump():
        cache = DatabaseCache(Storage(db_path))
        barrier.wait()
        value = cache.increment('shared', 60)
        with lock:
            values.append(value)

    threads = [threading.Thread(target=bump) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(values) == list(range(1, workers + 1))


def test_descriptor_units():
    assert RateLimit.from_descriptor({'limit': 3, 'seconds': 10}, 'k').window_seconds == 10
    assert RateLimit.from_descriptor({'limit': 3, 'minutes': 2}, 'k').window_seconds == 120
    assert RateLimit.from_descriptor({'limit': 3, 'hours': 1}, 'k').window_seconds == 3600
    assert RateLimit.from_descriptor({'limit': 3, 'days': 1}, 'k').window_seconds == 86400


def test_descriptor_key_defaults():
    assert RateLimit.from_descriptor({'limit': 1, 'seconds': 1}, 'job:Type').key == 'job:Type'
    assert RateLimit.from_descriptor({'limit': 1, 'seconds': 1, 'key': 'custom'}, 'job:Type').key == 'custom'


@pytest.mark.parametrize("descriptor", [
    {'limit': 5},
    {'limit': 5, 'seconds': 1, 'minutes': 1},
    {'limit': 0, 'seconds': 1},
    {'limit': '5', 'seconds': 1},
    {'seconds': 1},
    {'limit': 5, 'hours': 0},
    [5, 1],
])
def test_invalid_descriptors(descriptor):
    with pytest.raises(ConfigurationError):
        RateLimit.from_descriptor(descriptor, 'k')


def test_expired_database_counters_are_swept(storage, clock):
    limiter = RateLimiter(DatabaseCache(storage, clock=clock), clock=clock)

    for _ in range(500):
        assert limiter.attempt('sweep', 1, 1) is True
        clock.advance(1)

    with storage._get_connection() as conn:
        rows = conn.execute("SELECT COUNT(*) AS count FROM cache").fetchone()['count']
    assert rows == 1


def test_expired_array_counters_are_pruned(clock):
    cache = ArrayCache(clock=clock)
    limiter = RateLimiter(cache, clock=clock)

    for n in range(500):
        assert limiter.attempt(f'user:{n % 3}', 1, 1) is True
        clock.advance(1)

    assert len(cache._counters) == 1


def test_redis_cache_timeout_is_backend_unavailable():
    import redis

    class TimingOutClient:
        def register_script(self, script):
            def call(keys, args):
                raise redis.exceptions.TimeoutError("Timeout reading from socket")
            return call

    cache = RedisCache(TimingOutClient())

    with pytest.raises(BackendUnavailableError):
        cache.increment('hits', 60)
