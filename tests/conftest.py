import os

import pytest

from jobctl.backends import DatabaseQueue, set_default_backend
from jobctl.storage import Storage


class FakeClock:
    """Simulated time. sleep() advances the clock instead of blocking."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def sleep(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def storage(db_path):
    return Storage(db_path)


@pytest.fixture
def backend(storage, clock):
    return DatabaseQueue(storage, clock=clock, stale_after=60)


@pytest.fixture(autouse=True)
def _reset_default_backend(monkeypatch, tmp_path):
    monkeypatch.setenv("JOBCTL_DB", str(tmp_path / "default.db"))
    set_default_backend(None)
    yield
    set_default_backend(None)


def redis_url():
    return os.environ.get("REDIS_URL", "")


def redis_available() -> bool:
    url = redis_url()
    if not url:
        return False
    try:
        import redis

        return bool(redis.Redis.from_url(url).ping())
    except Exception:
        return False


@pytest.fixture(autouse=True)
def _clear_events():
    import sample_jobs

    sample_jobs.EVENTS.clear()
    sample_jobs.ON_RUN.clear()
    yield
    sample_jobs.ON_RUN.clear()
