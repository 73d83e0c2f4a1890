"""Redis backend tests. Set REDIS_URL to a disposable server to run them."""
import threading
import uuid

import pytest

from conftest import redis_available, redis_url
from jobctl.cache import RedisCache
from jobctl.ratelimit import RateLimiter
from jobctl.redis_queue import RedisQueue
from jobctl.worker import Worker

from sample_jobs import AlwaysFails, SendMail, Throttled

pytestmark = pytest.mark.skipif(not redis_available(), reason="REDIS_URL not set or Redis unreachable")


@pytest.fixture
def client():
    import redis

    conn = redis.Redis.from_url(redis_url(), decode_responses=True)
    yield conn
    conn.close()


@pytest.fixture
def prefix(client):
    name = f"jobctl-test-{uuid.uuid4().hex[:8]}"
    yield name
    for key in client.scan_iter(f"{name}:*"):
        client.delete(key)


@pytest.fixture
def queue(client, prefix, clock):
    return RedisQueue(client, prefix=prefix, clock=clock, stale_after=60)


def test_enqueue_and_claim(queue):
    job_id = SendMail().dispatch({'to': 'a@b.com'}, backend=queue)

    record = queue.claim_next(['default'])

    assert record.id == job_id
    assert record.status == 'reserved'
    assert record.payload == {'to': 'a@b.com'}
    assert queue.claim_next(['default']) is None
    assert queue.counts() == {'pending': 0, 'reserved': 1, 'failed': 0}


def test_delayed_job_is_invisible_until_due(queue, clock):
    SendMail().delay(30).dispatch(backend=queue)

    assert queue.claim_next(['default']) is None
    clock.advance(30)
    assert queue.claim_next(['default']) is not None


def test_queue_priority(queue):
    SendMail({'to': 'low'}).dispatch(backend=queue)
    job = SendMail({'to': 'high'})
    job.queue = 'high'
    job.dispatch(backend=queue)

    assert queue.claim_next(['high', 'default']).payload == {'to': 'high'}
    assert queue.claim_next(['high', 'default']).payload == {'to': 'low'}


def test_release_and_stale_reclaim(queue, clock):
    job_id = SendMail().dispatch(backend=queue)
    record = queue.claim_next(['default'])

    queue.release(record, clock.now + 5)
    released = queue.get_job(job_id)
    assert released.status == 'pending'
    assert released.attempts == 1
    assert queue.claim_next(['default']) is None

    clock.advance(5)
    assert queue.claim_next(['default']).id == job_id

    clock.advance(61)
    assert queue.claim_next(['default']).id == job_id


def test_release_without_counting_an_attempt(queue, clock):
    job_id = SendMail().dispatch(backend=queue)
    record = queue.claim_next(['default'])

    queue.release(record, clock.now, count_attempt=False)

    assert queue.get_job(job_id).attempts == 0
    assert queue.claim_next(['default']).id == job_id


def test_fail_retry_forget(queue):
    first = SendMail().dispatch(backend=queue)
    second = SendMail().dispatch(backend=queue)

    for _ in range(2):
        queue.mark_failed(queue.claim_next(['default']), "gave up")

    failed = queue.list_failed()
    assert [r.id for r in failed] == [first, second]
    assert failed[0].attempts == 1
    assert failed[0].exception == "gave up"

    assert queue.retry_failed(first) is True
    assert queue.retry_failed(first) is False
    retried = queue.get_job(first)
    assert retried.attempts == 0
    assert retried.status == 'pending'

    assert queue.forget_failed(second) is True
    assert queue.flush_failed() == 0
    assert queue.counts() == {'pending': 1, 'reserved': 0, 'failed': 0}


def test_delete_is_idempotent(queue):
    SendMail().dispatch(backend=queue)
    record = queue.claim_next(['default'])

    queue.delete(record)
    queue.delete(record)

    assert queue.get_job(record.id) is None


def test_concurrent_claims_are_exclusive(client, prefix, clock):
    queue = RedisQueue(client, prefix=prefix, clock=clock)
    for n in range(20):
        SendMail({'n': n}).dispatch(backend=queue)

    claimed = []
    lock = threading.Lock()

    def drain():
        while True:
            record = queue.claim_next(['default'])
            if record is None:
                return
            with lock:
                claimed.append(record.id)

    threads = [threading.Thread(target=drain) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(claimed) == list(range(1, 21))


def test_worker_over_redis(queue, client, prefix, clock):
    AlwaysFails().dispatch(backend=queue)
    for n in range(3):
        Throttled({'n': n}).dispatch(backend=queue)
    limiter = RateLimiter(RedisCache(client, prefix=prefix), clock=clock)
    worker = Worker(queue, rate_limiter=limiter, clock=clock, sleep=clock.sleep)

    while worker.work_once():
        pass

    assert len(queue.list_failed()) == 1
    assert worker.stats['rate_limited'] == 1
    assert queue.counts()['pending'] == 1


def test_redis_cache_increment(client, prefix):
    cache = RedisCache(client, prefix=prefix)

    assert [cache.increment('hits', 60) for _ in range(3)] == [1, 2, 3]
    assert 0 < client.pttl(f"{prefix}:cache:hits") <= 60_000
