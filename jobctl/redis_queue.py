"""
Redis queue backend.

Key layout (prefix defaults to 'jobctl'):

    {prefix}:ids                     job id counter
    {prefix}:queues                  set of queue names ever used
    {prefix}:job:{id}                hash with the job record
    {prefix}:queue:{name}            sorted set of pending ids scored by available_at
    {prefix}:queue:{name}:reserved   sorted set of reserved ids scored by reserved_at
    {prefix}:failed                  sorted set of failed ids scored by failed_at
    {prefix}:failed:{id}             hash with the failed record

Claiming runs as one Lua script per queue, so a due job is popped by exactly
one worker and delayed jobs stay invisible until their score is reached.
"""
import time
from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence

import redis

from jobctl.backends import DEFAULT_STALE_AFTER, QueueBackend
from jobctl.errors import BackendUnavailableError
from jobctl.models import FAILED, PENDING, RESERVED, JobRecord
from jobctl.utils import Duration

# KEYS[1]=pending zset, KEYS[2]=reserved zset
# ARGV[1]=now, ARGV[2]=stale_before, ARGV[3]=job hash key prefix
CLAIM_LUA = """
local stale = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[2])
for _, id in ipairs(stale) do
  local job = ARGV[3] .. id
  redis.call('ZREM', KEYS[2], id)
  if redis.call('EXISTS', job) == 1 then
    local due = redis.call('HGET', job, 'available_at') or ARGV[1]
    redis.call('HSET', job, 'status', 'pending', 'reserved_at', '')
    redis.call('ZADD', KEYS[1], due, id)
  end
end
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #ids == 0 then
  return false
end
local id = ids[1]
redis.call('ZREM', KEYS[1], id)
redis.call('ZADD', KEYS[2], ARGV[1], id)
redis.call('HSET', ARGV[3] .. id, 'status', 'reserved', 'reserved_at', ARGV[1])
return id
"""

# KEYS[1]=job hash, KEYS[2]=reserved zset, KEYS[3]=pending zset
# ARGV[1]=id, ARGV[2]=available_at, ARGV[3]=attempts to add (1 or 0)
RELEASE_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HINCRBY', KEYS[1], 'attempts', ARGV[3])
redis.call('HSET', KEYS[1], 'status', 'pending', 'available_at', ARGV[2], 'reserved_at', '')
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
return 1
"""

# KEYS[1]=job hash, KEYS[2]=failed hash, KEYS[3]=reserved zset,
# KEYS[4]=pending zset, KEYS[5]=failed zset
# ARGV[1]=id, ARGV[2]=exception, ARGV[3]=failed_at
FAIL_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
local fields = redis.call('HGETALL', KEYS[1])
redis.call('DEL', KEYS[2])
redis.call('HSET', KEYS[2], unpack(fields))
redis.call('HINCRBY', KEYS[2], 'attempts', 1)
redis.call('HSET', KEYS[2], 'status', 'failed', 'exception', ARGV[2], 'failed_at', ARGV[3])
redis.call('DEL', KEYS[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('ZADD', KEYS[5], ARGV[3], ARGV[1])
return 1
"""

# KEYS[1]=failed hash, KEYS[2]=job hash, KEYS[3]=pending zset, KEYS[4]=failed zset
# ARGV[1]=id, ARGV[2]=now
RETRY_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
local fields = redis.call('HGETALL', KEYS[1])
redis.call('HSET', KEYS[2], unpack(fields))
redis.call('HDEL', KEYS[2], 'exception', 'failed_at')
redis.call('HSET', KEYS[2], 'status', 'pending', 'attempts', 0, 'available_at', ARGV[2], 'reserved_at', '')
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('DEL', KEYS[1])
return 1
"""


def _hash_fields(record: JobRecord) -> Dict[str, object]:
    """Redis hashes cannot hold None, so empty strings stand in for it."""
    return {key: ('' if value is None else value) for key, value in record.to_dict().items()}


class RedisQueue(QueueBackend):
    """Jobs stored in Redis sorted sets scored by availability time."""

    name = 'redis'

    def __init__(self, client, prefix: str = "jobctl", clock=time.time, stale_after: Duration = DEFAULT_STALE_AFTER):
        super().__init__(clock=clock, stale_after=stale_after)
        self.client = client
        self.prefix = prefix.strip(':') or 'jobctl'
        self._claim = client.register_script(CLAIM_LUA)
        self._release = client.register_script(RELEASE_LUA)
        self._fail = client.register_script(FAIL_LUA)
        self._retry = client.register_script(RETRY_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _job_key(self, job_id) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _failed_key(self, job_id) -> str:
        return f"{self.prefix}:failed:{job_id}"

    def _pending_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}"

    def _reserved_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}:reserved"

    @property
    def _failed_set(self) -> str:
        return f"{self.prefix}:failed"

    @property
    def _queues_set(self) -> str:
        return f"{self.prefix}:queues"

    @contextmanager
    def _guard(self):
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise BackendUnavailableError(f"Redis unavailable: {e}") from e

    def enqueue(self, job, delay: float = 0) -> int:
        record = self.new_record(job, delay)

        with self._guard():
            record.id = int(self.client.incr(f"{self.prefix}:ids"))
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(self._job_key(record.id), mapping=_hash_fields(record))
            pipe.zadd(self._pending_key(record.queue), {str(record.id): record.available_at})
            pipe.sadd(self._queues_set, record.queue)
            pipe.execute()

        return record.id

    def claim_next(self, queues: Sequence[str]) -> Optional[JobRecord]:
        now = self.now()
        stale_before = now - self.stale_after

        with self._guard():
            for queue in queues:
                job_id = self._claim(
                    keys=[self._pending_key(queue), self._reserved_key(queue)],
                    args=[now, stale_before, f"{self.prefix}:job:"],
                )
                if not job_id:
                    continue

                data = self.client.hgetall(self._job_key(job_id))
                if data:
                    return JobRecord.from_dict(data)

        return None

    def release(self, record: JobRecord, delay_until: float, count_attempt: bool = True) -> None:
        with self._guard():
            self._release(
                keys=[self._job_key(record.id), self._reserved_key(record.queue), self._pending_key(record.queue)],
                args=[record.id, delay_until, 1 if count_attempt else 0],
            )

    def delete(self, record: JobRecord) -> None:
        with self._guard():
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(self._job_key(record.id))
            pipe.zrem(self._reserved_key(record.queue), str(record.id))
            pipe.zrem(self._pending_key(record.queue), str(record.id))
            pipe.execute()

    def mark_failed(self, record: JobRecord, exception: str) -> None:
        with self._guard():
            self._fail(
                keys=[
                    self._job_key(record.id),
                    self._failed_key(record.id),
                    self._reserved_key(record.queue),
                    self._pending_key(record.queue),
                    self._failed_set,
                ],
                args=[record.id, exception, self.now()],
            )

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        with self._guard():
            data = self.client.hgetall(self._job_key(job_id))
        return JobRecord.from_dict(data) if data else None

    def _queue_names(self) -> List[str]:
        return sorted(self.client.smembers(self._queues_set))

    def list_jobs(self, status: Optional[str] = None, queue: Optional[str] = None) -> List[JobRecord]:
        records: List[JobRecord] = []

        with self._guard():
            names = [queue] if queue else self._queue_names()
            for name in names:
                ids: List[str] = []
                if status in (None, PENDING):
                    ids.extend(self.client.zrange(self._pending_key(name), 0, -1))
                if status in (None, RESERVED):
                    ids.extend(self.client.zrange(self._reserved_key(name), 0, -1))
                for job_id in ids:
                    data = self.client.hgetall(self._job_key(job_id))
                    if data:
                        records.append(JobRecord.from_dict(data))

        records.sort(key=lambda r: (r.available_at, r.id))
        return records

    def counts(self) -> Dict[str, int]:
        counts = {PENDING: 0, RESERVED: 0, FAILED: 0}

        with self._guard():
            for name in self._queue_names():
                counts[PENDING] += self.client.zcard(self._pending_key(name))
                counts[RESERVED] += self.client.zcard(self._reserved_key(name))
            counts[FAILED] = self.client.zcard(self._failed_set)

        return counts

    def list_failed(self) -> List[JobRecord]:
        records = []
        with self._guard():
            for job_id in self.client.zrange(self._failed_set, 0, -1):
                data = self.client.hgetall(self._failed_key(job_id))
                if data:
                    records.append(JobRecord.from_dict(data))
        return records

    def retry_failed(self, job_id: int) -> bool:
        with self._guard():
            queue = self.client.hget(self._failed_key(job_id), 'queue')
            if not queue:
                return False
            moved = self._retry(
                keys=[self._failed_key(job_id), self._job_key(job_id), self._pending_key(queue), self._failed_set],
                args=[job_id, self.now()],
            )
            self.client.sadd(self._queues_set, queue)
        return bool(moved)

    def forget_failed(self, job_id: int) -> bool:
        with self._guard():
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(self._failed_key(job_id))
            pipe.zrem(self._failed_set, str(job_id))
            deleted, _ = pipe.execute()
        return bool(deleted)

    def flush_failed(self) -> int:
        with self._guard():
            ids = self.client.zrange(self._failed_set, 0, -1)
            if not ids:
                return 0
            pipe = self.client.pipeline(transaction=True)
            for job_id in ids:
                pipe.delete(self._failed_key(job_id))
            pipe.delete(self._failed_set)
            pipe.execute()
        return len(ids)
