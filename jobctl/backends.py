"""
Queue backends.

Every backend implements the same capability set:

    enqueue      store a dispatched job (or run/discard it for sync/null)
    claim_next   atomically reserve the next due job from an ordered list of queues
    release      return a reserved job to pending, consuming one attempt
    delete       remove a finished job (no-op if already gone)
    mark_failed  move a job with no attempts left to the failed-job store

plus the operator views used by the CLI (listing, counts, failed-job replay).
The backend is chosen once per process by build_backend().
"""
import time
from typing import Dict, List, Optional, Sequence

import click

from jobctl.models import JobRecord
from jobctl.storage import Storage
from jobctl.utils import Duration, parse_duration

DEFAULT_STALE_AFTER = 1800.0


class QueueBackend:
    """Base class for queue backends."""

    def __init__(self, clock=time.time, stale_after: Duration = DEFAULT_STALE_AFTER):
        self.clock = clock
        self.stale_after = parse_duration(stale_after)

    def now(self) -> float:
        return self.clock()

    def new_record(self, job, delay: float = 0) -> JobRecord:
        """Build the pending record for a freshly dispatched job."""
        now = self.now()
        return JobRecord(
            id=None,
            handler=job.handler(),
            queue=job.queue,
            payload=job.payload,
            attempts=0,
            max_attempts=max(1, int(job.max_attempts)),
            available_at=now + delay,
            created_at=now
        )

    def enqueue(self, job, delay: float = 0) -> Optional[int]:
        raise NotImplementedError

    def claim_next(self, queues: Sequence[str]) -> Optional[JobRecord]:
        """
        Reserve the next due job.

        Queues are checked in the order given; the earliest-due job of the
        first queue that has one is returned.
        """
        raise NotImplementedError

    def release(self, record: JobRecord, delay_until: float, count_attempt: bool = True) -> None:
        """
        Return a reserved job to pending, due at `delay_until`.

        A release normally consumes one attempt. count_attempt=False puts the
        job back untouched, for when the worker itself cannot go on.
        """
        raise NotImplementedError

    def delete(self, record: JobRecord) -> None:
        raise NotImplementedError

    def mark_failed(self, record: JobRecord, exception: str) -> None:
        raise NotImplementedError

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        return None

    def list_jobs(self, status: Optional[str] = None, queue: Optional[str] = None) -> List[JobRecord]:
        return []

    def counts(self) -> Dict[str, int]:
        return {'pending': 0, 'reserved': 0, 'failed': 0}

    def queue_counts(self) -> Dict[str, int]:
        """Waiting (pending or reserved) jobs per queue name."""
        counts: Dict[str, int] = {}
        for record in self.list_jobs():
            counts[record.queue] = counts.get(record.queue, 0) + 1
        return counts

    def list_failed(self) -> List[JobRecord]:
        return []

    def retry_failed(self, job_id: int) -> bool:
        return False

    def forget_failed(self, job_id: int) -> bool:
        return False

    def flush_failed(self) -> int:
        return 0


class DatabaseQueue(QueueBackend):
    """Jobs stored as rows in SQLite; see Storage.claim_next_job for claim arbitration."""

    name = 'database'

    def __init__(self, storage: Storage, clock=time.time, stale_after: Duration = DEFAULT_STALE_AFTER):
        super().__init__(clock=clock, stale_after=stale_after)
        self.storage = storage

    def enqueue(self, job, delay: float = 0) -> int:
        record = self.new_record(job, delay)
        return self.storage.create_job(record.to_dict())

    def claim_next(self, queues: Sequence[str]) -> Optional[JobRecord]:
        now = self.now()
        stale_before = now - self.stale_after

        for queue in queues:
            row = self.storage.claim_next_job(queue, now, stale_before)
            if row:
                return JobRecord.from_dict(row)
        return None

    def release(self, record: JobRecord, delay_until: float, count_attempt: bool = True) -> None:
        self.storage.release_job(record.id, delay_until, count_attempt=count_attempt)

    def delete(self, record: JobRecord) -> None:
        self.storage.delete_job(record.id)

    def mark_failed(self, record: JobRecord, exception: str) -> None:
        self.storage.fail_job(record.id, exception, self.now())

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        row = self.storage.get_job(job_id)
        return JobRecord.from_dict(row) if row else None

    def list_jobs(self, status: Optional[str] = None, queue: Optional[str] = None) -> List[JobRecord]:
        return [JobRecord.from_dict(row) for row in self.storage.list_jobs(status=status, queue=queue)]

    def counts(self) -> Dict[str, int]:
        return self.storage.get_job_counts()

    def queue_counts(self) -> Dict[str, int]:
        return self.storage.get_queue_counts()

    def list_failed(self) -> List[JobRecord]:
        return [JobRecord.from_dict(row) for row in self.storage.list_failed_jobs()]

    def retry_failed(self, job_id: int) -> bool:
        return self.storage.retry_failed_job(job_id, self.now())

    def forget_failed(self, job_id: int) -> bool:
        return self.storage.delete_failed_job(job_id)

    def flush_failed(self) -> int:
        return self.storage.flush_failed_jobs()


class SyncQueue(QueueBackend):
    """
    Runs jobs inline on dispatch. Nothing is stored and no worker is involved.

    Hooks fire as they would under a worker; an exception from run() is
    re-raised to the dispatcher after on_failure().
    """

    name = 'sync'

    def enqueue(self, job, delay: float = 0) -> None:
        try:
            job.run()
        except Exception as e:
            self.call_hook(job, 'on_failure', e)
            raise
        self.call_hook(job, 'on_success')
        return None

    def call_hook(self, job, name: str, *args) -> None:
        try:
            getattr(job, name)(*args)
        except Exception as e:
            click.echo(f"  ! {name} hook for {job!r} raised {type(e).__name__}: {e}", err=True)

    def claim_next(self, queues: Sequence[str]) -> Optional[JobRecord]:
        return None

    def release(self, record: JobRecord, delay_until: float, count_attempt: bool = True) -> None:
        pass

    def delete(self, record: JobRecord) -> None:
        pass

    def mark_failed(self, record: JobRecord, exception: str) -> None:
        pass


class NullQueue(QueueBackend):
    """Discards every dispatched job."""

    name = 'null'

    def enqueue(self, job, delay: float = 0) -> None:
        return None

    def claim_next(self, queues: Sequence[str]) -> Optional[JobRecord]:
        return None

    def release(self, record: JobRecord, delay_until: float, count_attempt: bool = True) -> None:
        pass

    def delete(self, record: JobRecord) -> None:
        pass

    def mark_failed(self, record: JobRecord, exception: str) -> None:
        pass


BACKENDS = ('database', 'redis', 'sync', 'null')


def build_backend(settings, storage: Optional[Storage] = None, clock=time.time) -> QueueBackend:
    """
    Construct the backend named by settings.backend.

    Args:
        settings: jobctl.config.Settings
        storage: Storage for the database backend (opened from settings.db_path if omitted)
        clock: Time source, injectable for tests
    """
    from jobctl.errors import ConfigurationError

    if settings.backend == 'database':
        storage = storage or Storage(settings.db_path)
        return DatabaseQueue(storage, clock=clock, stale_after=settings.stale_after)

    if settings.backend == 'redis':
        from jobctl.redis_queue import RedisQueue
        return RedisQueue.from_url(
            settings.redis_url,
            prefix=settings.redis_prefix,
            clock=clock,
            stale_after=settings.stale_after
        )

    if settings.backend == 'sync':
        return SyncQueue(clock=clock)

    if settings.backend == 'null':
        return NullQueue(clock=clock)

    raise ConfigurationError(
        f"Unknown queue backend {settings.backend!r}; expected one of {', '.join(BACKENDS)}"
    )


_default_backend: Optional[QueueBackend] = None


def set_default_backend(backend: Optional[QueueBackend]) -> None:
    """Set the backend Job.dispatch() uses when none is passed (None resets it)."""
    global _default_backend
    _default_backend = backend


def get_default_backend() -> QueueBackend:
    """Return the default backend, building it from stored configuration on first use."""
    global _default_backend
    if _default_backend is None:
        from jobctl.config import load_settings
        settings = load_settings()
        _default_backend = build_backend(settings)
    return _default_backend
