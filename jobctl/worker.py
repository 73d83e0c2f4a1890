"""
Worker process logic for executing jobs from the queue.
"""
import os
import signal
import socket
import time
import traceback
from typing import Optional, Sequence

import click

from jobctl.backends import QueueBackend
from jobctl.errors import BackendUnavailableError, ConfigurationError, JobResolutionError
from jobctl.models import JobRecord
from jobctl.ratelimit import RateLimit, RateLimiter
from jobctl.utils import parse_duration, resolve_handler


class Worker:
    """
    Worker that processes jobs from one or more queues.

    The worker polls the backend for due jobs, checks the job's rate limit,
    runs it, and then deletes, retries or fails it. One worker runs one job
    at a time; run more processes for parallelism.

    Shutdown (signal or request_shutdown()) and cooldown are only checked
    between jobs, so a running job is never interrupted.
    """

    def __init__(
        self,
        backend: QueueBackend,
        queues: Sequence[str] = ("default",),
        poll_interval: float = 5.0,
        cooldown: float = 0.0,
        rate_limiter: Optional[RateLimiter] = None,
        worker_id: Optional[str] = None,
        clock=time.time,
        sleep=time.sleep
    ):
        """
        Initialize the worker.

        Args:
            backend: Queue backend to claim jobs from
            queues: Queue names in priority order (first listed is drained first)
            poll_interval: Seconds to sleep after an empty poll
            cooldown: Seconds of runtime before the worker exits for a restart (0 = unbounded)
            rate_limiter: Admission control for jobs that declare rate_limit()
            worker_id: Name used in output (default: host-pid)
            clock: Time source, injectable for tests
            sleep: Sleep function, injectable for tests
        """
        if not queues:
            raise ConfigurationError("Worker needs at least one queue")

        self.backend = backend
        self.queues = list(queues)
        self.poll_interval = poll_interval
        self.cooldown = cooldown
        self.rate_limiter = rate_limiter
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.clock = clock
        self.sleep = sleep

        self.shutdown_requested = False
        self.started_at: Optional[float] = None
        self.stats = {
            'claimed': 0,
            'succeeded': 0,
            'retried': 0,
            'failed': 0,
            'rate_limited': 0,
        }

    def cooldown_elapsed(self) -> bool:
        if not self.cooldown or self.started_at is None:
            return False
        return self.clock() - self.started_at >= self.cooldown

    def should_stop(self) -> bool:
        return self.shutdown_requested or self.cooldown_elapsed()

    def run(self) -> int:
        """
        Main worker loop.

        Returns:
            Exit status 0 after a graceful stop (signal or cooldown)

        Raises:
            BackendUnavailableError: the backend cannot be reached
            ConfigurationError: a job is misconfigured (e.g. rate limit without a unit)
        """
        previous_handlers = self.install_signal_handlers()
        self.started_at = self.clock()

        click.echo(f"Worker {self.worker_id} started on queue(s): {', '.join(self.queues)}")

        try:
            while not self.should_stop():
                try:
                    if not self.work_once():
                        self.sleep(self.poll_interval)
                except (BackendUnavailableError, ConfigurationError):
                    raise
                except Exception as e:
                    # Bugs outside a job body: report and keep polling
                    click.echo(f"ERROR: Unexpected error in worker loop: {e}", err=True)
                    self.sleep(self.poll_interval)
        finally:
            self.restore_signal_handlers(previous_handlers)

        reason = "shutdown requested" if self.shutdown_requested else "cooldown elapsed"
        click.echo(
            f"Worker {self.worker_id} stopped ({reason}). "
            f"claimed={self.stats['claimed']} succeeded={self.stats['succeeded']} "
            f"retried={self.stats['retried']} failed={self.stats['failed']}"
        )
        return 0

    def work_once(self) -> bool:
        """
        Claim and resolve at most one job.

        Returns:
            True if a job was claimed, False if nothing was due
        """
        record = self.backend.claim_next(self.queues)
        if record is None:
            return False

        self.stats['claimed'] += 1
        click.echo(f"→ [{self.worker_id}] Claimed job {record.id} ({record.handler}) from '{record.queue}'")

        try:
            job_class = resolve_handler(record.handler)
        except JobResolutionError as e:
            # No class means nothing to retry
            self.backend.mark_failed(record, str(e))
            self.stats['failed'] += 1
            click.echo(f"✗ [{self.worker_id}] Job {record.id} failed: {e}", err=True)
            return True

        try:
            job = self.build_job(job_class, record)
        except BackendUnavailableError:
            raise
        except ConfigurationError:
            self.backend.release(record, self.clock(), count_attempt=False)
            raise
        except Exception as e:
            # The payload was rejected; without an instance there are no hooks
            reason = f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
            click.echo(f"✗ [{self.worker_id}] Job {record.id} could not be built: {type(e).__name__}: {e}", err=True)
            self.handle_failure(None, record, reason, retry_delay=parse_duration(getattr(job_class, 'retry_after', 0)), error=e)
            return True

        if not self.admit(job, record):
            return True

        self.execute(job, record)
        return True

    def build_job(self, job_class, record: JobRecord):
        job = job_class(record.payload)
        job.record = record
        return job

    def check_rate_limit(self, job) -> Optional[RateLimit]:
        if job.rate_limit() is None:
            return None
        if self.rate_limiter is None:
            raise ConfigurationError(
                f"{job.handler()} declares a rate limit but no rate limit cache is configured"
            )
        return self.rate_limiter.check(job)

    def admit(self, job, record: JobRecord) -> bool:
        """
        Apply the job's rate limit.

        A denied job is not run. It is handled like a failed attempt: it is
        released for one window later while attempts remain, otherwise it
        fails permanently. An error raised by the job's rate_limit() is a
        failed attempt too. A misconfigured limit puts the job back without
        consuming an attempt and stops the worker.
        """
        try:
            denied = self.check_rate_limit(job)
        except BackendUnavailableError:
            raise
        except ConfigurationError:
            self.backend.release(record, self.clock(), count_attempt=False)
            raise
        except Exception as e:
            reason = f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
            click.echo(f"✗ [{self.worker_id}] Job {record.id} rate_limit() raised {type(e).__name__}: {e}", err=True)
            self.handle_failure(job, record, reason, retry_delay=job.retry_after_seconds(), error=e)
            return False

        if denied is None:
            return True

        self.stats['rate_limited'] += 1
        reason = f"rate limited: {denied.limit} per {denied.window_seconds:g}s for '{denied.key}'"
        self.handle_failure(job, record, reason, retry_delay=denied.window_seconds, error=None)
        return False

    def execute(self, job, record: JobRecord) -> None:
        """Run the job body; nothing it raises escapes this method."""
        try:
            job.run()
        except Exception as e:
            reason = f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
            click.echo(f"✗ [{self.worker_id}] Job {record.id} raised {type(e).__name__}: {e}", err=True)
            self.handle_failure(job, record, reason, retry_delay=job.retry_after_seconds(), error=e)
            return

        self.backend.delete(record)
        self.stats['succeeded'] += 1
        click.echo(f"✓ [{self.worker_id}] Job {record.id} completed successfully")
        self.call_hook(job, record, 'on_success')

    def handle_failure(self, job, record: JobRecord, reason: str, retry_delay: float, error=None) -> None:
        """
        Retry the job if attempts remain, otherwise fail it permanently.

        `attempts` counts attempts already consumed, so this one is attempts + 1.
        `job` is None when the job could not be built; no hooks run then.
        """
        attempt = record.attempts + 1

        if attempt < record.max_attempts:
            delay_until = self.clock() + retry_delay
            self.backend.release(record, delay_until)
            self.stats['retried'] += 1
            click.echo(
                f"  → Job {record.id} will retry (attempt {attempt}/{record.max_attempts}) "
                f"in {retry_delay:g}s"
            )
            return

        self.backend.mark_failed(record, reason)
        self.stats['failed'] += 1
        click.echo(f"  → Job {record.id} failed permanently after {attempt} attempt(s)", err=True)
        if job is not None:
            self.call_hook(job, record, 'on_failure', error if error is not None else RuntimeError(reason))

    def call_hook(self, job, record: JobRecord, name: str, *args) -> None:
        """Invoke a lifecycle hook; its errors are reported and swallowed."""
        try:
            getattr(job, name)(*args)
        except Exception as e:
            click.echo(f"  ! {name} hook for job {record.id} raised {type(e).__name__}: {e}", err=True)

    def request_shutdown(self) -> None:
        """Ask the worker to stop after the current job."""
        self.shutdown_requested = True

    def install_signal_handlers(self) -> dict:
        """
        Set up signal handlers for graceful shutdown.

        Handles SIGINT (Ctrl+C) and SIGTERM (kill command). Only possible
        from the main thread; elsewhere this is a no-op.

        Returns:
            The previous handlers, for restore_signal_handlers()
        """
        def signal_handler(signum, frame):
            signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
            click.echo(f"\n{signal_name} received, finishing current job then shutting down...")
            self.request_shutdown()

        previous = {}
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                previous[sig] = signal.signal(sig, signal_handler)
        except ValueError:
            # signal.signal only works in the main thread
            self.restore_signal_handlers(previous)
            return {}
        return previous

    def restore_signal_handlers(self, previous: dict) -> None:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)
