"""
Base class for background jobs.

Subclass Job, implement run(), and dispatch instances onto a queue backend:

    class SendMail(Job):
        queue = 'emails'
        max_attempts = 3
        retry_after = '30 seconds'

        def run(self):
            mailer.send(self.payload['to'])

    SendMail().delay('+5 minutes').dispatch({'to': 'a@b.com'})
"""
from typing import Any, Dict, Optional

from jobctl.models import JobRecord
from jobctl.utils import Duration, handler_name, parse_duration


class Job:
    """
    A unit of deferred work plus its scheduling policy.

    Class attributes act as defaults for every instance:
        queue: Queue name the job is dispatched onto
        max_attempts: Total attempts before the job fails permanently
        retry_after: Delay before a failed attempt is retried
        default_delay: Delay applied at dispatch unless delay() overrides it
    """

    queue = "default"
    max_attempts = 1
    retry_after: Duration = 0
    default_delay: Duration = 0

    def __init__(self, payload: Optional[Dict[str, Any]] = None):
        self.payload = dict(payload) if payload else {}
        self.record: Optional[JobRecord] = None
        self._delay: Duration = None

    def delay(self, duration: Duration) -> "Job":
        """
        Override the dispatch delay for this instance only.

        Args:
            duration: Seconds, timedelta, '1h30m' or '+30 seconds'

        Returns:
            self, so calls can be chained into dispatch()
        """
        parse_duration(duration)  # fail fast on bad input
        self._delay = duration
        return self

    def delay_seconds(self) -> float:
        """Effective dispatch delay in seconds."""
        if self._delay is not None:
            return parse_duration(self._delay)
        return parse_duration(self.default_delay)

    def retry_after_seconds(self) -> float:
        return parse_duration(self.retry_after)

    def dispatch(self, payload: Optional[Dict[str, Any]] = None, backend=None) -> Optional[int]:
        """
        Enqueue this job.

        Args:
            payload: Data for the job (merged over any payload given to the constructor)
            backend: QueueBackend to use; defaults to the process-wide backend

        Returns:
            The backend's job id, or None for the sync and null backends
        """
        if payload:
            self.payload.update(payload)

        if backend is None:
            from jobctl.backends import get_default_backend
            backend = get_default_backend()

        return backend.enqueue(self, delay=self.delay_seconds())

    def run(self) -> None:
        """Do the work. Must tolerate being run more than once."""
        raise NotImplementedError(f"{type(self).__name__} must implement run()")

    def rate_limit(self) -> Optional[Dict[str, Any]]:
        """
        Optional admission limit, e.g. {'limit': 10, 'minutes': 1}.

        Exactly one of seconds/minutes/hours/days must be given. An optional
        'key' groups instances under a custom budget; by default every
        instance of the job type shares one budget.
        """
        return None

    def on_success(self) -> None:
        pass

    def on_failure(self, exception: BaseException) -> None:
        pass

    @classmethod
    def handler(cls) -> str:
        return handler_name(cls)

    def __repr__(self):
        return f"{type(self).__name__}(payload={self.payload})"
