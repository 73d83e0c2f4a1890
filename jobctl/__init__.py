"""
jobctl - background job queue and worker engine.
"""
__version__ = "0.2.0"

from jobctl.backends import (  # noqa: E402
    DatabaseQueue,
    NullQueue,
    QueueBackend,
    SyncQueue,
    build_backend,
    get_default_backend,
    set_default_backend,
)
from jobctl.errors import (  # noqa: E402
    BackendUnavailableError,
    ConfigurationError,
    JobctlError,
    JobResolutionError,
)
from jobctl.job import Job  # noqa: E402
from jobctl.ratelimit import RateLimit, RateLimiter  # noqa: E402
from jobctl.worker import Worker  # noqa: E402

__all__ = [
    "BackendUnavailableError",
    "ConfigurationError",
    "DatabaseQueue",
    "Job",
    "JobResolutionError",
    "JobctlError",
    "NullQueue",
    "QueueBackend",
    "RateLimit",
    "RateLimiter",
    "SyncQueue",
    "Worker",
    "build_backend",
    "get_default_backend",
    "set_default_backend",
]
