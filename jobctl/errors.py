"""
Exception types raised by jobctl.
"""


class JobctlError(Exception):
    """Base class for all jobctl errors."""


class ConfigurationError(JobctlError):
    """
    Raised when a job or the worker is misconfigured.

    Examples: a rate limit descriptor without a time unit, or a job that
    declares a rate limit while no counter cache is configured.
    """


class BackendUnavailableError(JobctlError):
    """Raised when the queue storage (SQLite file, Redis server) cannot be reached."""


class JobResolutionError(JobctlError):
    """Raised when a stored handler name cannot be imported back into a Job class."""


class CommandFailed(JobctlError):
    """Raised by ShellJob when the shell command exits non-zero."""

    def __init__(self, command: str, exit_code: int):
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"command {command!r} exited with code {exit_code}")
