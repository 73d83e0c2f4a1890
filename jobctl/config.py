"""
Configuration for jobctl.

Values live in the config table of the SQLite database (`jobctl config set`)
and fall back to DEFAULT_CONFIG. Command-line options override both.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

from jobctl.errors import ConfigurationError
from jobctl.storage import Storage
from jobctl.utils import parse_duration

DEFAULT_DB_PATH = "queue.db"

DEFAULT_CONFIG = {
    'backend': 'database',
    'cache': 'database',
    'redis-url': 'redis://localhost:6379/0',
    'redis-prefix': 'jobctl',
    'queues': 'default',
    'poll-interval': '5',
    'cooldown': '0',
    'stale-after': '1800',
}

KNOWN_KEYS = tuple(DEFAULT_CONFIG)


def default_db_path() -> str:
    return os.environ.get('JOBCTL_DB') or DEFAULT_DB_PATH


def split_queues(value: str) -> List[str]:
    """'emails, default' -> ['emails', 'default'] (order kept, duplicates dropped)."""
    queues: List[str] = []
    for name in value.split(','):
        name = name.strip()
        if name and name not in queues:
            queues.append(name)
    return queues


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_PATH
    backend: str = 'database'
    cache: str = 'database'
    redis_url: str = 'redis://localhost:6379/0'
    redis_prefix: str = 'jobctl'
    queues: List[str] = field(default_factory=lambda: ['default'])
    poll_interval: float = 5.0
    cooldown: float = 0.0
    stale_after: float = 1800.0


def load_settings(storage: Optional[Storage] = None, db_path: Optional[str] = None, **overrides) -> Settings:
    """
    Build Settings from stored config, defaults and explicit overrides.

    Args:
        storage: Open Storage to read the config table from
        db_path: Database path when no storage is given (default: $JOBCTL_DB or queue.db)
        overrides: Settings field names mapped to values; None values are ignored

    Raises:
        ConfigurationError: if a stored or overridden value cannot be parsed
    """
    if storage is None:
        storage = Storage(db_path or default_db_path())

    stored = dict(DEFAULT_CONFIG)
    stored.update(storage.list_config())

    try:
        settings = Settings(
            db_path=storage.db_path,
            backend=stored['backend'].strip().lower(),
            cache=stored['cache'].strip().lower(),
            redis_url=stored['redis-url'],
            redis_prefix=stored['redis-prefix'],
            queues=split_queues(stored['queues']),
            poll_interval=parse_duration(stored['poll-interval']),
            cooldown=parse_duration(stored['cooldown']),
            stale_after=parse_duration(stored['stale-after']),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e

    for name, value in overrides.items():
        if value is None:
            continue
        if not hasattr(settings, name):
            raise ConfigurationError(f"Unknown setting: {name}")
        setattr(settings, name, value)

    if not settings.queues:
        raise ConfigurationError("At least one queue name is required")
    if settings.poll_interval <= 0:
        raise ConfigurationError("poll-interval must be greater than zero")

    return settings


def build_rate_limiter(settings: Settings, storage: Optional[Storage] = None, clock=None):
    """
    Construct the RateLimiter for the configured cache.

    cache = 'none' returns None; any job that declares a rate limit then
    fails with ConfigurationError when a worker picks it up.
    """
    import time

    from jobctl.cache import ArrayCache, DatabaseCache, RedisCache
    from jobctl.ratelimit import RateLimiter

    clock = clock or time.time

    if settings.cache == 'none':
        return None
    if settings.cache == 'database':
        cache = DatabaseCache(storage or Storage(settings.db_path), clock=clock)
    elif settings.cache == 'redis':
        cache = RedisCache.from_url(settings.redis_url, prefix=settings.redis_prefix)
    elif settings.cache == 'array':
        cache = ArrayCache(clock=clock)
    else:
        raise ConfigurationError(
            f"Unknown cache {settings.cache!r}; expected database, redis, array or none"
        )
    return RateLimiter(cache, clock=clock)
