from datetime import timedelta

import pytest

from jobctl.backends import get_default_backend, set_default_backend
from jobctl.errors import JobResolutionError
from jobctl.job import Job
from jobctl.utils import handler_name, parse_duration, resolve_handler

from sample_jobs import SendMail


def test_delay_is_per_instance():
    delayed = SendMail().delay(30)
    plain = SendMail()

    assert delayed.delay_seconds() == 30
    assert plain.delay_seconds() == 0
    assert SendMail.default_delay == 0


def test_delay_returns_self_for_chaining():
    job = SendMail()
    assert job.delay('5m') is job


def test_delay_rejects_garbage():
    with pytest.raises(ValueError):
        SendMail().delay('soon')


def test_class_default_delay_used_without_override():
    class Digest(Job):
        default_delay = '1 hour'

    assert Digest().delay_seconds() == 3600
    assert Digest().delay(10).delay_seconds() == 10


def test_dispatch_sets_available_at(backend, clock):
    job_id = SendMail().delay('+30 seconds').dispatch({'to': 'a@b.com'}, backend=backend)

    record = backend.get_job(job_id)
    assert record.available_at == clock.now + 30
    assert record.created_at == clock.now
    assert record.status == 'pending'
    assert record.attempts == 0
    assert record.queue == 'default'
    assert record.payload == {'to': 'a@b.com'}
    assert record.handler == 'sample_jobs:SendMail'


def test_dispatch_merges_constructor_payload(backend):
    job_id = SendMail({'to': 'a@b.com', 'cc': 'x'}).dispatch({'cc': 'y'}, backend=backend)
    assert backend.get_job(job_id).payload == {'to': 'a@b.com', 'cc': 'y'}


def test_dispatch_respects_queue_and_max_attempts(backend):
    class Report(Job):
        queue = 'reports'
        max_attempts = 4

    job_id = Report().dispatch(backend=backend)
    record = backend.get_job(job_id)
    assert record.queue == 'reports'
    assert record.max_attempts == 4


def test_dispatch_uses_default_backend(backend):
    set_default_backend(backend)
    SendMail().dispatch({'to': 'x@y.z'})

    assert backend.counts()['pending'] == 1


def test_default_backend_built_from_config():
    default = get_default_backend()
    assert default.name == 'database'
    assert get_default_backend() is default


def test_run_must_be_implemented():
    with pytest.raises(NotImplementedError):
        Job().run()


@pytest.mark.parametrize("value, expected", [
    (None, 0),
    (0, 0),
    (12, 12),
    (1.5, 1.5),
    (timedelta(minutes=2), 120),
    ("45", 45),
    ("20s", 20),
    ("5m", 300),
    ("1h30m", 5400),
    ("2d3h", 183600),
    ("30 seconds", 30),
    ("+1 hour", 3600),
    ("2 days", 172800),
    ("1 minute", 60),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "soon", "-5", "3 fortnights", [1]])
def test_parse_duration_rejects(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_handler_name_round_trips():
    assert resolve_handler(handler_name(SendMail)) is SendMail


@pytest.mark.parametrize("name", ["no_colon", "missing_module_xyz:Job", "sample_jobs:Nope", "sample_jobs:EVENTS"])
def test_resolve_handler_errors(name):
    with pytest.raises(JobResolutionError):
        resolve_handler(name)
