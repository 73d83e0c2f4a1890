import json
import re

import pytest
from click.testing import CliRunner

from jobctl.cli import main

from sample_jobs import EVENTS


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def jobctl(runner, db_path):
    def invoke(*args, **kwargs):
        return runner.invoke(main, ['--db', db_path, *args], **kwargs)
    return invoke


def test_enqueue_command(jobctl, storage):
    result = jobctl('enqueue', '{"command": "echo hello", "queue": "emails"}')

    assert result.exit_code == 0, result.output
    assert "Job successfully enqueued" in result.output
    assert "Handler: jobctl.jobs:ShellJob" in result.output

    job = storage.get_job(1)
    assert job['queue'] == 'emails'
    assert json.loads(job['payload']) == {'command': 'echo hello'}
    assert job['max_attempts'] == 3


def test_enqueue_handler_with_delay(jobctl, storage):
    job_json = json.dumps({
        'handler': 'sample_jobs:SendMail',
        'payload': {'to': 'a@b.com'},
        'delay': '+5 minutes',
        'max_attempts': 4,
    })

    result = jobctl('enqueue', job_json)

    assert result.exit_code == 0, result.output
    assert "Delay: 300s" in result.output
    job = storage.get_job(1)
    assert job['handler'] == 'sample_jobs:SendMail'
    assert job['max_attempts'] == 4
    assert job['available_at'] - job['created_at'] == pytest.approx(300)


@pytest.mark.parametrize('job_json', [
    'not json',
    '["echo"]',
    '{"queue": "default"}',
    '{"command": "  "}',
    '{"handler": "sample_jobs:Missing"}',
    '{"handler": "jobctl.storage:Storage"}',
    '{"command": "true", "max_attempts": 0}',
    '{"command": "true", "delay": "whenever"}',
])
def test_enqueue_rejects_bad_input(jobctl, storage, job_json):
    result = jobctl('enqueue', job_json)

    assert result.exit_code == 1
    assert "Error" in result.output
    assert storage.get_job_counts()['pending'] == 0


def test_list_and_status(jobctl):
    jobctl('enqueue', '{"command": "echo one"}')
    jobctl('enqueue', '{"command": "echo two", "queue": "emails"}')

    listed = jobctl('list', '--queue', 'emails')
    assert listed.exit_code == 0
    assert "echo two" in listed.output
    assert "echo one" not in listed.output
    assert "Total: 1 job(s)" in listed.output

    status = jobctl('status')
    assert status.exit_code == 0
    assert re.search(r"Pending:\s+2\n", status.output)
    assert "emails" in status.output


def test_list_empty(jobctl):
    result = jobctl('list', '--status', 'reserved')

    assert result.exit_code == 0
    assert "No jobs found." in result.output


def test_worker_processes_job_and_exits_after_cooldown(jobctl, storage):
    jobctl('enqueue', '{"command": "echo processed"}')

    result = jobctl('worker', 'start', '--cooldown', '1', '--sleep', '0.1')

    assert result.exit_code == 0, result.output
    assert "processed" in result.output
    assert "completed successfully" in result.output
    assert "cooldown elapsed" in result.output
    assert storage.get_job_counts() == {'pending': 0, 'reserved': 0, 'failed': 0}


def test_failed_job_can_be_replayed(jobctl, storage):
    jobctl('enqueue', '{"command": "exit 3", "max_attempts": 1}')

    result = jobctl('worker', 'start', '--cooldown', '0.5', '--sleep', '0.1')
    assert result.exit_code == 0, result.output

    failed = jobctl('failed', 'list')
    assert "Job ID: 1" in failed.output
    assert "exited with code 3" in failed.output

    replay = jobctl('failed', 'retry', '1')
    assert replay.exit_code == 0, replay.output
    assert "Job 1 moved back to the queue" in replay.output

    job = storage.get_job(1)
    assert job['status'] == 'pending'
    assert job['attempts'] == 0
    assert "No failed jobs." in jobctl('failed', 'list').output


def test_failed_retry_unknown_id(jobctl):
    result = jobctl('failed', 'retry', '42')

    assert result.exit_code == 1
    assert "not found" in result.output


def test_failed_forget_and_flush(jobctl, storage):
    for _ in range(3):
        jobctl('enqueue', '{"command": "exit 1", "max_attempts": 1}')
    jobctl('worker', 'start', '--cooldown', '0.5', '--sleep', '0.1')

    assert jobctl('failed', 'forget', '1').exit_code == 0
    assert jobctl('failed', 'forget', '1').exit_code == 1

    flushed = jobctl('failed', 'flush', '--yes')
    assert "Deleted 2 failed job(s)" in flushed.output
    assert storage.get_job_counts()['failed'] == 0


def test_worker_honours_queue_option(jobctl, storage):
    jobctl('enqueue', '{"command": "echo skipped", "queue": "other"}')

    result = jobctl('worker', 'start', '--queue', 'emails,default', '--cooldown', '0.3', '--sleep', '0.1')

    assert result.exit_code == 0
    assert storage.get_job_counts()['pending'] == 1


def test_config_set_get_list(jobctl):
    result = jobctl('config', 'set', 'queues', 'emails,default')
    assert result.exit_code == 0
    assert "queues = emails,default" in result.output

    assert "queues = emails,default" in jobctl('config', 'get', 'queues').output

    default = jobctl('config', 'get', 'poll-interval')
    assert "poll-interval = 5" in default.output
    assert "(default value)" in default.output

    listed = jobctl('config', 'list')
    assert "queues = emails,default" in listed.output
    assert "cooldown = 0 (default)" in listed.output


@pytest.mark.parametrize('key, value', [
    ('colour', 'blue'),
    ('backend', 'carrier-pigeon'),
    ('poll-interval', 'sometimes'),
])
def test_config_set_rejects_bad_values(jobctl, key, value):
    result = jobctl('config', 'set', key, value)

    assert result.exit_code == 1
    assert "Error" in result.output


def test_sync_backend_runs_on_enqueue(jobctl, storage):
    jobctl('config', 'set', 'backend', 'sync')

    result = jobctl('enqueue', '{"handler": "sample_jobs:SendMail", "payload": {"to": "now"}}')

    assert result.exit_code == 0, result.output
    assert "handled by the 'sync' backend" in result.output
    assert EVENTS == [('run', 'now'), ('success', 'now')]
    assert storage.get_job_counts()['pending'] == 0


def test_worker_exits_nonzero_when_redis_is_unreachable(jobctl):
    jobctl('config', 'set', 'backend', 'redis')
    jobctl('config', 'set', 'redis-url', 'redis://127.0.0.1:1/0')

    result = jobctl('worker', 'start', '--cooldown', '1')

    assert result.exit_code == 1
    assert "Queue backend unavailable" in result.output


def test_worker_rejects_bad_count(jobctl):
    assert jobctl('worker', 'start', '--count', '0').exit_code == 1


def test_version(runner):
    result = runner.invoke(main, ['--version'])

    assert result.exit_code == 0
    assert "0.2.0" in result.output
