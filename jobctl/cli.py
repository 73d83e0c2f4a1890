"""CLI command definitions for jobctl."""
import json
import multiprocessing
import sys

import click

from jobctl import __version__
from jobctl.backends import BACKENDS, build_backend
from jobctl.config import (
    DEFAULT_CONFIG,
    KNOWN_KEYS,
    build_rate_limiter,
    default_db_path,
    load_settings,
    split_queues,
)
from jobctl.errors import BackendUnavailableError, ConfigurationError, JobctlError
from jobctl.job import Job
from jobctl.jobs import ShellJob
from jobctl.storage import Storage
from jobctl.utils import format_timestamp, parse_duration, resolve_handler
from jobctl.worker import Worker


def open_backend(ctx):
    """Open storage and the configured backend from the root command's --db option."""
    storage = Storage(ctx.obj['db_path'])
    settings = load_settings(storage)
    return storage, settings, build_backend(settings, storage)


def echo_record(record, failed=False):
    click.echo(f"\nJob ID: {record.id}")
    click.echo(f"  Handler: {record.handler}")
    click.echo(f"  Queue: {record.queue}")
    click.echo(f"  Payload: {json.dumps(record.payload)}")
    click.echo(f"  Status: {record.status}")
    click.echo(f"  Attempts: {record.attempts}/{record.max_attempts}")
    click.echo(f"  Created: {format_timestamp(record.created_at)}")
    if failed:
        click.echo(f"  Failed: {format_timestamp(record.failed_at)}")
        reason = (record.exception or '').strip().splitlines()
        click.echo(f"  Reason: {reason[0] if reason else '-'}")
    else:
        click.echo(f"  Available: {format_timestamp(record.available_at)}")
        if record.reserved_at is not None:
            click.echo(f"  Reserved: {format_timestamp(record.reserved_at)}")


@click.group()
@click.version_option(version=__version__)
@click.option('--db', 'db_path', default=default_db_path, show_default='queue.db or $JOBCTL_DB',
              help='Path to the SQLite database holding jobs and configuration')
@click.pass_context
def main(ctx, db_path):
    """jobctl - background job queue and worker engine."""
    ctx.ensure_object(dict)
    ctx.obj['db_path'] = db_path


@main.command()
@click.argument('job_json', required=True)
@click.pass_context
def enqueue(ctx, job_json):
    """Dispatch a job onto the queue.

    JOB_JSON: either a shell command, '{"command": "echo hello"}', or a job
    class with its payload, '{"handler": "myapp.jobs:SendMail", "payload": {"to": "a@b.com"}}'.

    Optional fields: queue, delay (e.g. "30 seconds"), max_attempts.
    """
    try:
        job_data = json.loads(job_json)
    except json.JSONDecodeError as e:
        click.echo(f"Error: Invalid JSON - {e.msg}", err=True)
        click.echo(f"Position: line {e.lineno}, column {e.colno}", err=True)
        raise click.Abort()

    if not isinstance(job_data, dict):
        click.echo("Error: JSON must be an object (dictionary), not a list or primitive value", err=True)
        raise click.Abort()

    if 'handler' in job_data:
        try:
            job_class = resolve_handler(str(job_data['handler']))
        except JobctlError as e:
            click.echo(f"Error: {e}", err=True)
            raise click.Abort()
        if not issubclass(job_class, Job):
            click.echo(f"Error: {job_data['handler']} is not a Job subclass", err=True)
            raise click.Abort()
        payload = job_data.get('payload') or {}
    elif 'command' in job_data:
        if not str(job_data['command']).strip():
            click.echo("Error: Field 'command' cannot be empty", err=True)
            raise click.Abort()
        job_class = ShellJob
        payload = {'command': job_data['command']}
        if 'timeout' in job_data:
            payload['timeout'] = job_data['timeout']
    else:
        click.echo("Error: Provide either 'command' or 'handler'", err=True)
        click.echo('\nExample:', err=True)
        click.echo('  {"command": "echo hello"}', err=True)
        raise click.Abort()

    if not isinstance(payload, dict):
        click.echo("Error: Field 'payload' must be an object", err=True)
        raise click.Abort()

    job = job_class(payload)

    # Per-dispatch overrides shadow the class defaults on this instance only
    if job_data.get('queue'):
        job.queue = str(job_data['queue'])
    if 'max_attempts' in job_data:
        try:
            job.max_attempts = int(job_data['max_attempts'])
        except (TypeError, ValueError):
            click.echo("Error: Field 'max_attempts' must be an integer", err=True)
            raise click.Abort()
        if job.max_attempts < 1:
            click.echo("Error: Field 'max_attempts' must be at least 1", err=True)
            raise click.Abort()
    if 'delay' in job_data:
        try:
            job.delay(job_data['delay'])
        except ValueError as e:
            click.echo(f"Error: Invalid delay - {e}", err=True)
            raise click.Abort()

    try:
        _, settings, backend = open_backend(ctx)
        job_id = job.dispatch(backend=backend)
    except Exception as e:
        click.echo("Error: Failed to dispatch job", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    if job_id is None:
        click.echo(f"✓ Job handled by the '{settings.backend}' backend (not stored)")
        return

    click.echo("✓ Job successfully enqueued!")
    click.echo(f"  Job ID: {job_id}")
    click.echo(f"  Handler: {job.handler()}")
    click.echo(f"  Queue: {job.queue}")
    click.echo(f"  Max Attempts: {job.max_attempts}")
    delay = job.delay_seconds()
    if delay:
        click.echo(f"  Delay: {delay:g}s")


@main.group()
def worker():
    """Run worker processes."""
    pass


def run_worker(db_path, queues, poll_interval, cooldown, worker_id=None):
    """
    Build and run one Worker. Used directly and as the target of child processes.

    Returns:
        Process exit status: 0 for a graceful stop, 1 if the backend is
        unreachable or a job is misconfigured
    """
    try:
        storage = Storage(db_path)
        settings = load_settings(
            storage,
            queues=queues,
            poll_interval=poll_interval,
            cooldown=cooldown,
        )
        backend = build_backend(settings, storage)
        worker_instance = Worker(
            backend,
            queues=settings.queues,
            poll_interval=settings.poll_interval,
            cooldown=settings.cooldown,
            rate_limiter=build_rate_limiter(settings, storage),
            worker_id=worker_id,
        )
        return worker_instance.run()
    except BackendUnavailableError as e:
        click.echo(f"Error: Queue backend unavailable: {e}", err=True)
        return 1
    except ConfigurationError as e:
        click.echo(f"Error: Configuration error: {e}", err=True)
        return 1


def worker_process_runner(db_path, queues, poll_interval, cooldown, worker_id):
    """Entry point of a child worker process."""
    sys.exit(run_worker(db_path, queues, poll_interval, cooldown, worker_id))


@worker.command()
@click.option('--queue', 'queue_names', default=None,
              help='Comma-separated queue names in priority order (default: config "queues")')
@click.option('--sleep', 'poll_interval', default=None,
              help='Seconds to wait after an empty poll (default: config "poll-interval")')
@click.option('--cooldown', default=None,
              help='Seconds to run before exiting for a restart, 0 = forever (default: config "cooldown")')
@click.option('--count', default=1, type=int, help='Number of worker processes to start')
@click.pass_context
def start(ctx, queue_names, poll_interval, cooldown, count):
    """Start one or more worker processes."""
    if count < 1:
        click.echo("Error: Count must be at least 1", err=True)
        raise click.Abort()

    try:
        queues = split_queues(queue_names) if queue_names else None
        poll_interval = parse_duration(poll_interval) if poll_interval is not None else None
        cooldown = parse_duration(cooldown) if cooldown is not None else None
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise click.Abort()

    if queues == []:
        click.echo("Error: --queue needs at least one queue name", err=True)
        raise click.Abort()

    db_path = ctx.obj['db_path']

    if count == 1:
        ctx.exit(run_worker(db_path, queues, poll_interval, cooldown))

    click.echo(f"Starting {count} worker(s)...\n")

    processes = []
    for i in range(count):
        worker_id = f"worker-{i + 1}"
        process = multiprocessing.Process(
            target=worker_process_runner,
            args=(db_path, queues, poll_interval, cooldown, worker_id),
            name=worker_id
        )
        process.start()
        processes.append(process)
        click.echo(f"✓ Started {worker_id} (PID: {process.pid})")

    click.echo(f"\n{count} worker(s) running. Press Ctrl+C to stop all workers.\n")

    try:
        for process in processes:
            process.join()
    except KeyboardInterrupt:
        # Children got SIGINT too; each finishes its current job
        click.echo("\n\nWaiting for workers to finish their current jobs...")
        for process in processes:
            process.join()

    exit_code = max((process.exitcode or 0) for process in processes)
    click.echo("All workers stopped.")
    ctx.exit(exit_code)


@main.command()
@click.pass_context
def status(ctx):
    """Show a summary of jobs by status and queue."""
    try:
        storage, settings, backend = open_backend(ctx)
        counts = backend.counts()
        queues = backend.queue_counts()
    except JobctlError as e:
        click.echo("Error: Failed to get status", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    total = sum(counts.values())

    click.echo("Job Queue Status")
    click.echo("=" * 50)
    click.echo(f"Backend: {settings.backend}")
    click.echo("\nJobs by Status:")
    click.echo(f"  Pending:     {counts['pending']:>6}")
    click.echo(f"  Reserved:    {counts['reserved']:>6}")
    click.echo(f"  Failed:      {counts['failed']:>6}")
    click.echo("-" * 50)
    click.echo(f"  Total:       {total:>6}")

    if queues:
        click.echo("\nWaiting Jobs by Queue:")
        for name in sorted(queues):
            click.echo(f"  {name:<12} {queues[name]:>6}")

    click.echo("=" * 50)


@main.command(name='list')
@click.option('--status', 'status_filter', type=click.Choice(['pending', 'reserved']),
              help='Filter jobs by status')
@click.option('--queue', help='Filter jobs by queue')
@click.pass_context
def list_jobs(ctx, status_filter, queue):
    """List waiting jobs."""
    try:
        _, _, backend = open_backend(ctx)
        records = backend.list_jobs(status=status_filter, queue=queue)
    except JobctlError as e:
        click.echo("Error: Failed to list jobs", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    click.echo(f"Jobs with status: {status_filter}" if status_filter else "All jobs")
    click.echo("-" * 80)

    if not records:
        click.echo("No jobs found.")
        return

    for record in records:
        echo_record(record)

    click.echo("-" * 80)
    click.echo(f"Total: {len(records)} job(s)")


@main.group()
def failed():
    """Inspect and replay permanently failed jobs."""
    pass


@failed.command(name='list')
@click.pass_context
def failed_list(ctx):
    """List jobs that exhausted their attempts."""
    try:
        _, _, backend = open_backend(ctx)
        records = backend.list_failed()
    except JobctlError as e:
        click.echo("Error: Failed to list failed jobs", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    click.echo("Failed Jobs")
    click.echo("=" * 80)

    if not records:
        click.echo("No failed jobs.")
        return

    for record in records:
        echo_record(record, failed=True)

    click.echo("=" * 80)
    click.echo(f"Total failed jobs: {len(records)}")
    click.echo("\nTo replay a job: jobctl failed retry <JOB_ID>")


@failed.command()
@click.argument('job_id', type=int, required=False)
@click.option('--all', 'retry_all', is_flag=True, help='Replay every failed job')
@click.pass_context
def retry(ctx, job_id, retry_all):
    """Move a failed job back onto its queue with a fresh attempt budget.

    JOB_ID: The ID of the failed job to replay
    """
    if job_id is None and not retry_all:
        click.echo("Error: Give a JOB_ID or --all", err=True)
        raise click.Abort()

    try:
        _, _, backend = open_backend(ctx)
        if retry_all:
            ids = [record.id for record in backend.list_failed()]
        else:
            ids = [job_id]

        replayed = 0
        for failed_id in ids:
            if backend.retry_failed(failed_id):
                replayed += 1
                click.echo(f"✓ Job {failed_id} moved back to the queue")
            else:
                click.echo(f"Error: Failed job {failed_id} not found", err=True)
    except JobctlError as e:
        click.echo("Error: Failed to retry job", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    if not retry_all and replayed == 0:
        raise click.Abort()
    click.echo(f"Replayed {replayed} job(s).")


@failed.command()
@click.argument('job_id', type=int, required=True)
@click.pass_context
def forget(ctx, job_id):
    """Delete one failed job record."""
    try:
        _, _, backend = open_backend(ctx)
        removed = backend.forget_failed(job_id)
    except JobctlError as e:
        click.echo("Error: Failed to delete failed job", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    if not removed:
        click.echo(f"Error: Failed job {job_id} not found", err=True)
        raise click.Abort()
    click.echo(f"✓ Failed job {job_id} deleted")


@failed.command()
@click.confirmation_option(prompt='Delete every failed job?')
@click.pass_context
def flush(ctx):
    """Delete all failed job records."""
    try:
        _, _, backend = open_backend(ctx)
        removed = backend.flush_failed()
    except JobctlError as e:
        click.echo("Error: Failed to flush failed jobs", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    click.echo(f"✓ Deleted {removed} failed job(s)")


@main.group()
def config():
    """Manage configuration."""
    pass


@config.command(name='set')
@click.argument('key', required=True)
@click.argument('value', required=True)
@click.pass_context
def config_set(ctx, key, value):
    """Set a configuration value.

    Examples:
      jobctl config set queues emails,default
      jobctl config set poll-interval 2
    """
    if key not in KNOWN_KEYS:
        click.echo(f"Error: Unknown config key '{key}'", err=True)
        click.echo(f"Known keys: {', '.join(KNOWN_KEYS)}", err=True)
        raise click.Abort()

    if key == 'backend' and value not in BACKENDS:
        click.echo(f"Error: backend must be one of {', '.join(BACKENDS)}", err=True)
        raise click.Abort()

    if key in ('poll-interval', 'cooldown', 'stale-after'):
        try:
            parse_duration(value)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            raise click.Abort()

    try:
        storage = Storage(ctx.obj['db_path'])
        storage.set_config(key, value)
    except JobctlError as e:
        click.echo("Error: Failed to set configuration", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    click.echo("✓ Configuration updated:")
    click.echo(f"  {key} = {value}")


@config.command(name='get')
@click.argument('key', required=True)
@click.pass_context
def config_get(ctx, key):
    """Get a configuration value."""
    try:
        storage = Storage(ctx.obj['db_path'])
        default = DEFAULT_CONFIG.get(key)
        value = storage.get_config(key)
    except JobctlError as e:
        click.echo("Error: Failed to get configuration", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    if value is not None:
        click.echo(f"{key} = {value}")
    elif default is not None:
        click.echo(f"{key} = {default}")
        click.echo("  (default value)")
    else:
        click.echo(f"{key} is not set")


@config.command(name='list')
@click.pass_context
def config_list(ctx):
    """List all configuration values, defaults included."""
    try:
        storage = Storage(ctx.obj['db_path'])
        stored = storage.list_config()
    except JobctlError as e:
        click.echo("Error: Failed to list configuration", err=True)
        click.echo(f"  {e}", err=True)
        raise click.Abort()

    click.echo("Configuration:")
    click.echo("-" * 40)
    for key in KNOWN_KEYS:
        if key in stored:
            click.echo(f"  {key} = {stored[key]}")
        else:
            click.echo(f"  {key} = {DEFAULT_CONFIG[key]} (default)")
    click.echo("-" * 40)


if __name__ == '__main__':
    main()
