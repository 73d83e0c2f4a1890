"""
Built-in jobs.
"""
import subprocess

from jobctl.errors import CommandFailed
from jobctl.job import Job


class ShellJob(Job):
    """
    Run a shell command. Exit code 0 is success; anything else raises CommandFailed.

    Payload:
        command: The shell command to execute (required)
        timeout: Seconds before the command is killed (default 300)
    """

    max_attempts = 3
    retry_after = 5

    def run(self) -> None:
        command = self.payload['command']
        timeout = float(self.payload.get('timeout', 300))

        try:
            result = subprocess.run(
                command,
                shell=True,              # Allow shell syntax (pipes, redirects, etc.)
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise CommandFailed(command, 124)

        if result.stdout:
            print(result.stdout.rstrip())
        if result.stderr:
            print(result.stderr.rstrip())

        if result.returncode != 0:
            raise CommandFailed(command, result.returncode)
