"""
Thin wrapper around the restic command-line tool.

Every call runs restic as a child process, blocks until it exits, and reports
the outcome as a CommandResult. Failures of the tool itself (non-zero exit,
missing binary, timeout) are returned, not raised, so the caller can carry on
with the next group.

The repository passphrase is handed to restic through RESTIC_PASSWORD in the
child environment only; it is never placed on the command line.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass

from resticgroups.catalog.groups import BackupGroup
from resticgroups.catalog.retention import RetentionPolicy

logger = logging.getLogger(__name__)

DEFAULT_CHECK_SUBSET = "5%"


@dataclass
class CommandResult:
    """
    Outcome of a single restic invocation.

    Attributes:
        ok: True if restic exited with status 0.
        output: Combined stdout and stderr.
        returncode: Process exit status, or None if the process never ran
            to completion (missing binary, timeout).
        error: Short description of why the call failed, if it did.
    """

    ok: bool
    output: str = ""
    returncode: int | None = None
    error: str | None = None


class ResticClient:
    """
    Runs restic commands against one repository.

    Usage:
        client = ResticClient("sftp:backup@nas:/srv/restic", password)
        result = client.backup(group)
        if result.ok:
            client.forget(group, policy)
    """

    def __init__(
        self,
        repository: str,
        password: str,
        binary: str = "restic",
        timeout: float | None = None,
        log_output: bool = True,
    ) -> None:
        """
        Initialize the client.

        Args:
            repository: Restic repository reference passed with ``-r``.
            password: Repository passphrase.
            binary: Name or path of the restic executable.
            timeout: Seconds before a call is abandoned and reported as
                failed. None waits indefinitely.
            log_output: Write restic's output to the log line by line.
        """
        self.repository = repository
        self.binary = binary
        self.timeout = timeout
        self.log_output = log_output
        self._password = password

    def backup(self, group: BackupGroup) -> CommandResult:
        """Back up all of a group's paths in one snapshot tagged with its name."""
        return self._run(["backup", *group.paths, "--tag", group.name])

    def forget(self, group: BackupGroup, policy: RetentionPolicy) -> CommandResult:
        """Apply a retention policy to the group's snapshots and prune unreferenced data."""
        return self._run(
            ["forget", "--tag", group.name, *policy.to_forget_args(), "--prune"]
        )

    def check(self, read_data_subset: str = DEFAULT_CHECK_SUBSET) -> CommandResult:
        """Verify repository integrity, reading back a subset of pack data."""
        return self._run(["check", f"--read-data-subset={read_data_subset}"])

    def _environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env["RESTIC_PASSWORD"] = self._password
        env["RESTIC_REPOSITORY"] = self.repository
        return env

    def _run(self, args: list[str]) -> CommandResult:
        """
        Run ``restic -r <repository> <args>`` and capture its output.

        Args:
            args: Subcommand and its arguments.

        Returns:
            CommandResult describing the outcome.
        """
        command = [self.binary, "-r", self.repository, *args]
        logger.debug(f"Running: {' '.join(command)}")

        try:
            completed = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._environment(),
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            output = _decode(e.output)
            self._log_output(output, failed=True)
            return CommandResult(
                ok=False,
                output=output,
                error=f"restic {args[0]} timed out after {self.timeout}s",
            )
        except OSError as e:
            return CommandResult(ok=False, error=f"Cannot run {self.binary}: {e}")

        ok = completed.returncode == 0
        output = completed.stdout or ""
        self._log_output(output, failed=not ok)

        return CommandResult(
            ok=ok,
            output=output,
            returncode=completed.returncode,
            error=None if ok else f"restic {args[0]} exited with status {completed.returncode}",
        )

    def _log_output(self, output: str, failed: bool) -> None:
        if not self.log_output:
            return
        level = logging.WARNING if failed else logging.INFO
        for line in output.splitlines():
            if line.strip():
                logger.log(level, f"    {line}")


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
