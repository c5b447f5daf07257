"""
Best-effort disk space reporting.

RepositoryProbe asks the host behind an sftp repository how much space is
left, by running ``df -h`` over SSH. It is informational only: every failure
maps to UNKNOWN_FREE_SPACE and nothing here ever raises.
"""

from __future__ import annotations

import logging
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import paramiko
from paramiko import AutoAddPolicy, SSHClient

logger = logging.getLogger(__name__)

UNKNOWN_FREE_SPACE = "unknown"

SSH_CONFIG_FILE = Path.home() / ".ssh" / "config"
DEFAULT_PROBE_TIMEOUT = 30.0


@dataclass(frozen=True)
class SftpLocation:
    """Where an sftp repository lives."""

    host: str
    path: str
    username: str | None = None
    port: int | None = None


def parse_sftp_repository(repository: str) -> SftpLocation | None:
    """
    Extract host and path from a restic sftp repository reference.

    Supports both restic forms:
        sftp:user@host:/srv/restic
        sftp://user@host:2222//srv/restic

    Args:
        repository: The RESTIC_REPOSITORY value.

    Returns:
        SftpLocation, or None if the repository is not an sftp one.
    """
    if repository.startswith("sftp://"):
        parts = urlsplit(repository)
        if not parts.hostname:
            return None
        path = parts.path
        # sftp://host//abs/path is absolute, sftp://host/rel is relative to home
        if path.startswith("//"):
            path = path[1:]
        else:
            path = path.lstrip("/") or "."
        try:
            port = parts.port
        except ValueError:
            return None
        return SftpLocation(host=parts.hostname, path=path, username=parts.username, port=port)

    if repository.startswith("sftp:"):
        target = repository[len("sftp:"):]
        host_part, sep, path = target.partition(":")
        if not sep or not host_part:
            return None
        username, at, host = host_part.rpartition("@")
        return SftpLocation(host=host, path=path or ".", username=username if at else None)

    return None


def parse_df_available(output: str) -> str | None:
    """Return the Avail column from the last line of ``df -h`` output."""
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    # counted from the right, long device names wrap onto their own line
    columns = lines[-1].split()
    if len(columns) < 5:
        return None
    return columns[-3]


class RepositoryProbe:
    """
    Queries remaining space on the repository host.

    Connects with the user's SSH keys or agent, never with a password, so it
    cannot hang on an interactive prompt.
    """

    def __init__(self, repository: str, timeout: float | None = None) -> None:
        """
        Initialize the probe.

        Args:
            repository: The restic repository reference.
            timeout: SSH connect and command timeout in seconds.
        """
        self.repository = repository
        self.timeout = timeout or DEFAULT_PROBE_TIMEOUT
        self.location = parse_sftp_repository(repository)

    def free_space(self) -> str:
        """
        Report free space on the repository filesystem.

        Returns:
            Human-readable size such as ``"1.2T"``, or UNKNOWN_FREE_SPACE.
        """
        if self.location is None:
            logger.debug(f"Repository {self.repository} is not sftp, free space unknown")
            return UNKNOWN_FREE_SPACE

        try:
            return self._query(self.location) or UNKNOWN_FREE_SPACE
        except Exception as e:
            # paramiko also raises InvalidHostKey, EOFError and ValueError here
            logger.warning(f"Free space probe failed for {self.location.host}: {e}")
            return UNKNOWN_FREE_SPACE

    def _connect_kwargs(self, location: SftpLocation) -> dict:
        kwargs: dict = {
            "hostname": location.host,
            "port": location.port or 22,
            "timeout": self.timeout,
            "banner_timeout": self.timeout,
            "auth_timeout": self.timeout,
        }
        if location.username:
            kwargs["username"] = location.username

        # restic resolves host aliases through ~/.ssh/config, so mirror that
        if SSH_CONFIG_FILE.exists():
            ssh_config = paramiko.SSHConfig.from_path(str(SSH_CONFIG_FILE))
            entry = ssh_config.lookup(location.host)
            kwargs["hostname"] = entry.get("hostname", location.host)
            if location.port is None and "port" in entry:
                kwargs["port"] = int(entry["port"])
            if not location.username and "user" in entry:
                kwargs["username"] = entry["user"]
            if "identityfile" in entry:
                kwargs["key_filename"] = entry["identityfile"]

        return kwargs

    def _query(self, location: SftpLocation) -> str | None:
        client = SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            client.connect(**self._connect_kwargs(location))
            _, stdout, _ = client.exec_command(
                f"df -h {shlex.quote(location.path)}", timeout=self.timeout
            )
            output = stdout.read().decode("utf-8", errors="replace")
            if stdout.channel.recv_exit_status() != 0:
                return None
            return parse_df_available(output)
        finally:
            client.close()


def format_size(num_bytes: int) -> str:
    """Format a byte count the way ``df -h`` does (1024-based, one letter suffix)."""
    value = float(num_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024:
            break
        value /= 1024
    else:
        unit = "P"
    if unit == "B":
        return f"{int(value)}B"
    return f"{value:.1f}{unit}" if value < 10 else f"{value:.0f}{unit}"


def local_free_space(path: str | Path = "/") -> str:
    """
    Report free space on a local filesystem.

    Args:
        path: Any path on the filesystem to inspect.

    Returns:
        Human-readable size, or UNKNOWN_FREE_SPACE if it cannot be read.
    """
    try:
        return format_size(shutil.disk_usage(path).free)
    except OSError as e:
        logger.debug(f"Cannot read disk usage for {path}: {e}")
        return UNKNOWN_FREE_SPACE
