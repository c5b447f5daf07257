"""
Restic integration.

ResticClient drives the restic CLI (backup, forget --prune, check) and
RepositoryProbe reports free space on sftp repository hosts.
"""

from resticgroups.restic.client import DEFAULT_CHECK_SUBSET, CommandResult, ResticClient
from resticgroups.restic.probe import (
    UNKNOWN_FREE_SPACE,
    RepositoryProbe,
    SftpLocation,
    format_size,
    local_free_space,
    parse_df_available,
    parse_sftp_repository,
)

__all__ = [
    "ResticClient",
    "CommandResult",
    "DEFAULT_CHECK_SUBSET",
    "RepositoryProbe",
    "SftpLocation",
    "UNKNOWN_FREE_SPACE",
    "format_size",
    "local_free_space",
    "parse_df_available",
    "parse_sftp_repository",
]
