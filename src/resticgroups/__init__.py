"""
resticgroups - grouped restic backups with per-group retention

Backs up named groups of paths to a single restic repository, applying each
group's own retention policy, with the repository passphrase fetched from
Vault once per run.

Key Features:
    - Groups of paths, each snapshotted under its own tag
    - Per-group keep-hourly/daily/weekly/monthly/yearly retention
    - One failing group never stops the others
    - Run a single group by name
    - Per-group JSON metrics, run log, and syslog summary
"""

__version__ = "0.1.0"

from resticgroups.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
