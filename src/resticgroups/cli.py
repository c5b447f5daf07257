"""
Command-line interface for resticgroups.

Runs one backup pass over the configured groups, or over a single group when
its name is given:

    resticgroups              # all groups, in catalog order
    resticgroups home         # only the group named "home"

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import NoReturn

from resticgroups import __version__
from resticgroups.config.settings import ConfigurationError, Settings, load_config
from resticgroups.orchestrator.runner import execute_run

# Set up logging
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Maximum log file size before rotation (5 MB)
MAX_LOG_SIZE = 5 * 1024 * 1024
# Number of backup log files to keep
LOG_BACKUP_COUNT = 3


def output_error(message: str) -> None:
    """
    Print an error message (always shown, even in quiet mode).

    Args:
        message: The error message to print.
    """
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the resticgroups CLI."""
    parser = argparse.ArgumentParser(
        prog="resticgroups",
        description="Back up named groups of paths to a restic repository",
        epilog=(
            "Required settings: RESTIC_REPOSITORY, VAULT_ADDR, VAULT_SECRET_PATH, "
            "VAULT_TOKEN and BACKUP_GROUPS (environment, ~/restic.env or config file)."
        ),
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v for debug output, including commands run)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only log warnings and errors to the console",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="PATH",
        help="Path to configuration file (default: ~/.resticgroups/config.yaml)",
    )
    parser.add_argument(
        "--env-file",
        metavar="PATH",
        help="Env file to load before reading the environment (default: ~/restic.env)",
    )
    parser.add_argument(
        "--no-check",
        action="store_true",
        help="Skip the repository integrity check after the backups",
    )
    parser.add_argument(
        "--no-syslog",
        action="store_true",
        help="Do not send the run summary to syslog",
    )
    parser.add_argument(
        "group",
        nargs="?",
        default=None,
        help="Only back up the group with this name (default: all groups)",
    )

    return parser


def setup_logging(
    verbose: int,
    quiet: bool,
    log_file: str | None = None,
    log_level: str = "INFO",
) -> None:
    """
    Configure logging for a run.

    The console follows -v/-q. The log file, when set, records at the
    configured log_level (or DEBUG with -v) and is rotated by size.
    """
    if quiet:
        console_level = logging.WARNING
    elif verbose == 0:
        console_level = logging.getLevelName(log_level)
    else:
        console_level = logging.DEBUG

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        path = Path(log_file).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=MAX_LOG_SIZE, backupCount=LOG_BACKUP_COUNT
            )
        except OSError as e:
            logger.warning(f"Cannot open log file {path}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG if verbose > 0 else logging.getLevelName(log_level))
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    # paramiko logs every transport step at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def apply_arguments(settings: Settings, args: argparse.Namespace) -> Settings:
    """Apply command-line switches on top of loaded settings."""
    if args.no_check:
        settings.restic.check = False
    if args.no_syslog:
        settings.syslog.enabled = False
    return settings


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the resticgroups CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_config(
            Path(args.config) if args.config else None,
            Path(args.env_file) if args.env_file else None,
        )
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(1)

    settings = apply_arguments(settings, args)
    setup_logging(args.verbose, args.quiet, settings.log_file, settings.log_level)

    try:
        exit_code = execute_run(settings, group_filter=args.group or None)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logger.error("Backup run interrupted")
        sys.exit(130)
    except Exception as e:
        if args.verbose > 0:
            raise
        logger.exception(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
