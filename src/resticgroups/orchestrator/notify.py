"""Syslog notification of the run result."""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys

from resticgroups.orchestrator.summary import RunSummary

logger = logging.getLogger(__name__)

DEFAULT_SYSLOG_TAG = "restic-backup"


class _ReportingSysLogHandler(logging.handlers.SysLogHandler):
    """SysLogHandler that keeps the last emit failure instead of printing it."""

    last_error: BaseException | None = None

    def handleError(self, record: logging.LogRecord) -> None:
        self.last_error = sys.exc_info()[1]


def _default_address() -> str | tuple[str, int]:
    for candidate in ("/dev/log", "/var/run/syslog"):
        if os.path.exists(candidate):
            return candidate
    return ("localhost", logging.handlers.SYSLOG_UDP_PORT)


def summary_message(summary: RunSummary) -> str:
    """Single-line run result, as sent to syslog."""
    return (
        f"Backup finished: success={summary.successful_groups} "
        f"fail={summary.failed_groups} "
        f"duration={int(round(summary.total_duration_seconds))}s "
        f"groups_processed={summary.total_groups}"
    )


def notify_syslog(
    summary: RunSummary,
    tag: str = DEFAULT_SYSLOG_TAG,
    address: str | tuple[str, int] | None = None,
) -> bool:
    """
    Send the run result to the system log.

    Args:
        summary: Final run summary.
        tag: Syslog identifier.
        address: Unix socket path or (host, port). Auto-detected when None.

    Returns:
        True if the message was handed to syslog.
    """
    message = summary_message(summary)
    try:
        handler = _ReportingSysLogHandler(
            address=address or _default_address(),
            facility=logging.handlers.SysLogHandler.LOG_USER,
        )
    except Exception as e:
        logger.warning(f"Syslog unavailable, summary not sent: {e}")
        return False

    handler.ident = f"{tag}: "
    level = logging.INFO if summary.failed_groups == 0 else logging.ERROR
    record = logging.LogRecord(tag, level, __file__, 0, message, None, None)

    try:
        handler.emit(record)
        error = handler.last_error
    except Exception as e:
        error = e
    finally:
        handler.close()

    if error is not None:
        logger.warning(f"Could not send summary to syslog: {error}")
        return False
    return True
