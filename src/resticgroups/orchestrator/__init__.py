"""
Backup run orchestration.

Usage:
    from resticgroups.orchestrator import GroupBackupOrchestrator

    orchestrator = GroupBackupOrchestrator(client, probe, metrics)
    summary = orchestrator.run(groups)
    exit_code = summary.exit_code
"""

from resticgroups.orchestrator.metrics import MetricsSink
from resticgroups.orchestrator.notify import notify_syslog, summary_message
from resticgroups.orchestrator.runner import GroupBackupOrchestrator, execute_run
from resticgroups.orchestrator.summary import (
    GroupOutcome,
    GroupStatus,
    RunSummary,
    finalize,
    format_summary,
)

__all__ = [
    # Orchestration
    "GroupBackupOrchestrator",
    "execute_run",
    # Results
    "GroupOutcome",
    "GroupStatus",
    "RunSummary",
    "finalize",
    "format_summary",
    # Outputs
    "MetricsSink",
    "notify_syslog",
    "summary_message",
]
