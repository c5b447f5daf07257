"""
Per-group outcomes and the run summary built from them.

RunSummary is a value: each processed group yields a GroupOutcome, and
RunSummary.add returns a new summary with that outcome folded in. The
orchestrator never keeps counters of its own.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from resticgroups.restic.probe import UNKNOWN_FREE_SPACE


class GroupStatus(Enum):
    """Terminal state of a group within one run."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class GroupOutcome:
    """
    Result of processing one backup group.

    Attributes:
        group: Group name.
        status: Terminal state.
        duration_seconds: Wall-clock backup time. Zero for skipped groups.
        repo_free: Free space reported for the repository after the backup.
        retention_applied: True only if forget/prune ran and succeeded.
        finished_at: UTC time the group finished.
    """

    group: str
    status: GroupStatus
    duration_seconds: float = 0.0
    repo_free: str = UNKNOWN_FREE_SPACE
    retention_applied: bool = False
    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def succeeded(self) -> bool:
        return self.status is GroupStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status is GroupStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status is GroupStatus.SKIPPED

    def to_metric(self) -> dict[str, Any]:
        """Metric record as appended to the metrics file."""
        return {
            "timestamp": self.finished_at.strftime("%Y-%m-%d %H:%M:%S"),
            "group": self.group,
            "duration_sec": int(round(self.duration_seconds)),
            "result": self.status.value,
            "repo_free": self.repo_free,
        }


@dataclass(frozen=True)
class RunSummary:
    """
    Aggregate result of a run.

    Skipped groups count toward total_groups but neither success nor failure.
    """

    total_groups: int = 0
    successful_groups: int = 0
    failed_groups: int = 0
    skipped_groups: int = 0
    total_duration_seconds: float = 0.0
    outcomes: tuple[GroupOutcome, ...] = ()

    def add(self, outcome: GroupOutcome) -> RunSummary:
        """Return a new summary including outcome."""
        return replace(
            self,
            total_groups=self.total_groups + 1,
            successful_groups=self.successful_groups + int(outcome.succeeded),
            failed_groups=self.failed_groups + int(outcome.failed),
            skipped_groups=self.skipped_groups + int(outcome.skipped),
            total_duration_seconds=self.total_duration_seconds + outcome.duration_seconds,
            outcomes=(*self.outcomes, outcome),
        )

    def with_duration(self, seconds: float) -> RunSummary:
        """Return a copy whose total duration is the whole run's wall-clock time."""
        return replace(self, total_duration_seconds=seconds)

    @property
    def exit_code(self) -> int:
        """0 if no group failed, otherwise 1."""
        return 0 if self.failed_groups == 0 else 1


def finalize(outcomes: Iterable[GroupOutcome]) -> RunSummary:
    """
    Fold a sequence of outcomes into a RunSummary.

    Args:
        outcomes: Outcomes in processing order.

    Returns:
        Summary with counts and summed group durations.
    """
    summary = RunSummary()
    for outcome in outcomes:
        summary = summary.add(outcome)
    return summary


SUMMARY_RULE = "═" * 57


def format_summary(summary: RunSummary, group_filter: str | None = None) -> list[str]:
    """
    Render the end-of-run summary block.

    Args:
        summary: Final run summary.
        group_filter: The group name the run was restricted to, if any.

    Returns:
        Log lines, framed by rule lines.
    """
    lines = [
        SUMMARY_RULE,
        "BACKUP SUMMARY",
        f"  Groups processed: {summary.total_groups}",
        f"  Successful: {summary.successful_groups}",
        f"  Failed: {summary.failed_groups}",
        f"  Skipped: {summary.skipped_groups}",
        f"  Total duration: {int(round(summary.total_duration_seconds))}s",
    ]
    if group_filter:
        lines.append(f"  Group filter: [{group_filter}]")
    lines.append(SUMMARY_RULE)
    return lines
