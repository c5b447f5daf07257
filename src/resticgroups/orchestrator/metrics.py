"""
Structured metrics output.

One JSON object per processed group is appended to the metrics file, one
object per line, so the file can be tailed or loaded line by line.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from resticgroups.orchestrator.summary import GroupOutcome

logger = logging.getLogger(__name__)


class MetricsSink:
    """Appends per-group metric records to a JSON Lines file."""

    def __init__(self, path: str | Path | None) -> None:
        """
        Initialize the sink.

        Args:
            path: Metrics file. None disables metrics.
        """
        self.path = Path(path).expanduser() if path else None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def record(self, outcome: GroupOutcome) -> bool:
        """
        Append a metric record for outcome.

        Skipped groups are not recorded.

        Returns:
            True if a record was written.
        """
        if self.path is None or outcome.skipped:
            return False

        line = json.dumps(outcome.to_metric())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.warning(f"Could not write metrics to {self.path}: {e}")
            return False
        return True
