"""Tests for group orchestration, metrics, summary and the run driver."""

import json
import logging
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

from resticgroups.catalog.groups import BackupGroup
from resticgroups.catalog.retention import RetentionPolicy, RetentionSpec
from resticgroups.config.secrets import SecretAuthenticationError
from resticgroups.config.settings import Settings
from resticgroups.orchestrator.metrics import MetricsSink
from resticgroups.orchestrator.notify import (
    _ReportingSysLogHandler,
    notify_syslog,
    summary_message,
)
from resticgroups.orchestrator.runner import GroupBackupOrchestrator, execute_run
from resticgroups.orchestrator.summary import (
    SUMMARY_RULE,
    GroupOutcome,
    GroupStatus,
    RunSummary,
    finalize,
    format_summary,
)
from resticgroups.restic.client import CommandResult


class FakeResticClient:
    """Records calls instead of running restic."""

    def __init__(
        self,
        failing_backups: tuple[str, ...] = (),
        forget_ok: bool = True,
        check_ok: bool = True,
    ) -> None:
        self.failing_backups = failing_backups
        self.forget_ok = forget_ok
        self.check_ok = check_ok
        self.backups: list[str] = []
        self.forgets: list[tuple[str, RetentionPolicy]] = []
        self.checks: list[str] = []

    def backup(self, group: BackupGroup) -> CommandResult:
        self.backups.append(group.name)
        if group.name in self.failing_backups:
            return CommandResult(ok=False, returncode=1, error="restic backup exited with status 1")
        return CommandResult(ok=True, returncode=0)

    def forget(self, group: BackupGroup, policy: RetentionPolicy) -> CommandResult:
        self.forgets.append((group.name, policy))
        return CommandResult(ok=self.forget_ok, returncode=0 if self.forget_ok else 1)

    def check(self, read_data_subset: str = "5%") -> CommandResult:
        self.checks.append(read_data_subset)
        return CommandResult(ok=self.check_ok)


class FakeClock:
    """Monotonic clock advancing a fixed step per reading."""

    def __init__(self, step: float = 10.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class TestGroupBackupOrchestrator(unittest.TestCase):
    """Tests for per-group processing."""

    def setUp(self) -> None:
        """Create an orchestrator around a fake client and probe."""
        self.client = FakeResticClient()
        self.probe = MagicMock()
        self.probe.free_space.return_value = "1.4T"
        self.orchestrator = GroupBackupOrchestrator(
            self.client, probe=self.probe, clock=FakeClock()
        )

    def test_success_applies_retention(self) -> None:
        """Test the full success path for one group."""
        group = BackupGroup("home", ("/home",), RetentionSpec(keep_daily=14))

        outcome = self.orchestrator.process_group(group)

        self.assertEqual(outcome.status, GroupStatus.SUCCESS)
        self.assertTrue(outcome.retention_applied)
        self.assertEqual(outcome.repo_free, "1.4T")
        self.assertEqual(outcome.duration_seconds, 10.0)
        self.assertEqual(self.client.forgets, [("home", RetentionPolicy(keep_daily=14))])

    def test_no_paths_skipped(self) -> None:
        """Test that a group without paths runs no restic command."""
        with self.assertLogs("resticgroups.orchestrator.runner", level="WARNING"):
            outcome = self.orchestrator.process_group(BackupGroup("empty", ()))

        self.assertEqual(outcome.status, GroupStatus.SKIPPED)
        self.assertEqual(self.client.backups, [])
        self.probe.free_space.assert_not_called()

    def test_backup_failure_skips_retention(self) -> None:
        """Test that forget is never run after a failed backup."""
        self.client.failing_backups = ("home",)

        with self.assertLogs("resticgroups.orchestrator.runner", level="ERROR") as logs:
            outcome = self.orchestrator.process_group(BackupGroup("home", ("/home",)))

        self.assertEqual(outcome.status, GroupStatus.FAILED)
        self.assertFalse(outcome.retention_applied)
        self.assertEqual(self.client.forgets, [])
        self.probe.free_space.assert_not_called()
        self.assertTrue(any("Backup for [home] FAILED" in line for line in logs.output))

    def test_retention_failure_keeps_success(self) -> None:
        """Test that a failed forget/prune does not fail the group."""
        self.client.forget_ok = False

        with self.assertLogs("resticgroups.orchestrator.runner", level="WARNING") as logs:
            outcome = self.orchestrator.process_group(BackupGroup("home", ("/home",)))

        self.assertEqual(outcome.status, GroupStatus.SUCCESS)
        self.assertFalse(outcome.retention_applied)
        self.assertTrue(
            any("Retention failed for [home] (backup OK)" in line for line in logs.output)
        )

    def test_invalid_retention_skips_forget(self) -> None:
        """Test that an invalid keep-count skips retention but not the backup."""
        group = BackupGroup("home", ("/home",), RetentionSpec(keep_daily=-1))

        with self.assertLogs("resticgroups.orchestrator.runner", level="WARNING"):
            outcome = self.orchestrator.process_group(group)

        self.assertEqual(outcome.status, GroupStatus.SUCCESS)
        self.assertEqual(self.client.forgets, [])

    def test_no_probe_reports_unknown(self) -> None:
        """Test that free space is unknown when probing is disabled."""
        orchestrator = GroupBackupOrchestrator(self.client, probe=None, clock=FakeClock())

        outcome = orchestrator.process_group(BackupGroup("home", ("/home",)))

        self.assertEqual(outcome.repo_free, "unknown")

    def test_failure_isolated(self) -> None:
        """Test that a failing group does not stop the groups after it."""
        self.client.failing_backups = ("b",)
        groups = [
            BackupGroup("a", ("/a",)),
            BackupGroup("b", ("/b",)),
            BackupGroup("c", ("/c",)),
        ]

        with self.assertLogs("resticgroups.orchestrator.runner", level="INFO"):
            summary = self.orchestrator.run(groups)

        self.assertEqual(self.client.backups, ["a", "b", "c"])
        self.assertEqual(summary.total_groups, 3)
        self.assertEqual(summary.successful_groups, 2)
        self.assertEqual(summary.failed_groups, 1)
        self.assertEqual(summary.exit_code, 1)
        self.assertEqual([o.group for o in summary.outcomes], ["a", "b", "c"])

    def test_metrics_recorded_for_processed_groups(self) -> None:
        """Test that success and failure are recorded and skips are not."""
        metrics = MagicMock()
        self.client.failing_backups = ("b",)
        orchestrator = GroupBackupOrchestrator(
            self.client, probe=None, metrics=metrics, clock=FakeClock()
        )

        orchestrator.run(
            [BackupGroup("a", ("/a",)), BackupGroup("b", ("/b",)), BackupGroup("c", ())]
        )

        recorded = [call.args[0].group for call in metrics.record.call_args_list]
        self.assertEqual(recorded, ["a", "b"])

    def test_verify_repository(self) -> None:
        """Test the integrity check result is passed through."""
        self.assertTrue(self.orchestrator.verify_repository("1/10"))
        self.assertEqual(self.client.checks, ["1/10"])

        self.client.check_ok = False
        with self.assertLogs("resticgroups.orchestrator.runner", level="WARNING"):
            self.assertFalse(self.orchestrator.verify_repository())


class TestRunSummary(unittest.TestCase):
    """Tests for RunSummary and finalize."""

    def test_empty(self) -> None:
        """Test that an empty run exits successfully."""
        summary = finalize([])

        self.assertEqual(summary.total_groups, 0)
        self.assertEqual(summary.exit_code, 0)

    def test_counts(self) -> None:
        """Test that counts add up and skips affect neither side."""
        summary = finalize(
            [
                GroupOutcome("a", GroupStatus.SUCCESS, 5.0),
                GroupOutcome("b", GroupStatus.SKIPPED),
                GroupOutcome("c", GroupStatus.SUCCESS, 7.0),
            ]
        )

        self.assertEqual(summary.total_groups, 3)
        self.assertEqual(summary.successful_groups, 2)
        self.assertEqual(summary.failed_groups, 0)
        self.assertEqual(summary.skipped_groups, 1)
        self.assertEqual(summary.total_duration_seconds, 12.0)
        self.assertEqual(summary.exit_code, 0)

    def test_add_returns_new_value(self) -> None:
        """Test that add leaves the original summary unchanged."""
        empty = RunSummary()

        updated = empty.add(GroupOutcome("a", GroupStatus.FAILED, 1.0))

        self.assertEqual(empty.total_groups, 0)
        self.assertEqual(updated.failed_groups, 1)
        self.assertEqual(updated.exit_code, 1)

    def test_with_duration(self) -> None:
        """Test replacing the total duration with the run's wall-clock time."""
        summary = finalize([GroupOutcome("a", GroupStatus.SUCCESS, 5.0)]).with_duration(42.0)

        self.assertEqual(summary.total_duration_seconds, 42.0)
        self.assertEqual(summary.successful_groups, 1)


class TestGroupOutcome(unittest.TestCase):
    """Tests for metric records."""

    def test_to_metric(self) -> None:
        """Test the metric record fields and formats."""
        outcome = GroupOutcome(
            "home",
            GroupStatus.SUCCESS,
            duration_seconds=12.6,
            repo_free="1.4T",
            finished_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC),
        )

        self.assertEqual(
            outcome.to_metric(),
            {
                "timestamp": "2024-01-02 03:04:05",
                "group": "home",
                "duration_sec": 13,
                "result": "success",
                "repo_free": "1.4T",
            },
        )


class TestFormatSummary(unittest.TestCase):
    """Tests for the summary block."""

    def test_block(self) -> None:
        """Test the rendered lines."""
        summary = finalize(
            [GroupOutcome("a", GroupStatus.SUCCESS), GroupOutcome("b", GroupStatus.FAILED)]
        ).with_duration(61.4)

        lines = format_summary(summary)

        self.assertEqual(lines[0], SUMMARY_RULE)
        self.assertEqual(lines[-1], SUMMARY_RULE)
        self.assertIn("BACKUP SUMMARY", lines)
        self.assertIn("  Groups processed: 2", lines)
        self.assertIn("  Successful: 1", lines)
        self.assertIn("  Failed: 1", lines)
        self.assertIn("  Total duration: 61s", lines)
        self.assertFalse(any("Group filter" in line for line in lines))

    def test_block_with_filter(self) -> None:
        """Test that the filter is echoed when one was given."""
        lines = format_summary(RunSummary(), group_filter="home")

        self.assertIn("  Group filter: [home]", lines)


class TestMetricsSink(unittest.TestCase):
    """Tests for the JSON Lines metrics file."""

    def setUp(self) -> None:
        """Create temporary directory for metrics."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.path = Path(self.temp_dir.name) / "sub" / "metrics.json"

    def test_appends_one_line_per_record(self) -> None:
        """Test that records are appended, one JSON object per line."""
        sink = MetricsSink(self.path)

        self.assertTrue(sink.record(GroupOutcome("a", GroupStatus.SUCCESS, 3.0)))
        self.assertTrue(sink.record(GroupOutcome("b", GroupStatus.FAILED, 1.0)))

        lines = self.path.read_text().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertEqual(json.loads(lines[0])["group"], "a")
        self.assertEqual(json.loads(lines[1])["result"], "failed")

    def test_skipped_not_recorded(self) -> None:
        """Test that skipped groups leave no record."""
        sink = MetricsSink(self.path)

        self.assertFalse(sink.record(GroupOutcome("a", GroupStatus.SKIPPED)))
        self.assertFalse(self.path.exists())

    def test_disabled(self) -> None:
        """Test that an empty path disables metrics."""
        sink = MetricsSink(None)

        self.assertFalse(sink.enabled)
        self.assertFalse(sink.record(GroupOutcome("a", GroupStatus.SUCCESS)))

    def test_write_failure_is_warning(self) -> None:
        """Test that an unwritable metrics file does not raise."""
        sink = MetricsSink(self.temp_dir.name)

        with self.assertLogs("resticgroups.orchestrator.metrics", level="WARNING"):
            self.assertFalse(sink.record(GroupOutcome("a", GroupStatus.SUCCESS)))


class TestNotifySyslog(unittest.TestCase):
    """Tests for the syslog notification."""

    def test_summary_message(self) -> None:
        """Test the one-line result format."""
        summary = finalize(
            [GroupOutcome("a", GroupStatus.SUCCESS), GroupOutcome("b", GroupStatus.FAILED)]
        ).with_duration(30.0)

        self.assertEqual(
            summary_message(summary),
            "Backup finished: success=1 fail=1 duration=30s groups_processed=2",
        )

    @patch("resticgroups.orchestrator.notify._ReportingSysLogHandler")
    def test_sends_record(self, mock_handler_class: MagicMock) -> None:
        """Test that the summary is emitted with the tag and closed afterwards."""
        handler = mock_handler_class.return_value
        handler.last_error = None
        summary = finalize([GroupOutcome("a", GroupStatus.FAILED)])

        self.assertTrue(notify_syslog(summary, tag="restic-backup", address="/dev/log"))

        record = handler.emit.call_args.args[0]
        self.assertEqual(record.levelno, logging.ERROR)
        self.assertEqual(record.getMessage(), summary_message(summary))
        self.assertEqual(handler.ident, "restic-backup: ")
        handler.close.assert_called_once()

    @patch("resticgroups.orchestrator.notify._ReportingSysLogHandler")
    def test_success_is_info(self, mock_handler_class: MagicMock) -> None:
        """Test that a clean run is logged at INFO."""
        handler = mock_handler_class.return_value
        handler.last_error = None

        notify_syslog(finalize([GroupOutcome("a", GroupStatus.SUCCESS)]), address="/dev/log")

        self.assertEqual(handler.emit.call_args.args[0].levelno, logging.INFO)

    @patch("resticgroups.orchestrator.notify._ReportingSysLogHandler")
    def test_unavailable(self, mock_handler_class: MagicMock) -> None:
        """Test that a missing syslog socket is only a warning."""
        mock_handler_class.side_effect = OSError("No such file")

        with self.assertLogs("resticgroups.orchestrator.notify", level="WARNING"):
            self.assertFalse(notify_syslog(RunSummary(), address="/nonexistent"))

    @patch("resticgroups.orchestrator.notify._ReportingSysLogHandler")
    def test_emit_failure(self, mock_handler_class: MagicMock) -> None:
        """Test that a send failure is a warning and the handler is still closed."""
        handler = mock_handler_class.return_value
        handler.emit.side_effect = OSError("Connection refused")

        with self.assertLogs("resticgroups.orchestrator.notify", level="WARNING"):
            self.assertFalse(notify_syslog(RunSummary(), address="/dev/log"))
        handler.close.assert_called_once()

    @patch("resticgroups.orchestrator.notify._ReportingSysLogHandler")
    def test_unexpected_emit_error(self, mock_handler_class: MagicMock) -> None:
        """Test that errors other than OSError are also only a warning."""
        handler = mock_handler_class.return_value
        handler.emit.side_effect = UnicodeEncodeError("ascii", "\u00e9", 0, 1, "bad")

        with self.assertLogs("resticgroups.orchestrator.notify", level="WARNING"):
            self.assertFalse(notify_syslog(RunSummary(), address="/dev/log"))
        handler.close.assert_called_once()

    def test_failure_inside_handler_reported(self) -> None:
        """Test that an error the handler catches itself still makes the send fail."""
        with patch.object(
            _ReportingSysLogHandler, "format", side_effect=ValueError("bad format")
        ):
            with self.assertLogs("resticgroups.orchestrator.notify", level="WARNING") as logs:
                sent = notify_syslog(RunSummary(), address=("localhost", 514))

        self.assertFalse(sent)
        self.assertTrue(any("bad format" in line for line in logs.output))


class TestExecuteRun(unittest.TestCase):
    """End-to-end runs with restic, Vault and SSH replaced by fakes."""

    def setUp(self) -> None:
        """Create settings pointing at a temporary metrics file."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.metrics_path = Path(self.temp_dir.name) / "metrics.json"

        self.settings = Settings(
            log_file="",
            metrics_file=str(self.metrics_path),
            backup_groups=json.dumps(
                [
                    {"name": "a", "paths": ["/x"]},
                    {"name": "b", "paths": []},
                ]
            ),
        )
        self.settings.restic.repository = "sftp:backup@nas:/srv/restic"
        self.settings.restic.check = False
        self.settings.vault.address = "https://vault.example.com:8200"
        self.settings.vault.token = "s.token"
        self.settings.vault.secret_path = "secret/restic"
        self.settings.syslog.enabled = False

        self.client = FakeResticClient()
        self.passwords: list[str] = []

    def _client_factory(self, repository: str, password: str, **kwargs) -> FakeResticClient:
        self.passwords.append(password)
        return self.client

    def _run(self, group_filter: str | None = None, fetcher=None) -> tuple[int, list[str]]:
        with self.assertLogs("resticgroups", level="INFO") as logs:
            code = execute_run(
                self.settings,
                group_filter=group_filter,
                password_fetcher=fetcher or (lambda vault: "repo-pass"),
                client_factory=self._client_factory,
                probe_factory=None,
                clock=FakeClock(),
            )
        return code, logs.output

    def test_success_with_skipped_group(self) -> None:
        """Test a run where one group succeeds and one has no paths."""
        code, output = self._run()

        self.assertEqual(code, 0)
        self.assertEqual(self.client.backups, ["a"])
        self.assertEqual(self.passwords, ["repo-pass"])
        self.assertTrue(any("Groups processed: 2" in line for line in output))
        self.assertTrue(any("Successful: 1" in line for line in output))
        self.assertTrue(any("Skipped: 1" in line for line in output))

        records = self.metrics_path.read_text().splitlines()
        self.assertEqual(len(records), 1)
        self.assertEqual(json.loads(records[0])["result"], "success")

    def test_metrics_disabled(self) -> None:
        """Test a run with no metrics file configured."""
        self.settings.metrics_file = ""

        code, output = self._run()

        self.assertEqual(code, 0)
        self.assertFalse(self.metrics_path.exists())
        self.assertTrue(any("per-group metrics disabled" in line for line in output))

    def test_failure_sets_exit_code(self) -> None:
        """Test that a failed backup exits 1 without running retention."""
        self.client.failing_backups = ("a",)

        code, output = self._run()

        self.assertEqual(code, 1)
        self.assertEqual(self.client.forgets, [])
        self.assertTrue(any("Failed: 1" in line for line in output))
        self.assertTrue(any("Some backups failed" in line for line in output))

    def test_unknown_filter(self) -> None:
        """Test that an unknown group name exits 1 before any backup."""
        code, output = self._run(group_filter="nonexistent")

        self.assertEqual(code, 1)
        self.assertEqual(self.client.backups, [])
        self.assertEqual(self.passwords, [])
        self.assertTrue(any("     - a" in line for line in output))

    def test_filter_runs_only_that_group(self) -> None:
        """Test a filtered run."""
        self.settings.backup_groups = json.dumps(
            [{"name": "a", "paths": ["/x"]}, {"name": "c", "paths": ["/y"]}]
        )

        code, output = self._run(group_filter="c")

        self.assertEqual(code, 0)
        self.assertEqual(self.client.backups, ["c"])
        self.assertTrue(any("Group filter: [c]" in line for line in output))

    def test_missing_setting(self) -> None:
        """Test that a missing required setting exits 1 before Vault is asked."""
        self.settings.restic.repository = ""
        fetcher = MagicMock(return_value="repo-pass")

        code, output = self._run(fetcher=fetcher)

        self.assertEqual(code, 1)
        fetcher.assert_not_called()
        self.assertTrue(any("RESTIC_REPOSITORY is not set" in line for line in output))

    def test_vault_failure(self) -> None:
        """Test that a Vault error is fatal."""
        fetcher = MagicMock(side_effect=SecretAuthenticationError("denied"))

        code, _ = self._run(fetcher=fetcher)

        self.assertEqual(code, 1)
        self.assertEqual(self.client.backups, [])

    def test_empty_password(self) -> None:
        """Test that an empty passphrase is fatal."""
        code, _ = self._run(fetcher=lambda vault: "")

        self.assertEqual(code, 1)
        self.assertEqual(self.client.backups, [])

    def test_invalid_catalog_logs_preview(self) -> None:
        """Test that an unparsable catalog is fatal and shown in the log."""
        self.settings.backup_groups = "[{not json"

        code, output = self._run()

        self.assertEqual(code, 1)
        self.assertTrue(any("[{not json" in line for line in output))

    def test_integrity_check(self) -> None:
        """Test that the check runs after the groups and never changes the exit code."""
        self.settings.restic.check = True
        self.settings.restic.check_subset = "10%"
        self.client.check_ok = False

        code, _ = self._run()

        self.assertEqual(code, 0)
        self.assertEqual(self.client.checks, ["10%"])

    @patch("resticgroups.orchestrator.runner.notify_syslog")
    def test_syslog_notified(self, mock_notify: MagicMock) -> None:
        """Test that the summary goes to syslog when enabled."""
        self.settings.syslog.enabled = True
        self.settings.syslog.tag = "nightly"

        self._run()

        summary = mock_notify.call_args.args[0]
        self.assertEqual(summary.total_groups, 2)
        self.assertEqual(mock_notify.call_args.kwargs["tag"], "nightly")


if __name__ == "__main__":
    unittest.main()
