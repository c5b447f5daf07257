"""
Group backup orchestration.

GroupBackupOrchestrator processes backup groups one at a time, in catalog
order. Each group moves through:

    PENDING -> SKIPPED                          (no paths)
    PENDING -> BACKING_UP -> FAILED             (restic backup failed)
    PENDING -> BACKING_UP -> RETAINING -> done  (success, whether or not
                                                 forget/prune succeeded)

A failing group never stops the loop. Retention and free-space problems are
warnings only and never change a group's result.

execute_run wraps the orchestrator with the run-level steps: checking
configuration, fetching the passphrase, loading the catalog, the final
integrity check, the summary and the exit code.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from resticgroups.catalog.groups import (
    BackupGroup,
    CatalogError,
    GroupNotFoundError,
    load_catalog_source,
    parse_catalog,
)
from resticgroups.catalog.retention import RetentionPolicyError, resolve_retention
from resticgroups.config.secrets import SecretStoreError, fetch_repository_password
from resticgroups.config.settings import (
    ConfigurationError,
    Settings,
    VaultConfig,
    require_run_settings,
)
from resticgroups.orchestrator.metrics import MetricsSink
from resticgroups.orchestrator.notify import notify_syslog
from resticgroups.orchestrator.summary import (
    GroupOutcome,
    GroupStatus,
    RunSummary,
    format_summary,
)
from resticgroups.restic.client import DEFAULT_CHECK_SUBSET, ResticClient
from resticgroups.restic.probe import UNKNOWN_FREE_SPACE, RepositoryProbe, local_free_space

logger = logging.getLogger(__name__)


class GroupBackupOrchestrator:
    """
    Runs backup and retention for a sequence of groups.

    Attributes:
        client: Restic client bound to the repository.
        probe: Free-space probe for the repository host, or None to skip.
        metrics: Sink for per-group metric records, or None.
    """

    def __init__(
        self,
        client: ResticClient,
        probe: RepositoryProbe | None = None,
        metrics: MetricsSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.probe = probe
        self.metrics = metrics
        self._clock = clock

    def run(self, groups: Iterable[BackupGroup]) -> RunSummary:
        """
        Process every group in order.

        Args:
            groups: Groups to process, already filtered.

        Returns:
            RunSummary folded from each group's outcome.
        """
        summary = RunSummary()
        for group in groups:
            summary = summary.add(self.process_group(group))
        return summary

    def process_group(self, group: BackupGroup) -> GroupOutcome:
        """
        Back up one group and apply its retention policy.

        Args:
            group: The group to process.

        Returns:
            The group's outcome. Never raises for restic failures.
        """
        if not group.has_paths:
            logger.warning(f"Group [{group.name}] has no paths, skipping")
            return GroupOutcome(group=group.name, status=GroupStatus.SKIPPED)

        logger.info(f"Starting backup group [{group.name}]")
        logger.info(f"  Paths: {' '.join(group.paths)}")

        started = self._clock()
        result = self.client.backup(group)
        duration = self._clock() - started

        if not result.ok:
            detail = f": {result.error}" if result.error else ""
            logger.error(f"Backup for [{group.name}] FAILED{detail}")
            return self._finish(
                GroupOutcome(
                    group=group.name,
                    status=GroupStatus.FAILED,
                    duration_seconds=duration,
                )
            )

        logger.info(f"Backup for [{group.name}] successful ({duration:.0f}s)")

        repo_free = self._repository_free_space()
        retention_applied = self._apply_retention(group)

        return self._finish(
            GroupOutcome(
                group=group.name,
                status=GroupStatus.SUCCESS,
                duration_seconds=duration,
                repo_free=repo_free,
                retention_applied=retention_applied,
            )
        )

    def verify_repository(self, read_data_subset: str = DEFAULT_CHECK_SUBSET) -> bool:
        """
        Run the repository integrity check.

        A failed check is reported but never affects the run's exit code.
        """
        logger.info("Running repository integrity check")
        result = self.client.check(read_data_subset)
        if result.ok:
            logger.info("Repository integrity check passed")
        else:
            logger.warning("Integrity check reported issues")
        return result.ok

    def _repository_free_space(self) -> str:
        if self.probe is None:
            return UNKNOWN_FREE_SPACE
        logger.info("Checking remote repository free space...")
        free = self.probe.free_space()
        logger.info(f"  Repository free space: {free}")
        return free

    def _apply_retention(self, group: BackupGroup) -> bool:
        try:
            policy = resolve_retention(group.retention)
        except RetentionPolicyError as e:
            logger.warning(f"Invalid retention for [{group.name}], skipping retention: {e}")
            return False

        logger.info(f"Applying retention for [{group.name}]")
        logger.info(f"  Keep: {policy.describe()}")

        result = self.client.forget(group, policy)
        if not result.ok:
            logger.warning(f"Retention failed for [{group.name}] (backup OK)")
            return False

        logger.info(f"Retention applied for [{group.name}]")
        return True

    def _finish(self, outcome: GroupOutcome) -> GroupOutcome:
        if self.metrics is not None:
            self.metrics.record(outcome)
        return outcome


# -----------------------------------------------------------------------------
# Run driver
# -----------------------------------------------------------------------------


def _fetch_from_vault(vault: VaultConfig) -> str:
    return fetch_repository_password(
        address=vault.address,
        token=vault.token,
        path=vault.secret_path,
        field=vault.field,
        kv_version=vault.kv_version,
        namespace=vault.namespace or None,
    )


def execute_run(
    settings: Settings,
    group_filter: str | None = None,
    password_fetcher: Callable[[VaultConfig], str] = _fetch_from_vault,
    client_factory: Callable[..., ResticClient] = ResticClient,
    probe_factory: Callable[..., RepositoryProbe] | None = RepositoryProbe,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    Perform a complete backup run.

    Args:
        settings: Loaded configuration.
        group_filter: Only run the group with this name.
        password_fetcher: Returns the repository passphrase for a Vault config.
        client_factory: Builds the restic client.
        probe_factory: Builds the free-space probe; None disables probing.
        clock: Monotonic clock, replaceable in tests.

    Returns:
        Process exit code: 0 if no group failed, 1 otherwise or on any
        fatal precondition error.
    """
    run_started = clock()
    logger.info("=== Starting Restic backup ===")

    if group_filter:
        logger.info(f"Group filter specified: [{group_filter}]")
    else:
        logger.info("No group filter specified - will process all groups")

    try:
        require_run_settings(settings)

        logger.info("Authenticating to Vault...")
        password = password_fetcher(settings.vault)
        if not password:
            logger.error("Empty password retrieved from Vault")
            return 1
        logger.info("Vault authentication OK")

        raw_catalog = load_catalog_source(settings.backup_groups, settings.backup_groups_file)
        groups = parse_catalog(raw_catalog, group_filter)
    except ConfigurationError as e:
        logger.error(f"ERROR: {e}")
        return 1
    except SecretStoreError as e:
        logger.error(f"Failed to fetch password from Vault: {e}")
        return 1
    except GroupNotFoundError as e:
        logger.error(f"ERROR: {e}")
        logger.error("  Available groups:")
        for name in e.available:
            logger.error(f"     - {name}")
        return 1
    except CatalogError as e:
        logger.error(f"ERROR: {e}")
        if e.raw_preview:
            logger.error("  Raw BACKUP_GROUPS value:")
            for line in e.raw_preview:
                logger.error(f"    {line}")
        return 1

    if group_filter:
        logger.info(f"Running ONLY group: [{group_filter}]")
    else:
        logger.info(f"Running ALL {len(groups)} group(s)")

    client = client_factory(
        settings.restic.repository,
        password,
        binary=settings.restic.binary,
        timeout=settings.restic.step_timeout,
    )
    probe = (
        probe_factory(settings.restic.repository, timeout=settings.restic.step_timeout)
        if probe_factory is not None
        else None
    )
    metrics = MetricsSink(settings.metrics_file or None)
    if metrics.enabled:
        logger.debug(f"Writing metrics to {metrics.path}")
    else:
        logger.info("Metrics file not configured, per-group metrics disabled")

    orchestrator = GroupBackupOrchestrator(client, probe=probe, metrics=metrics, clock=clock)
    summary = orchestrator.run(groups)

    if settings.restic.check:
        orchestrator.verify_repository(settings.restic.check_subset)

    logger.info(f"Local disk free space: {local_free_space('/')}")

    summary = summary.with_duration(clock() - run_started)
    for line in format_summary(summary, group_filter):
        logger.info(line)

    if settings.syslog.enabled:
        notify_syslog(summary, tag=settings.syslog.tag)

    if summary.exit_code == 0:
        logger.info("All backups completed successfully")
    else:
        logger.error("Some backups failed")

    return summary.exit_code
