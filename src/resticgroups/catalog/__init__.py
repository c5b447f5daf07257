"""
Backup group catalog and retention policies.

Usage:
    from resticgroups.catalog import load_catalog_source, parse_catalog

    raw = load_catalog_source(settings.backup_groups, settings.backup_groups_file)
    groups = parse_catalog(raw, filter_name="home")
"""

from resticgroups.catalog.groups import (
    BackupGroup,
    CatalogError,
    GroupNotFoundError,
    filter_groups,
    load_catalog_source,
    parse_catalog,
)
from resticgroups.catalog.retention import (
    DEFAULT_RETENTION,
    RETENTION_KEYS,
    RetentionPolicy,
    RetentionPolicyError,
    RetentionSpec,
    resolve_retention,
)

__all__ = [
    # Groups
    "BackupGroup",
    "CatalogError",
    "GroupNotFoundError",
    "filter_groups",
    "load_catalog_source",
    "parse_catalog",
    # Retention
    "DEFAULT_RETENTION",
    "RETENTION_KEYS",
    "RetentionPolicy",
    "RetentionPolicyError",
    "RetentionSpec",
    "resolve_retention",
]
