"""
Backup group catalog parsing.

The catalog is an ordered list of records:

    [
        {"name": "home", "paths": ["/home"], "retention": {"keep_daily": 14}},
        {"name": "etc", "paths": ["/etc"]}
    ]

It is usually supplied through the BACKUP_GROUPS setting, either as literal
JSON or as the path to a file holding it. Text that is not valid JSON is
read with yaml.safe_load, so YAML catalogs are accepted as well.

Catalog order is processing order. Duplicate names are preserved.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from resticgroups.catalog.retention import RetentionSpec

logger = logging.getLogger(__name__)

# Number of raw catalog lines echoed to the log when parsing fails
RAW_PREVIEW_LINES = 40


class CatalogError(Exception):
    """Raised when the group catalog cannot be loaded or is malformed."""

    def __init__(self, message: str, raw_preview: list[str] | None = None) -> None:
        self.raw_preview = raw_preview or []
        super().__init__(message)


class GroupNotFoundError(CatalogError):
    """
    Raised when a requested group name matches no catalog entry.

    Attributes:
        name: The requested group name.
        available: Names present in the catalog, in catalog order.
    """

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(f"Group '{name}' not found in BACKUP_GROUPS")


@dataclass(frozen=True)
class BackupGroup:
    """
    A named set of paths backed up and pruned together.

    Attributes:
        name: Group name, also used as the restic snapshot tag.
        paths: Paths passed to a single ``restic backup`` call.
        retention: Retention block as written in the catalog.
    """

    name: str
    paths: tuple[str, ...] = ()
    retention: RetentionSpec = field(default_factory=RetentionSpec)

    @property
    def has_paths(self) -> bool:
        """True if there is anything to back up."""
        return len(self.paths) > 0


def load_catalog_source(
    value: str | list[Any] | None,
    groups_file: str | Path | None = None,
) -> Any:
    """
    Load the raw catalog structure from settings.

    Resolution order:
        1. groups_file, when set and pointing at an existing file
        2. value, when it is already a parsed list (from a YAML config file)
        3. value, when it names an existing file
        4. value as literal JSON/YAML text

    Args:
        value: The BACKUP_GROUPS setting (literal text, a file path, or a list).
        groups_file: The BACKUP_GROUPS_FILE setting.

    Returns:
        The parsed structure (normally a list of mappings).

    Raises:
        CatalogError: If no source is available or the text cannot be parsed.
    """
    if groups_file and Path(groups_file).is_file():
        text = _read_catalog_file(Path(groups_file))
    elif value is not None and not isinstance(value, str):
        # Already parsed from the YAML config; parse_catalog checks the shape
        return value
    elif value and _looks_like_path(value) and Path(value).is_file():
        text = _read_catalog_file(Path(value))
    else:
        text = value

    if not text or not text.strip():
        raise CatalogError("BACKUP_GROUPS is empty")

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise CatalogError(
            f"Failed to parse BACKUP_GROUPS as JSON: {e}",
            raw_preview=text.splitlines()[:RAW_PREVIEW_LINES],
        ) from e


def _looks_like_path(value: str) -> bool:
    stripped = value.strip()
    return bool(stripped) and "\n" not in stripped and stripped[0] not in "[{"


def _read_catalog_file(path: Path) -> str:
    try:
        return path.read_text()
    except OSError as e:
        raise CatalogError(f"Cannot read groups file {path}: {e}") from e


def _parse_record(index: int, record: Any) -> BackupGroup:
    if not isinstance(record, Mapping):
        raise CatalogError(
            f"Group #{index + 1} must be an object, got {type(record).__name__}"
        )

    name = record.get("name")
    if not isinstance(name, str) or not name.strip():
        raise CatalogError(f"Group #{index + 1} has a missing or empty 'name'")

    paths = record.get("paths")
    if paths is None:
        paths = []
    if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
        raise CatalogError(f"Group [{name}]: 'paths' must be a list of strings")

    retention = record.get("retention")
    if retention is not None and not isinstance(retention, Mapping):
        raise CatalogError(f"Group [{name}]: 'retention' must be an object")

    return BackupGroup(
        name=name,
        paths=tuple(p for p in paths if p.strip()),
        retention=RetentionSpec.from_mapping(retention),
    )


def filter_groups(groups: Sequence[BackupGroup], filter_name: str | None) -> list[BackupGroup]:
    """
    Restrict the catalog to the groups named filter_name.

    Args:
        groups: Parsed catalog in order.
        filter_name: Exact, case-sensitive group name. Empty or None keeps
            every group.

    Returns:
        Matching groups in catalog order.

    Raises:
        GroupNotFoundError: If filter_name matches nothing.
    """
    if not filter_name:
        return list(groups)

    selected = [g for g in groups if g.name == filter_name]
    if not selected:
        raise GroupNotFoundError(filter_name, [g.name for g in groups])

    if len(selected) > 1:
        logger.warning(
            f"Group name '{filter_name}' appears {len(selected)} times in the catalog; "
            "all matching entries will run"
        )

    return selected


def parse_catalog(raw_catalog: Any, filter_name: str | None = None) -> list[BackupGroup]:
    """
    Parse the raw catalog into BackupGroup objects and apply the filter.

    Args:
        raw_catalog: List of group records, as returned by load_catalog_source.
        filter_name: Optional group name to restrict the run to.

    Returns:
        Ordered list of groups to process.

    Raises:
        CatalogError: If the structure is malformed.
        GroupNotFoundError: If filter_name matches no group.
    """
    if not isinstance(raw_catalog, list):
        raise CatalogError(
            f"BACKUP_GROUPS must be a list of groups, got {type(raw_catalog).__name__}"
        )

    groups = [_parse_record(i, record) for i, record in enumerate(raw_catalog)]
    return filter_groups(groups, filter_name)
