"""
Retention policy resolution for backup groups.

A group's catalog entry may carry a ``retention`` block with any subset of
the five restic keep-counts. This module turns that block into a fully
populated RetentionPolicy, filling absent keys with fixed defaults.

Resolution rule (per key):
    - Key present with a non-negative integer: that value wins, even zero
    - Key absent or null: the default from DEFAULT_RETENTION
    - Anything else: RetentionPolicyError

A RetentionPolicyError is never fatal to a run. The orchestrator logs it and
skips the forget/prune step for that group only.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

RETENTION_KEYS = (
    "keep_hourly",
    "keep_daily",
    "keep_weekly",
    "keep_monthly",
    "keep_yearly",
)

DEFAULT_RETENTION: dict[str, int] = {
    "keep_hourly": 0,
    "keep_daily": 7,
    "keep_weekly": 4,
    "keep_monthly": 6,
    "keep_yearly": 1,
}


class RetentionPolicyError(Exception):
    """Raised when a retention block holds a value that is not a valid keep-count."""

    def __init__(self, message: str, key: str | None = None) -> None:
        self.key = key
        super().__init__(message)


@dataclass(frozen=True)
class RetentionSpec:
    """
    Retention block as written in the catalog.

    Each attribute is None when the key was absent (or explicitly null).
    Values are kept exactly as given; validation happens in
    resolve_retention so that a bad value only affects its own group.
    """

    keep_hourly: Any = None
    keep_daily: Any = None
    keep_weekly: Any = None
    keep_monthly: Any = None
    keep_yearly: Any = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> RetentionSpec:
        """Build from a raw mapping, ignoring unrecognised keys."""
        if not data:
            return cls()
        return cls(**{key: data.get(key) for key in RETENTION_KEYS})


@dataclass(frozen=True)
class RetentionPolicy:
    """Concrete keep-counts passed to ``restic forget``."""

    keep_hourly: int = DEFAULT_RETENTION["keep_hourly"]
    keep_daily: int = DEFAULT_RETENTION["keep_daily"]
    keep_weekly: int = DEFAULT_RETENTION["keep_weekly"]
    keep_monthly: int = DEFAULT_RETENTION["keep_monthly"]
    keep_yearly: int = DEFAULT_RETENTION["keep_yearly"]

    def to_forget_args(self) -> list[str]:
        """
        Render the policy as restic command-line flags.

        Returns:
            Flat list such as ["--keep-hourly", "0", "--keep-daily", "7", ...].
        """
        args: list[str] = []
        for key in RETENTION_KEYS:
            args.extend([f"--{key.replace('_', '-')}", str(getattr(self, key))])
        return args

    def describe(self) -> str:
        """Compact form used in log lines, e.g. ``0h 7d 4w 6m 1y``."""
        return (
            f"{self.keep_hourly}h {self.keep_daily}d {self.keep_weekly}w "
            f"{self.keep_monthly}m {self.keep_yearly}y"
        )


def _validate_count(key: str, value: Any) -> int:
    # bool is a subclass of int, but "keep_daily: true" is a typo, not a count
    if isinstance(value, bool) or not isinstance(value, int):
        raise RetentionPolicyError(
            f"{key} must be a non-negative integer, got {value!r}", key=key
        )
    if value < 0:
        raise RetentionPolicyError(f"{key} must not be negative, got {value}", key=key)
    return value


def resolve_retention(
    raw: RetentionSpec | Mapping[str, Any] | None,
) -> RetentionPolicy:
    """
    Resolve a raw retention block into a complete RetentionPolicy.

    Args:
        raw: A RetentionSpec, a mapping with zero or more of the five
            recognised keys, or None (no retention block at all).

    Returns:
        RetentionPolicy with every field populated.

    Raises:
        RetentionPolicyError: If a present value is not a non-negative integer.
    """
    if raw is None:
        spec = RetentionSpec()
    elif isinstance(raw, RetentionSpec):
        spec = raw
    elif isinstance(raw, Mapping):
        spec = RetentionSpec.from_mapping(raw)
    else:
        raise RetentionPolicyError(
            f"retention must be a mapping, got {type(raw).__name__}"
        )

    values: dict[str, int] = {}
    for key in RETENTION_KEYS:
        value = getattr(spec, key)
        if value is None:
            values[key] = DEFAULT_RETENTION[key]
        else:
            values[key] = _validate_count(key, value)

    return RetentionPolicy(**values)
