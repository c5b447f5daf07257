"""
Configuration settings management for resticgroups.

Settings are assembled in layers, later layers winning:

    1. Built-in defaults
    2. YAML config file (~/.resticgroups/config.yaml, or RESTICGROUPS_CONFIG)
    3. Environment variables, including those from an env file
       (~/restic.env, or RESTICGROUPS_ENV_FILE) loaded with python-dotenv

The environment variable names are the ones restic and vault users already
set (RESTIC_REPOSITORY, VAULT_ADDR, VAULT_TOKEN, ...), so an existing
restic.env keeps working unchanged.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".resticgroups"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_ENV_FILE = Path.home() / "restic.env"

DEFAULT_LOG_FILE = Path.home() / "restic-backup.log"
DEFAULT_METRICS_FILE = Path.home() / "restic-metrics.json"

# restic accepts "n/t", a percentage, or a size for --read-data-subset
CHECK_SUBSET_PATTERN = re.compile(r"^(\d+/\d+|\d+(\.\d+)?%|\d+(\.\d+)?[KMGT]?)$")


@dataclass
class ResticConfig:
    """Restic repository and invocation settings."""

    repository: str = ""
    binary: str = "restic"
    check: bool = True
    check_subset: str = "5%"
    # Seconds before any single external call is abandoned; None waits forever
    step_timeout: float | None = None


@dataclass
class VaultConfig:
    """Where the repository passphrase lives."""

    address: str = ""
    token: str = ""
    secret_path: str = ""
    field: str = "restic_pass"
    kv_version: int = 2
    namespace: str = ""


@dataclass
class SyslogConfig:
    """End-of-run syslog notification."""

    enabled: bool = True
    tag: str = "restic-backup"


@dataclass
class Settings:
    """
    Complete resticgroups configuration.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        log_file: File the run log is appended to. Empty disables it.
        metrics_file: JSON Lines file for per-group metrics. Empty disables it.
        backup_groups: Group catalog, either literal JSON/YAML text, a path
            to a file holding it, or an already parsed list.
        backup_groups_file: Explicit catalog file; takes precedence when it exists.
        restic: Restic settings.
        vault: Vault settings.
        syslog: Syslog notification settings.
    """

    log_level: str = "INFO"
    log_file: str = str(DEFAULT_LOG_FILE)
    metrics_file: str = str(DEFAULT_METRICS_FILE)

    backup_groups: str | list[Any] = ""
    backup_groups_file: str = ""

    restic: ResticConfig = field(default_factory=ResticConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    syslog: SyslogConfig = field(default_factory=SyslogConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from RESTICGROUPS_CONFIG environment variable if set,
    otherwise returns the default path (~/.resticgroups/config.yaml).
    """
    env_path = os.environ.get("RESTICGROUPS_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def get_env_file_path() -> Path:
    """Get the env file path (RESTICGROUPS_ENV_FILE or ~/restic.env)."""
    env_path = os.environ.get("RESTICGROUPS_ENV_FILE")
    if env_path:
        return Path(env_path)
    return DEFAULT_ENV_FILE


def load_config(
    config_path: Path | None = None,
    env_file: Path | None = None,
) -> Settings:
    """
    Load configuration from the env file, YAML file and environment.

    Args:
        config_path: Optional path to the YAML configuration file. If not
                    provided, uses RESTICGROUPS_CONFIG or the default path.
        env_file: Optional env file. Variables already set in the process
                 environment are never overridden by it.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if env_file is None:
        env_file = get_env_file_path()
    if env_file.is_file():
        load_dotenv(env_file, override=False)

    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("resticgroups", {}) or {}

    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()
    if "log_file" in general:
        settings.log_file = str(general["log_file"] or "")
    if "metrics_file" in general:
        settings.metrics_file = str(general["metrics_file"] or "")

    restic = data.get("restic", {}) or {}
    if "repository" in restic:
        settings.restic.repository = str(restic["repository"])
    if "binary" in restic:
        settings.restic.binary = str(restic["binary"])
    if "check" in restic:
        settings.restic.check = bool(restic["check"])
    if "check_subset" in restic:
        settings.restic.check_subset = str(restic["check_subset"])
    if "step_timeout" in restic:
        settings.restic.step_timeout = _parse_timeout(restic["step_timeout"])

    vault = data.get("vault", {}) or {}
    if "address" in vault:
        settings.vault.address = str(vault["address"])
    if "token" in vault:
        settings.vault.token = str(vault["token"])
    if "secret_path" in vault:
        settings.vault.secret_path = str(vault["secret_path"])
    if "field" in vault:
        settings.vault.field = str(vault["field"])
    if "kv_version" in vault:
        settings.vault.kv_version = _parse_int(vault["kv_version"], "kv_version")
    if "namespace" in vault:
        settings.vault.namespace = str(vault["namespace"] or "")

    if "groups" in data:
        settings.backup_groups = data["groups"] if data["groups"] is not None else ""
    if "groups_file" in data:
        settings.backup_groups_file = str(data["groups_file"] or "")

    syslog = data.get("syslog", {}) or {}
    if "enabled" in syslog:
        settings.syslog.enabled = bool(syslog["enabled"])
    if "tag" in syslog:
        settings.syslog.tag = str(syslog["tag"])

    return settings


def _parse_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


def _parse_timeout(value: Any) -> float | None:
    if value is None or str(value).strip().lower() in ("", "none", "0"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"step_timeout must be a number of seconds, got {value!r}") from e


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "RESTICGROUPS_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "LOG_FILE": ("log_file", str),
        "METRICS_FILE": ("metrics_file", str),
        "BACKUP_GROUPS": ("backup_groups", str),
        "BACKUP_GROUPS_FILE": ("backup_groups_file", str),
        "RESTIC_REPOSITORY": ("restic.repository", str),
        "RESTIC_BINARY": ("restic.binary", str),
        "RESTICGROUPS_CHECK": ("restic.check", _parse_bool),
        "RESTICGROUPS_CHECK_SUBSET": ("restic.check_subset", str),
        "RESTICGROUPS_STEP_TIMEOUT": ("restic.step_timeout", _parse_timeout),
        "VAULT_ADDR": ("vault.address", str),
        "VAULT_TOKEN": ("vault.token", str),
        "VAULT_SECRET_PATH": ("vault.secret_path", str),
        "VAULT_SECRET_FIELD": ("vault.field", str),
        "VAULT_KV_VERSION": ("vault.kv_version", lambda x: _parse_int(x, "VAULT_KV_VERSION")),
        "VAULT_NAMESPACE": ("vault.namespace", str),
        "RESTICGROUPS_SYSLOG": ("syslog.enabled", _parse_bool),
        "RESTICGROUPS_SYSLOG_TAG": ("syslog.tag", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.restic.step_timeout is not None and settings.restic.step_timeout <= 0:
        raise ConfigurationError("step_timeout must be positive")

    if not CHECK_SUBSET_PATTERN.match(settings.restic.check_subset):
        raise ConfigurationError(
            f"Invalid check_subset: {settings.restic.check_subset}. "
            "Use a fraction (1/10), a percentage (5%) or a size (2G)"
        )

    if settings.vault.kv_version not in (1, 2):
        raise ConfigurationError(
            f"Invalid kv_version: {settings.vault.kv_version}. Must be 1 or 2"
        )


def require_run_settings(settings: Settings) -> None:
    """
    Check that everything a backup run needs is present.

    Raises:
        ConfigurationError: Naming the first missing variable.
    """
    required = [
        ("RESTIC_REPOSITORY", settings.restic.repository),
        ("VAULT_ADDR", settings.vault.address),
        ("VAULT_SECRET_PATH", settings.vault.secret_path),
        ("VAULT_TOKEN", settings.vault.token),
        ("BACKUP_GROUPS", settings.backup_groups or _existing_file(settings.backup_groups_file)),
    ]
    for name, value in required:
        if not value:
            raise ConfigurationError(f"{name} is not set")


def _existing_file(path: str) -> str:
    return path if path and Path(path).is_file() else ""
