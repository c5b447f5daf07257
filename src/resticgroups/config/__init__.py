"""
Configuration management for resticgroups.

This module handles loading and validating configuration settings, and
retrieving the repository passphrase from Vault.
"""

from resticgroups.config.secrets import (
    EmptySecretError,
    SecretAuthenticationError,
    SecretNotFoundError,
    SecretStoreConnectionError,
    SecretStoreError,
    VaultClient,
    fetch_repository_password,
)
from resticgroups.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    require_run_settings,
)

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "require_run_settings",
    "ConfigurationError",
    # Secrets
    "VaultClient",
    "fetch_repository_password",
    "SecretStoreError",
    "SecretAuthenticationError",
    "SecretNotFoundError",
    "SecretStoreConnectionError",
    "EmptySecretError",
]
