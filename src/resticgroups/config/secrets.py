"""
Repository passphrase retrieval from HashiCorp Vault.

The passphrase is read once per run, before any group is processed, through
the Vault HTTP API. It is the equivalent of:

    vault kv get -field=restic_pass <VAULT_SECRET_PATH>

Paths are written the way the vault CLI takes them ("secret/restic"). For
KV version 2 engines the "data/" segment is inserted after the mount.

Every failure here is fatal for the run: without the passphrase no restic
command can open the repository.
"""

from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)

DEFAULT_SECRET_FIELD = "restic_pass"
DEFAULT_KV_VERSION = 2


class SecretStoreError(Exception):
    """Base exception for secret retrieval errors."""

    pass


class SecretAuthenticationError(SecretStoreError):
    """Raised when Vault rejects the token."""

    pass


class SecretNotFoundError(SecretStoreError):
    """Raised when the secret path or field does not exist."""

    pass


class SecretStoreConnectionError(SecretStoreError):
    """Raised when Vault cannot be reached after all retries."""

    pass


class EmptySecretError(SecretStoreError):
    """Raised when the secret exists but its value is empty."""

    pass


class VaultClient:
    """
    Minimal read-only Vault KV client.

    Usage:
        client = VaultClient("https://vault.example.com:8200", token)
        password = client.read_secret("secret/restic", "restic_pass")

    Retry Logic:
        Connection errors and timeouts are retried with exponential backoff.
        Authentication and not-found errors are not retried.
    """

    default_timeout: float = 30.0
    default_max_retries: int = 3
    default_retry_base_delay: float = 1.0
    default_retry_max_delay: float = 30.0

    def __init__(
        self,
        address: str,
        token: str,
        kv_version: int = DEFAULT_KV_VERSION,
        namespace: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            address: Vault address (VAULT_ADDR).
            token: Vault token (VAULT_TOKEN).
            kv_version: KV secrets engine version, 1 or 2.
            namespace: Vault Enterprise namespace, if any.
            timeout: Per-request timeout in seconds.
            session: Optional preconfigured requests session.
        """
        url = address.strip()
        if not url.startswith("http"):
            url = f"https://{url}"
        self.address = url.rstrip("/")
        self.kv_version = kv_version
        self.timeout = timeout or self.default_timeout

        self._max_retries = self.default_max_retries
        self._retry_base_delay = self.default_retry_base_delay
        self._retry_max_delay = self.default_retry_max_delay

        self._session = session or requests.Session()
        self._session.headers.update({"X-Vault-Token": token, "Accept": "application/json"})
        if namespace:
            self._session.headers["X-Vault-Namespace"] = namespace

    def api_path(self, path: str) -> str:
        """
        Translate a CLI-style KV path into its HTTP API path.

        Args:
            path: Path as given to ``vault kv get``, e.g. "secret/restic".

        Returns:
            API path below /v1/, e.g. "secret/data/restic" for KV v2.
        """
        path = path.strip().strip("/")
        if self.kv_version != 2:
            return path
        mount, _, rest = path.partition("/")
        if not rest or rest.startswith("data/"):
            return path
        return f"{mount}/data/{rest}"

    def read_secret(self, path: str, field: str = DEFAULT_SECRET_FIELD) -> str:
        """
        Read one field of a KV secret.

        Args:
            path: Secret path in CLI form.
            field: Field name inside the secret.

        Returns:
            The non-empty field value.

        Raises:
            SecretAuthenticationError: If the token is rejected.
            SecretNotFoundError: If the path or field does not exist.
            SecretStoreConnectionError: If Vault is unreachable.
            EmptySecretError: If the value is empty.
        """
        payload = self._with_retry(self._get, self.api_path(path))

        data = payload.get("data") or {}
        if self.kv_version == 2:
            data = data.get("data") or {}

        if field not in data:
            raise SecretNotFoundError(f"Field '{field}' not found at {path}")

        value = data[field]
        if value is None or str(value) == "":
            raise EmptySecretError(f"Empty value for '{field}' at {path}")

        return str(value)

    def _get(self, api_path: str) -> dict[str, Any]:
        url = urljoin(self.address + "/", f"v1/{api_path}")
        start_time = time.time()

        try:
            response = self._session.get(url, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise SecretStoreConnectionError(f"Failed to connect to Vault: {e}") from e
        except requests.exceptions.Timeout as e:
            raise SecretStoreConnectionError(f"Vault request timed out: {e}") from e

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(f"Vault GET /v1/{api_path} -> {response.status_code} ({duration_ms:.0f}ms)")

        if response.status_code in (401, 403):
            raise SecretAuthenticationError(
                "Vault authentication failed. Check VAULT_TOKEN and its policy."
            )
        if response.status_code == 404:
            raise SecretNotFoundError(f"No secret at {api_path}")
        if response.status_code >= 500:
            raise SecretStoreConnectionError(
                f"Vault returned {response.status_code} for {api_path}"
            )

        try:
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            raise SecretStoreError(f"Vault request failed: {e}") from e
        except ValueError as e:
            raise SecretStoreError(f"Vault returned invalid JSON: {e}") from e

    def _with_retry(self, func: Any, *args: Any) -> Any:
        """Call func, retrying connection failures with exponential backoff."""
        last_exception: Exception | None = None

        for attempt in range(self._max_retries + 1):
            try:
                return func(*args)
            except SecretStoreConnectionError as e:
                last_exception = e
                if attempt < self._max_retries:
                    delay = min(self._retry_base_delay * (2**attempt), self._retry_max_delay)
                    logger.warning(
                        f"Vault unreachable, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self._max_retries}): {e}"
                    )
                    time.sleep(delay)

        # All retries exhausted
        if last_exception:
            raise last_exception
        raise SecretStoreError("Unknown error during retry")


def fetch_repository_password(
    address: str,
    token: str,
    path: str,
    field: str = DEFAULT_SECRET_FIELD,
    kv_version: int = DEFAULT_KV_VERSION,
    namespace: str | None = None,
) -> str:
    """
    Fetch the restic repository passphrase.

    Args:
        address: Vault address.
        token: Vault token.
        path: Secret path in CLI form.
        field: Field holding the passphrase.
        kv_version: KV engine version.
        namespace: Optional Vault namespace.

    Returns:
        The passphrase.

    Raises:
        SecretStoreError: On any retrieval failure.
    """
    client = VaultClient(address, token, kv_version=kv_version, namespace=namespace)
    return client.read_secret(path, field)
