"""
Signing Key Storage for the KSeF Client

Provides the private key used to sign KSeF session requests, looked up by
an opaque per-user key reference. Two providers share the same interface
(get_private_key(key_reference) -> PEM bytes):

- KsefKeyManager: Google Cloud Secret Manager with
    - Encryption at rest (CMEK support)
    - Rotation through secret versions
    - In-memory caching with TTL
    - Multi-tenant isolation (one secret per key reference)
- FileKeyProvider: PEM files laid out as <root>/<key_reference>/private_key.pem

Requirements:
    pip install google-cloud-secret-manager

Setup:
    1. Enable Secret Manager API in GCP Console
    2. Create service account with roles/secretmanager.secretAccessor
    3. Set GOOGLE_APPLICATION_CREDENTIALS environment variable
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Optional, Dict, List

from google.cloud import secretmanager
from google.api_core import exceptions as gcp_exceptions

logger = logging.getLogger(__name__)

PEM_MARKER = b"-----BEGIN"
_SECRET_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class KeyManagerConfig:
    """Configuration for Secret Manager integration."""
    project_id: str
    cache_ttl_seconds: int = 300  # 5 minutes cache
    enable_caching: bool = True
    secret_prefix: str = "ksef-signing-key"

    # Format: projects/{project}/secrets/{prefix}-{key_reference}/versions/latest
    # Characters not allowed in secret IDs (e.g. "/" in "user_certs/1") become "-"

    def get_secret_name(self, key_reference: str) -> str:
        """Generate full secret resource name for a key reference."""
        return f"projects/{self.project_id}/secrets/{self.get_secret_id(key_reference)}/versions/latest"

    def get_secret_id(self, key_reference: str) -> str:
        """Generate secret ID (without version) for creation."""
        return f"{self.secret_prefix}-{_SECRET_ID_UNSAFE.sub('-', key_reference)}"


@dataclass
class CachedKey:
    """In-memory cached private key with TTL."""
    pem: bytes
    fetched_at: datetime
    ttl_seconds: int

    @property
    def is_expired(self) -> bool:
        expiry = self.fetched_at + timedelta(seconds=self.ttl_seconds)
        return datetime.now() > expiry


# =============================================================================
# SECRET MANAGER PROVIDER
# =============================================================================

class KsefKeyManager:
    """
    Private key storage using Google Cloud Secret Manager.

    Usage:
        config = KeyManagerConfig(project_id="my-gcp-project")
        key_mgr = KsefKeyManager(config)

        # Store a PEM key for a user
        key_mgr.store_private_key("user-42", pem_bytes)

        # Retrieve it (cached)
        pem = key_mgr.get_private_key("user-42")
    """

    def __init__(self, config: KeyManagerConfig):
        self.config = config
        self._client = secretmanager.SecretManagerServiceClient()
        self._cache: Dict[str, CachedKey] = {}
        self._cache_lock = Lock()

        logger.info(f"KsefKeyManager initialized for project: {config.project_id}")

    # =========================================================================
    # KEY RETRIEVAL
    # =========================================================================

    def get_private_key(self, key_reference: str, bypass_cache: bool = False) -> bytes:
        """
        Retrieve the PEM private key for a key reference.

        Raises:
            KeyNotFoundError: If no key is stored for the reference
            KeyAccessError: If access is denied
            KeyParseError: If the stored payload is not a PEM key
        """
        if self.config.enable_caching and not bypass_cache:
            cached = self._get_from_cache(key_reference)
            if cached:
                logger.debug(f"Cache hit for key reference: {key_reference}")
                return cached

        logger.info(f"Fetching signing key from Secret Manager for: {key_reference}")
        pem = self._fetch_from_secret_manager(key_reference)

        if self.config.enable_caching:
            self._update_cache(key_reference, pem)

        return pem

    def _get_from_cache(self, key_reference: str) -> Optional[bytes]:
        with self._cache_lock:
            cached = self._cache.get(key_reference)
            if cached and not cached.is_expired:
                return cached.pem
            elif cached:
                del self._cache[key_reference]
            return None

    def _update_cache(self, key_reference: str, pem: bytes) -> None:
        with self._cache_lock:
            self._cache[key_reference] = CachedKey(
                pem=pem,
                fetched_at=datetime.now(),
                ttl_seconds=self.config.cache_ttl_seconds
            )

    def _fetch_from_secret_manager(self, key_reference: str) -> bytes:
        secret_name = self.config.get_secret_name(key_reference)

        try:
            response = self._client.access_secret_version(name=secret_name)
        except gcp_exceptions.NotFound:
            raise KeyNotFoundError(f"Signing key not found for: {key_reference}")
        except gcp_exceptions.PermissionDenied:
            raise KeyAccessError(f"Access denied to signing key for: {key_reference}")

        pem = bytes(response.payload.data)
        if PEM_MARKER not in pem:
            raise KeyParseError(f"Stored signing key for {key_reference} is not PEM encoded")
        return pem

    # =========================================================================
    # KEY STORAGE
    # =========================================================================

    def store_private_key(
        self,
        key_reference: str,
        pem: bytes,
        labels: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Store a PEM private key, creating the secret on first use and adding
        a new version afterwards.

        Returns:
            Secret version name
        """
        if PEM_MARKER not in pem:
            raise KeyParseError("Only PEM encoded private keys can be stored")

        secret_id = self.config.get_secret_id(key_reference)
        parent = f"projects/{self.config.project_id}"
        secret_path = f"{parent}/secrets/{secret_id}"

        try:
            self._client.get_secret(name=secret_path)
            logger.info(f"Adding new key version for: {key_reference}")
        except gcp_exceptions.NotFound:
            logger.info(f"Creating new key secret for: {key_reference}")
            self._create_secret(parent, secret_id, labels or {})

        response = self._client.add_secret_version(
            parent=secret_path,
            payload={"data": pem}
        )

        self.invalidate_cache(key_reference)

        logger.info(f"Stored signing key version: {response.name}")
        return response.name

    def _create_secret(self, parent: str, secret_id: str, labels: Dict[str, str]) -> None:
        secret = {
            "replication": {"automatic": {}},
            "labels": {
                "app": "ksef-client",
                "managed-by": "ksef-key-manager",
                **labels
            }
        }

        self._client.create_secret(
            parent=parent,
            secret_id=secret_id,
            secret=secret
        )

    def rotate_private_key(self, key_reference: str, new_pem: bytes) -> str:
        """Add a new key version; 'latest' points to it afterwards."""
        logger.info(f"Rotating signing key for: {key_reference}")
        return self.store_private_key(
            key_reference=key_reference,
            pem=new_pem,
            labels={"rotated-at": datetime.now().strftime("%Y%m%d")}
        )

    # =========================================================================
    # CACHE MANAGEMENT
    # =========================================================================

    def invalidate_cache(self, key_reference: Optional[str] = None) -> None:
        """Invalidate one cached key, or all of them when no reference is given."""
        with self._cache_lock:
            if key_reference:
                self._cache.pop(key_reference, None)
                logger.debug(f"Invalidated cached key for: {key_reference}")
            else:
                self._cache.clear()
                logger.debug("Invalidated all cached keys")

    def list_key_references(self) -> List[str]:
        """List all key references with stored keys."""
        parent = f"projects/{self.config.project_id}"
        prefix = self.config.secret_prefix

        references = []
        for secret in self._client.list_secrets(parent=parent):
            secret_id = secret.name.split("/")[-1]
            if secret_id.startswith(prefix + "-"):
                references.append(secret_id[len(prefix) + 1:])

        return references

    def delete_private_key(self, key_reference: str) -> None:
        """Permanently delete the secret and all of its versions."""
        secret_path = f"projects/{self.config.project_id}/secrets/{self.config.get_secret_id(key_reference)}"

        try:
            self._client.delete_secret(name=secret_path)
            self.invalidate_cache(key_reference)
            logger.warning(f"Deleted signing key for: {key_reference}")
        except gcp_exceptions.NotFound:
            logger.warning(f"No signing key found to delete for: {key_reference}")


# =============================================================================
# FILE PROVIDER
# =============================================================================

class FileKeyProvider:
    """
    Reads keys stored as <root_dir>/<key_reference>/private_key.pem.

    The key reference is the per-user certificate folder, e.g. "user_certs/1".
    """

    KEY_FILENAME = "private_key.pem"

    def __init__(self, root_dir: str):
        self.root_dir = Path(root_dir).resolve()

    def get_private_key(self, key_reference: str) -> bytes:
        key_path = (self.root_dir / key_reference / self.KEY_FILENAME).resolve()
        if self.root_dir not in key_path.parents:
            raise KeyAccessError(f"Key reference escapes key storage: {key_reference}")

        try:
            pem = key_path.read_bytes()
        except FileNotFoundError:
            raise KeyNotFoundError(f"Signing key not found for: {key_reference}")
        except OSError as e:
            raise KeyAccessError(f"Could not read signing key for {key_reference}: {e}")

        if PEM_MARKER not in pem:
            raise KeyParseError(f"Signing key for {key_reference} is not PEM encoded")
        return pem


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class KeyManagerError(Exception):
    """Base exception for key storage errors."""
    pass


class KeyNotFoundError(KeyManagerError):
    """Raised when no key exists for a reference."""
    pass


class KeyAccessError(KeyManagerError):
    """Raised when access to a key is denied."""
    pass


class KeyParseError(KeyManagerError):
    """Raised when stored key data is not a PEM key."""
    pass
