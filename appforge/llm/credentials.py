"""Primary/backup credential vault with encrypted-at-rest storage.

The vault keeps two backend credentials, tracks which one is active and
how often each has failed, and persists everything through a pluggable
SecretStore. Plaintext secrets leave the vault only through get_active()
(for the outbound request builder); status output is always masked.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken
from pydantic import SecretStr

from appforge.core.exceptions import CredentialError, SecretStoreError
from appforge.core.models import Credential, CredentialRole, VaultStatus

logger = logging.getLogger("appforge.llm.credentials")

KEY_PRIMARY = "primary"
KEY_BACKUP = "backup"
KEY_ACTIVE_ROLE = "active-role"
KEY_PRIMARY_FAILURES = "primary-failures"
KEY_BACKUP_FAILURES = "backup-failures"
KEY_SETUP_COMPLETE = "setup-complete"
KEY_SETUP_TIMESTAMP = "setup-timestamp"

_SECRET_KEYS = {CredentialRole.PRIMARY: KEY_PRIMARY, CredentialRole.BACKUP: KEY_BACKUP}
_FAILURE_KEYS = {
    CredentialRole.PRIMARY: KEY_PRIMARY_FAILURES,
    CredentialRole.BACKUP: KEY_BACKUP_FAILURES,
}


def mask_secret(secret: Optional[str]) -> str:
    """First and last 4 characters; ``***`` when too short to mask."""
    if not secret or len(secret) < 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


API_KEY_PREFIX = "AIza"
API_KEY_MIN_LENGTH = 21


def looks_like_api_key(secret: Optional[str]) -> bool:
    """Backend keys start with ``AIza`` and are longer than 20 characters."""
    secret = (secret or "").strip()
    return secret.startswith(API_KEY_PREFIX) and len(secret) >= API_KEY_MIN_LENGTH


# ---------------------------------------------------------------------------
# Secret stores
# ---------------------------------------------------------------------------

class SecretStore(Protocol):
    """Key-value capability that keeps values confidential at rest."""

    def get(self, key: str) -> Optional[str]: ...

    def set_many(self, values: dict[str, Optional[str]]) -> None:
        """Write several keys in one step; a None value deletes the key."""
        ...

    def clear(self) -> None: ...


class InMemorySecretStore:
    """Process-local store. Nothing touches disk."""

    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_many(self, values: dict[str, Optional[str]]) -> None:
        for key, value in values.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value

    def clear(self) -> None:
        self._data.clear()


class EncryptedFileSecretStore:
    """Fernet-encrypted JSON document on disk.

    The encryption key comes from ``key`` when given, else from the
    ``key_env_var`` environment variable, else from ``key_path`` (created
    with 0600 permissions on first use).
    """

    def __init__(
        self,
        path: str | Path,
        key: Optional[bytes] = None,
        key_path: Optional[str | Path] = None,
        key_env_var: str = "APPFORGE_VAULT_KEY",
    ):
        self.path = Path(path)
        self._fernet = Fernet(key or self._resolve_key(key_path, key_env_var))
        self._cache: Optional[dict[str, str]] = None

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_many(self, values: dict[str, Optional[str]]) -> None:
        data = dict(self._load())
        for key, value in values.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._write(data)

    def clear(self) -> None:
        self._write({})

    def _load(self) -> dict[str, str]:
        if self._cache is not None:
            return self._cache
        if not self.path.exists():
            self._cache = {}
            return self._cache
        try:
            plaintext = self._fernet.decrypt(self.path.read_bytes())
            data = json.loads(plaintext)
        except InvalidToken as e:
            raise SecretStoreError(f"Cannot decrypt secret store {self.path}: wrong key?") from e
        except (OSError, json.JSONDecodeError) as e:
            raise SecretStoreError(f"Cannot read secret store {self.path}: {e}") from e
        self._cache = {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}
        return self._cache

    def _write(self, data: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_bytes(self._fernet.encrypt(json.dumps(data).encode("utf-8")))
            os.chmod(tmp, 0o600)
            tmp.replace(self.path)
        except OSError as e:
            raise SecretStoreError(f"Cannot write secret store {self.path}: {e}") from e
        self._cache = data

    @staticmethod
    def _resolve_key(key_path: Optional[str | Path], key_env_var: str) -> bytes:
        env_key = os.getenv(key_env_var)
        if env_key:
            return env_key.encode("utf-8")
        if key_path is None:
            raise SecretStoreError(
                f"No vault key: set {key_env_var} or configure vault.key_path"
            )
        path = Path(key_path)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(key)
        os.chmod(path, 0o600)
        logger.info("Generated new vault key at %s", path)
        return key


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class CredentialVault:
    """Selects between a primary and a backup credential.

    Exactly one role is active at a time. Failure counters are per role and
    reset on the next recorded success.
    """

    def __init__(self, store: Optional[SecretStore] = None):
        self.store: SecretStore = store or InMemorySecretStore()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_primary(self, secret: str) -> None:
        """Store the primary secret and make it active with a clean record."""
        secret = self._validated(secret)
        with self._lock:
            if self.store.get(KEY_BACKUP) == secret:
                raise CredentialError("Primary credential must differ from the backup")
            self.store.set_many({
                KEY_PRIMARY: secret,
                KEY_ACTIVE_ROLE: CredentialRole.PRIMARY.value,
                KEY_PRIMARY_FAILURES: "0",
            })
        logger.info("Primary credential set (%s)", mask_secret(secret))

    def set_backup(self, secret: str) -> None:
        secret = self._validated(secret)
        with self._lock:
            if self.store.get(KEY_PRIMARY) == secret:
                raise CredentialError("Backup credential must differ from the primary")
            self.store.set_many({KEY_BACKUP: secret, KEY_BACKUP_FAILURES: "0"})
        logger.info("Backup credential set (%s)", mask_secret(secret))

    def clear(self) -> None:
        with self._lock:
            self.store.clear()
        logger.info("All credentials cleared")

    def mark_setup_complete(self) -> None:
        with self._lock:
            self.store.set_many({
                KEY_SETUP_COMPLETE: "true",
                KEY_SETUP_TIMESTAMP: datetime.now(UTC).isoformat(),
            })

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @property
    def active_role(self) -> CredentialRole:
        with self._lock:
            raw = self.store.get(KEY_ACTIVE_ROLE)
        try:
            return CredentialRole(raw) if raw else CredentialRole.PRIMARY
        except ValueError:
            return CredentialRole.PRIMARY

    def get_active(self) -> str:
        """Plaintext of the active secret ('' when unset). For request building only."""
        with self._lock:
            return self.store.get(_SECRET_KEYS[self.active_role]) or ""

    def get_secret(self, role: CredentialRole) -> str:
        with self._lock:
            return self.store.get(_SECRET_KEYS[role]) or ""

    def get_credential(self, role: CredentialRole) -> Optional[Credential]:
        with self._lock:
            secret = self.store.get(_SECRET_KEYS[role])
            if not secret:
                return None
            return Credential(
                role=role,
                secret=SecretStr(secret),
                failure_count=self.failure_count(role),
                active=self.active_role == role,
            )

    def has_credentials(self) -> bool:
        return bool(self.get_secret(CredentialRole.PRIMARY))

    def has_backup(self) -> bool:
        return bool(self.get_secret(CredentialRole.BACKUP))

    def failover(self) -> bool:
        """Make the backup active. Returns False when no backup is configured."""
        with self._lock:
            if not self.has_backup():
                logger.warning("Failover requested but no backup credential is configured")
                return False
            self.store.set_many({KEY_ACTIVE_ROLE: CredentialRole.BACKUP.value})
        logger.warning("Failed over to backup credential")
        return True

    def restore_primary(self) -> None:
        with self._lock:
            self.store.set_many({KEY_ACTIVE_ROLE: CredentialRole.PRIMARY.value})
        logger.info("Primary credential restored as active")

    # ------------------------------------------------------------------
    # Outcome tracking
    # ------------------------------------------------------------------

    def role_of(self, secret: str) -> Optional[CredentialRole]:
        if not secret:
            return None
        with self._lock:
            for role, key in _SECRET_KEYS.items():
                if self.store.get(key) == secret:
                    return role
        return None

    def record_outcome(self, secret: str, success: bool) -> None:
        """Failure increments the owning role's counter; success resets it."""
        with self._lock:
            role = self.role_of(secret)
            if role is None:
                return
            failure_key = _FAILURE_KEYS[role]
            if success:
                count = 0
            else:
                count = self.failure_count(role) + 1
            self.store.set_many({failure_key: str(count)})
        if not success:
            logger.warning("Recorded failure for %s credential (count=%d)", role.value, count)

    def failure_count(self, role: CredentialRole) -> int:
        with self._lock:
            raw = self.store.get(_FAILURE_KEYS[role])
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def is_setup_complete(self) -> bool:
        with self._lock:
            return self.store.get(KEY_SETUP_COMPLETE) == "true"

    def status(self) -> VaultStatus:
        with self._lock:
            primary = self.get_secret(CredentialRole.PRIMARY)
            backup = self.get_secret(CredentialRole.BACKUP)
            raw_ts = self.store.get(KEY_SETUP_TIMESTAMP)
            return VaultStatus(
                primary_configured=bool(primary),
                primary_masked=mask_secret(primary),
                primary_failures=self.failure_count(CredentialRole.PRIMARY),
                backup_configured=bool(backup),
                backup_masked=mask_secret(backup),
                backup_failures=self.failure_count(CredentialRole.BACKUP),
                active_role=self.active_role,
                setup_complete=self.is_setup_complete(),
                setup_timestamp=datetime.fromisoformat(raw_ts) if raw_ts else None,
            )

    @staticmethod
    def _validated(secret: str) -> str:
        secret = (secret or "").strip()
        if not secret:
            raise CredentialError("Credential secret must be non-empty")
        return secret
