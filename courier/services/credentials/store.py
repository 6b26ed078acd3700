"""Credential store: persists the opaque transport session blob."""

import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from courier.core.exceptions import ConfigurationError
from courier.core.infra.retry import get_storage_retry


class CredentialStore(ABC):
    """Pure storage for the session credential. No logic beyond load/save/clear."""

    @abstractmethod
    def load(self) -> Optional[bytes]:
        """Return the stored credential, or None if there is none."""
        pass

    @abstractmethod
    def save(self, credential: bytes) -> None:
        """Replace the stored credential."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Delete the stored credential."""
        pass

    def exists(self) -> bool:
        """Check whether a credential is stored."""
        return self.load() is not None


class MemoryCredentialStore(CredentialStore):
    """Process-local store, for tests and the console transport."""

    def __init__(self, credential: Optional[bytes] = None):
        self._credential = credential
        self._lock = threading.Lock()

    def load(self) -> Optional[bytes]:
        with self._lock:
            return self._credential

    def save(self, credential: bytes) -> None:
        with self._lock:
            self._credential = credential

    def clear(self) -> None:
        with self._lock:
            self._credential = None


class FileCredentialStore(CredentialStore):
    """File-backed credential store with Fernet encryption at rest."""

    def __init__(
        self,
        path: str,
        encryption_key: Optional[str] = None,
        require_encryption: bool = True,
    ):
        """
        Initialize file credential store.

        Args:
            path: File holding the credential blob
            encryption_key: Fernet key. Falls back to ENCRYPTION_KEY env var
            require_encryption: If True, raises ConfigurationError when no key
                is available. If False, stores plaintext (ONLY for testing)
        """
        self._path = Path(path)
        self._lock = threading.Lock()
        self._fernet = self._init_fernet(encryption_key, require_encryption)

    @property
    def path(self) -> Path:
        return self._path

    @staticmethod
    def _init_fernet(encryption_key: Optional[str], require_encryption: bool) -> Optional[Fernet]:
        key = encryption_key or os.getenv("ENCRYPTION_KEY")
        if not key:
            if require_encryption:
                raise ConfigurationError(
                    "ENCRYPTION_KEY is required for secure credential storage. "
                    "Please set ENCRYPTION_KEY in your environment configuration."
                )
            logger.warning(
                "ENCRYPTION_KEY not set - transport credential will NOT be encrypted. "
                "This is only acceptable for testing purposes."
            )
            return None
        try:
            return Fernet(key.encode())
        except Exception as e:
            raise ConfigurationError(f"Invalid ENCRYPTION_KEY: {e}")

    @get_storage_retry()
    def _read(self) -> bytes:
        return self._path.read_bytes()

    @get_storage_retry()
    def _write(self, data: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._path)

    def load(self) -> Optional[bytes]:
        """
        Load the stored credential.

        An unreadable or undecryptable file is treated as "no credential":
        the transport will ask for pairing instead of failing start-up.

        Returns:
            Credential bytes or None
        """
        with self._lock:
            if not self._path.exists():
                return None
            try:
                raw = self._read()
            except OSError as e:
                logger.error(f"Failed to read credential file {self._path}: {e}")
                return None

            if not raw:
                return None
            if self._fernet is None:
                return raw
            try:
                return self._fernet.decrypt(raw)
            except InvalidToken:
                logger.error(
                    "Stored transport credential cannot be decrypted with the current "
                    "ENCRYPTION_KEY; device must be paired again"
                )
                return None

    def save(self, credential: bytes) -> None:
        with self._lock:
            data = self._fernet.encrypt(credential) if self._fernet else credential
            self._write(data)
        logger.debug(f"Transport credential saved ({len(credential)} bytes)")

    def clear(self) -> None:
        with self._lock:
            try:
                self._path.unlink()
                logger.info(f"Transport credential removed: {self._path}")
            except FileNotFoundError:
                pass
