"""Transport credential persistence."""

from .store import CredentialStore, FileCredentialStore, MemoryCredentialStore

__all__ = ["CredentialStore", "FileCredentialStore", "MemoryCredentialStore"]
