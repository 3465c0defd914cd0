"""Centralized customized exceptions for filebundle.

All project-specific exceptions live in this module (the architecture guard
rejects exception classes defined anywhere else in the package).

Internal code should prefer explicit imports:

    from filebundle.core.exception import CorruptBundleError

The taxonomy follows how callers are expected to react:

  - plain ``OSError``: transient I/O problem, retry later
  - ``LockFailureError``: lock contention or a lost lock
  - ``CorruptBundleError``: damaged bundle data, repair from another copy
  - ``SyncError`` / ``MigrationError``: retry bound exhausted or irrecoverable state
"""

from __future__ import annotations

__all__ = [
    "SpecError",
    "FileBundleError",
    "BundleNotFoundError",
    "CorruptBundleError",
    "SyncError",
    "LockFailureError",
    "AlreadyLockedError",
    "MigrationError",
]


class SpecError(ValueError):
    """Raised when a persisted document (manifest, cache, lock, config) is invalid."""


class FileBundleError(OSError):
    """Base error for bundle store I/O failures."""


class BundleNotFoundError(FileBundleError, FileNotFoundError):
    """Raised when the manifest or ZIP of a requested bundle does not exist."""


class CorruptBundleError(FileBundleError):
    """Raised when a bundle ZIP or manifest exists but cannot be read."""

    def __init__(self, message: str, *, token: str | None = None):
        super().__init__(message)
        self.token = token


class SyncError(FileBundleError):
    """Raised when a sync loop exhausts its retry policy."""


class LockFailureError(OSError):
    """Raised when a write lock is not held or could not be obtained."""


class AlreadyLockedError(LockFailureError):
    """Raised when another owner currently holds the write lock."""

    def __init__(self, message: str, *, owner: str | None = None):
        super().__init__(message)
        self.owner = owner


class MigrationError(RuntimeError):
    """Raised when a directory cannot be migrated between representations."""
