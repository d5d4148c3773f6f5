"""Exception types raised while syncing a tree into the vector store.

Every error that aborts a run derives from :class:`SyncError`.  The sync
coordinator attaches its :class:`~qdrantsync.sync.SyncReport` to the
exception (``error.report``) before re-raising, so callers can report how
much work was done before the failure.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all qdrantsync errors."""

    report: Any = None


class ConfigurationError(SyncError):
    """Missing or invalid credentials or parameters (fatal, pre-flight)."""

    pass


class ChunkerConfigurationError(ConfigurationError):
    """Invalid chunk size / chunk overlap combination."""

    pass


class FilesystemError(SyncError):
    """A file could not be read.  Recoverable: the file is skipped."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class EmbeddingProviderError(SyncError):
    """The embedding provider failed.

    ``transient`` is True when the failure was retryable and the retry
    budget ran out, False for permanent failures (auth, bad request).
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class VectorStoreError(SyncError):
    """A vector-store call (create, delete, scroll, upsert) failed."""

    def __init__(self, message: str, operation: str = "", transient: bool = False):
        super().__init__(message)
        self.operation = operation
        self.transient = transient


class ConsistencyError(SyncError):
    """Vector dimension mismatch or malformed provider response."""

    pass


class SyncCancelledError(SyncError):
    """The run was cancelled before starting the next batch."""

    pass
