"""Sync-level exception types.

Convention:
- ``SyncError`` subclasses abort the current run. The orchestrator catches
  them (and any other ``Exception``), reports them through the progress
  callback and returns a failed ``SyncResult``.
- A failed per-file download is *not* raised to the orchestrator; the
  dispatcher records it and the batch continues.
- ``HostStoppingError`` derives from ``BaseException`` so that generic
  ``except Exception`` handlers never convert it into an ordinary failure.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for errors that fail a sync run."""


class ConfigurationError(SyncError):
    """Raised when the source or target configuration is missing or invalid."""


class NetworkError(SyncError):
    """Raised for non-2xx responses, transport failures and malformed bodies."""


class ChecksumMismatchError(SyncError):
    """Raised when downloaded bytes do not match the declared digest or size."""


class PathSafetyError(SyncError):
    """Raised when a path would resolve outside its permitted root."""


class StateCorruptionError(SyncError):
    """Raised when persisted sync state cannot be parsed.

    Callers treat it as "not up to date" rather than as a run failure.
    """


class HostStoppingError(BaseException):
    """Raised by the host when it is shutting down mid-sync.

    Propagates through every layer unchanged.
    """
