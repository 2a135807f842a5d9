"""Application-level exception types.

Convention:
- Job-level failures (``GitSyncError``, ``LockTimeoutError``,
  ``NotificationError``) all take the same retry path in the worker: the
  link's retry counter is incremented and the queue reschedules the job
  with backoff. Only ``GitSyncError`` additionally feeds the circuit breaker.
- ``ScanReadError`` is per-file and never fails a job; the scanner logs it
  and skips the file.
- ``InternalServerError`` is for errors whose details must never reach
  HTTP clients.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for gitrelay errors."""


class GitSyncError(RelayError):
    """Raised when a clone or pull fails (network, auth, missing repository)."""


class LockTimeoutError(RelayError):
    """Raised when the per-repository lock cannot be acquired in time.

    Recoverable: the job is retried like any other failure.
    """

    def __init__(self, repo_key: str) -> None:
        super().__init__(f"Lock timeout acquiring mutex for repo: {repo_key}")
        self.repo_key = repo_key


class NotificationError(RelayError):
    """Raised when a webhook call returns non-2xx or fails at the network level."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ScanReadError(RelayError):
    """Raised when a single file cannot be read during a scan."""

    def __init__(self, path: str, cause: Exception) -> None:
        super().__init__(f"Failed to read file {path}: {cause}")
        self.path = path


class ChunkIntegrityError(RelayError):
    """Raised by the receiver when a chunked transfer cannot be reassembled or verified."""


class InternalServerError(RelayError):
    """Raised for internal errors whose details must not be exposed to clients."""
