"""Outbound webhook payload schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class RepositoryInfo(BaseModel):
    """Repository identity included in every webhook body."""

    repository_id: str
    github_url: str
    owner: str
    name: str


class ChunkInfo(BaseModel):
    """Position of one slice within a chunked transfer."""

    id: str
    index: int
    total: int


class FilePayload(BaseModel):
    """File section of a create/update/delete notification.

    ``content_encoding`` is only set for binary files; ``chunk`` only for
    slices of a chunked transfer.
    """

    path: str
    sha: str
    size: int | None = None
    content: str | None = None
    content_encoding: Literal["base64"] | None = None
    chunk: ChunkInfo | None = None


class FileNotificationPayload(BaseModel):
    """Body of ``POST {base_url}/create|update|delete``."""

    repository: RepositoryInfo
    file: FilePayload
    previous_sha: str | None = None
    commit_sha: str
    timestamp: str


class SyncErrorInfo(BaseModel):
    type: Literal["git_failure"] = "git_failure"
    message: str


class CircuitBreakerInfo(BaseModel):
    status: Literal["open"] = "open"
    consecutive_failures: int
    threshold: int
    cooldown_until: str


class SyncFailedPayload(BaseModel):
    """Body of ``POST {base_url}/sync_failed``, sent when a circuit opens."""

    event: Literal["sync_failed"] = "sync_failed"
    repository: RepositoryInfo
    error: SyncErrorInfo
    circuit_breaker: CircuitBreakerInfo
    retry_count: int
    timestamp: str
