"""Coordination models: job queue, repository locks, bulk operation progress."""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gitrelay.models.base import Base


class JobState(StrEnum):
    """Lifecycle state of a queued sync job."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_JOB_STATES = (JobState.WAITING.value, JobState.ACTIVE.value, JobState.DELAYED.value)


class SyncJob(Base):
    """One queued snapshot job, keyed by its (app, repository) pair."""

    __tablename__ = "sync_jobs"

    job_id: Mapped[str] = mapped_column(String, primary_key=True)
    app_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    repository_id: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String, nullable=False, default=JobState.WAITING.value)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    run_at: Mapped[str] = mapped_column(Text, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    processed_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    finished_at: Mapped[str | None] = mapped_column(Text, nullable=True)


class RepoLockRow(Base):
    """A held repository lock. Rows past ``expires_at`` may be taken over."""

    __tablename__ = "repo_locks"

    lock_key: Mapped[str] = mapped_column(String, primary_key=True)
    owner_token: Mapped[str] = mapped_column(String, nullable=False)
    expires_at: Mapped[str] = mapped_column(Text, nullable=False)


class BulkOperation(Base):
    """Progress and cancellation flag of an administrative bulk action."""

    __tablename__ = "bulk_operations"

    operation_id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
