"""SQLAlchemy ORM models for gitrelay."""

from gitrelay.models.app import App
from gitrelay.models.base import Base
from gitrelay.models.delivery import DeliveredFile
from gitrelay.models.job import (
    PENDING_JOB_STATES,
    BulkOperation,
    JobState,
    RepoLockRow,
    SyncJob,
)
from gitrelay.models.repository import AppRepository, LinkStatus, Repository
from gitrelay.models.snapshot import RepositorySnapshot, SnapshotFile

__all__ = [
    "PENDING_JOB_STATES",
    "App",
    "AppRepository",
    "Base",
    "BulkOperation",
    "DeliveredFile",
    "JobState",
    "LinkStatus",
    "RepoLockRow",
    "Repository",
    "RepositorySnapshot",
    "SnapshotFile",
    "SyncJob",
]
