"""Last-synced snapshot of each repository (metadata only, no content)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.orm import selectinload

from gitrelay.models import RepositorySnapshot, SnapshotFile
from gitrelay.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from gitrelay.services.scan_service import ScannedFile


@dataclass(frozen=True)
class SnapshotFileInfo:
    path: str
    sha: str
    size: int


@dataclass(frozen=True)
class SnapshotInfo:
    repository_id: str
    commit_sha: str
    branch: str
    scanned_at: str
    files: list[SnapshotFileInfo]


async def save_snapshot(
    session: AsyncSession,
    repository_id: str,
    commit_sha: str,
    branch: str,
    files: Iterable[ScannedFile],
) -> RepositorySnapshot:
    """Replace the repository's snapshot wholesale."""
    await _delete_snapshot_rows(session, repository_id)
    snapshot = RepositorySnapshot(
        repository_id=repository_id,
        commit_sha=commit_sha,
        branch=branch,
        scanned_at=format_datetime(now_utc()),
        files=[SnapshotFile(path=f.path, sha=f.sha, size=f.size) for f in files],
    )
    session.add(snapshot)
    await session.commit()
    return snapshot


async def get_snapshot(session: AsyncSession, repository_id: str) -> SnapshotInfo | None:
    stmt = (
        select(RepositorySnapshot)
        .options(selectinload(RepositorySnapshot.files))
        .where(RepositorySnapshot.repository_id == repository_id)
    )
    snapshot = (await session.execute(stmt)).scalar_one_or_none()
    if snapshot is None:
        return None
    return SnapshotInfo(
        repository_id=snapshot.repository_id,
        commit_sha=snapshot.commit_sha,
        branch=snapshot.branch,
        scanned_at=snapshot.scanned_at,
        files=sorted(
            (SnapshotFileInfo(path=f.path, sha=f.sha, size=f.size) for f in snapshot.files),
            key=lambda f: f.path,
        ),
    )


async def delete_snapshot(session: AsyncSession, repository_id: str) -> None:
    await _delete_snapshot_rows(session, repository_id)
    await session.commit()


async def _delete_snapshot_rows(session: AsyncSession, repository_id: str) -> None:
    snapshot_ids = select(RepositorySnapshot.id).where(
        RepositorySnapshot.repository_id == repository_id
    )
    await session.execute(delete(SnapshotFile).where(SnapshotFile.snapshot_id.in_(snapshot_ids)))
    await session.execute(
        delete(RepositorySnapshot).where(RepositorySnapshot.repository_id == repository_id)
    )
