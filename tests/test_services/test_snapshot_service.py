"""Tests for repository snapshots."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select

from gitrelay.models import SnapshotFile
from gitrelay.services.scan_service import ScannedFile
from gitrelay.services.snapshot_service import delete_snapshot, get_snapshot, save_snapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


def _file(path: str, sha: str, size: int = 1) -> ScannedFile:
    return ScannedFile(
        path=path, sha=sha, size=size, content="", is_binary=False, encoding="utf-8"
    )


class TestSnapshots:
    async def test_save_and_get(self, db_session: AsyncSession) -> None:
        await save_snapshot(db_session, "repo", "c1", "main", [_file("b", "2", 5), _file("a", "1")])
        snapshot = await get_snapshot(db_session, "repo")
        assert snapshot is not None
        assert snapshot.commit_sha == "c1"
        assert snapshot.branch == "main"
        assert [(f.path, f.sha, f.size) for f in snapshot.files] == [("a", "1", 1), ("b", "2", 5)]

    async def test_save_replaces_wholesale(self, db_session: AsyncSession) -> None:
        await save_snapshot(db_session, "repo", "c1", "main", [_file("a", "1"), _file("b", "2")])
        await save_snapshot(db_session, "repo", "c2", "main", [_file("c", "3")])
        snapshot = await get_snapshot(db_session, "repo")
        assert snapshot is not None
        assert snapshot.commit_sha == "c2"
        assert [f.path for f in snapshot.files] == ["c"]
        count = (await db_session.execute(select(func.count()).select_from(SnapshotFile))).scalar()
        assert count == 1

    async def test_missing_and_deleted(self, db_session: AsyncSession) -> None:
        assert await get_snapshot(db_session, "nope") is None
        await save_snapshot(db_session, "repo", "c1", "main", [_file("a", "1")])
        await delete_snapshot(db_session, "repo")
        assert await get_snapshot(db_session, "repo") is None
        count = (await db_session.execute(select(func.count()).select_from(SnapshotFile))).scalar()
        assert count == 0
