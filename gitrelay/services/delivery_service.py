"""Delivery ledger: last hash successfully delivered per (app, repository, path).

Every mutation here must follow a confirmed notification, so the ledger
is never ahead of what the app actually received.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from gitrelay.models import DeliveredFile
from gitrelay.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession


async def get_delivered_files(
    session: AsyncSession, app_id: str, repository_id: str
) -> dict[str, str]:
    """Return the ledger as a map of path -> delivered hash."""
    stmt = select(DeliveredFile.file_path, DeliveredFile.file_sha).where(
        DeliveredFile.app_id == app_id,
        DeliveredFile.repository_id == repository_id,
    )
    result = await session.execute(stmt)
    return {path: sha for path, sha in result.all()}


async def record_delivery(
    session: AsyncSession, app_id: str, repository_id: str, file_path: str, file_sha: str
) -> None:
    """Insert or refresh one ledger entry."""
    await session.merge(
        DeliveredFile(
            app_id=app_id,
            repository_id=repository_id,
            file_path=file_path,
            file_sha=file_sha,
            delivered_at=format_datetime(now_utc()),
        )
    )
    await session.commit()


async def record_deliveries(
    session: AsyncSession,
    app_id: str,
    repository_id: str,
    entries: Iterable[tuple[str, str]],
) -> int:
    """Batch upsert of (path, sha) pairs in one transaction. Returns the count."""
    delivered_at = format_datetime(now_utc())
    count = 0
    for file_path, file_sha in entries:
        await session.merge(
            DeliveredFile(
                app_id=app_id,
                repository_id=repository_id,
                file_path=file_path,
                file_sha=file_sha,
                delivered_at=delivered_at,
            )
        )
        count += 1
    await session.commit()
    return count


async def remove_delivery(
    session: AsyncSession, app_id: str, repository_id: str, file_path: str
) -> None:
    await session.execute(
        delete(DeliveredFile).where(
            DeliveredFile.app_id == app_id,
            DeliveredFile.repository_id == repository_id,
            DeliveredFile.file_path == file_path,
        )
    )
    await session.commit()


async def clear_deliveries(session: AsyncSession, app_id: str, repository_id: str) -> int:
    """Drop the whole ledger for one link so the next job is an initial snapshot."""
    result = await session.execute(
        delete(DeliveredFile).where(
            DeliveredFile.app_id == app_id,
            DeliveredFile.repository_id == repository_id,
        )
    )
    await session.commit()
    return result.rowcount or 0
