"""Unsubscribing apps from repositories and deleting apps, with orphan cleanup."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select

from gitrelay.models import App, AppRepository, DeliveredFile, Repository
from gitrelay.services.snapshot_service import delete_snapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from gitrelay.services.git_service import GitService
    from gitrelay.services.job_queue import SyncJobQueue
    from gitrelay.services.repo_lock import RepoLock

logger = logging.getLogger(__name__)


class RepositoryManager:
    """Removes subscriptions and cleans up repositories nobody watches anymore."""

    def __init__(self, git_service: GitService, repo_lock: RepoLock, queue: SyncJobQueue) -> None:
        self.git_service = git_service
        self.repo_lock = repo_lock
        self.queue = queue

    async def unwatch_repository(
        self, session: AsyncSession, app_id: str, repository_id: str
    ) -> bool:
        """Unlink an app from a repository. Returns False when no link existed."""
        result = await session.execute(
            delete(AppRepository).where(
                AppRepository.app_id == app_id, AppRepository.repository_id == repository_id
            )
        )
        if not result.rowcount:
            await session.rollback()
            return False
        await session.execute(
            delete(DeliveredFile).where(
                DeliveredFile.app_id == app_id, DeliveredFile.repository_id == repository_id
            )
        )
        await session.commit()
        await self.queue.remove_pending(f"{app_id}-{repository_id}")
        logger.info("App %s stopped watching repository %s", app_id, repository_id)
        await self.cleanup_orphan(session, repository_id)
        return True

    async def delete_app(self, session: AsyncSession, app_id: str) -> bool:
        """Delete an app with its links, ledger and pending jobs."""
        app = await session.get(App, app_id)
        if app is None:
            return False
        repository_ids = list(
            (
                await session.execute(
                    select(AppRepository.repository_id).where(AppRepository.app_id == app_id)
                )
            ).scalars()
        )
        removed_jobs = await self.queue.remove_pending_for_app(app_id)
        await session.execute(delete(DeliveredFile).where(DeliveredFile.app_id == app_id))
        await session.execute(delete(AppRepository).where(AppRepository.app_id == app_id))
        await session.delete(app)
        await session.commit()
        logger.info(
            "Deleted app %s (%d links, %d pending jobs)", app_id, len(repository_ids), removed_jobs
        )
        for repository_id in repository_ids:
            await self.cleanup_orphan(session, repository_id)
        return True

    async def cleanup_orphan(self, session: AsyncSession, repository_id: str) -> bool:
        """Delete a repository nobody watches, including its local clone.

        The clone is removed under the repository lock so no running job
        sees the tree vanish.
        """
        watchers = (
            await session.execute(
                select(func.count())
                .select_from(AppRepository)
                .where(AppRepository.repository_id == repository_id)
            )
        ).scalar_one()
        if watchers:
            return False
        repository = await session.get(Repository, repository_id)
        if repository is None:
            return False
        owner, name = repository.owner, repository.name

        async with self.repo_lock.hold(f"{owner}/{name}", job_id=f"cleanup-{repository_id}"):
            await asyncio.to_thread(self.git_service.remove_local_clone, owner, name)
        await delete_snapshot(session, repository_id)
        await session.execute(
            delete(Repository).where(Repository.repository_id == repository_id)
        )
        await session.commit()
        logger.info("Removed orphaned repository %s/%s", owner, name)
        return True
