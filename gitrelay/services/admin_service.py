"""Administrative retry and resync actions, single and bulk."""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from gitrelay.models import LinkStatus
from gitrelay.services import bulk_progress, delivery_service, link_service

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gitrelay.services.bulk_progress import BulkProgress
    from gitrelay.services.job_queue import SyncJobQueue

logger = logging.getLogger(__name__)


class BulkKind(StrEnum):
    RETRY_BY_APP = "retry_by_app"
    RETRY_ALL = "retry_all"
    RESYNC_BY_APP = "resync_by_app"


async def retry_single(
    session: AsyncSession, queue: SyncJobQueue, app_id: str, repository_id: str
) -> bool:
    """Re-arm a failed link with a fresh retry budget and enqueue it.

    Returns False when the link does not exist or is not failed.
    """
    if not await link_service.reset_link(session, app_id, repository_id, only_failed=True):
        return False
    job = await link_service.get_job_data(session, app_id, repository_id)
    if job is None:
        return False
    await queue.enqueue(job)
    logger.info("Retry requested for %s-%s", app_id, repository_id)
    return True


async def resync_single(
    session: AsyncSession, queue: SyncJobQueue, app_id: str, repository_id: str
) -> bool:
    """Forget everything delivered to the app and resend the full tree.

    Refused while the link is being scanned.
    """
    link = await link_service.get_link(session, app_id, repository_id)
    if link is None:
        return False
    if link.status == LinkStatus.SCANNING.value:
        logger.warning("Resync of %s-%s refused: scan in progress", app_id, repository_id)
        return False
    cleared = await delivery_service.clear_deliveries(session, app_id, repository_id)
    await link_service.reset_link(session, app_id, repository_id)
    job = await link_service.get_job_data(session, app_id, repository_id)
    if job is None:
        return False
    await queue.enqueue(job)
    logger.info(
        "Resync requested for %s-%s (%d ledger entries cleared)", app_id, repository_id, cleared
    )
    return True


class BulkAdmin:
    """Runs bulk actions in the background with progress and cooperative cancellation."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], queue: SyncJobQueue
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self._tasks: dict[str, asyncio.Task[None]] = {}

    async def retry_by_app(self, app_id: str) -> BulkProgress:
        return await self._start(BulkKind.RETRY_BY_APP, app_id=app_id, status=LinkStatus.FAILED)

    async def retry_all(self) -> BulkProgress:
        return await self._start(BulkKind.RETRY_ALL, app_id=None, status=LinkStatus.FAILED)

    async def resync_by_app(self, app_id: str) -> BulkProgress:
        return await self._start(BulkKind.RESYNC_BY_APP, app_id=app_id, status=None)

    async def cancel(self, operation_id: str) -> bool:
        async with self._session_factory() as session:
            return await bulk_progress.request_cancel(session, operation_id)

    async def progress(self, operation_id: str) -> BulkProgress | None:
        async with self._session_factory() as session:
            return await bulk_progress.get_progress(session, operation_id)

    async def wait(self, operation_id: str) -> BulkProgress | None:
        """Wait for a running operation to finish and return its final progress."""
        task = self._tasks.get(operation_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.progress(operation_id)

    async def shutdown(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

    async def _start(
        self, kind: BulkKind, *, app_id: str | None, status: LinkStatus | None
    ) -> BulkProgress:
        async with self._session_factory() as session:
            links = await link_service.list_links(session, app_id=app_id, status=status)
            items = [(link.app_id, link.repository_id) for link in links]
            progress = await bulk_progress.start_operation(session, kind.value, len(items))
        task = asyncio.create_task(
            self._run(kind, progress.operation_id, items), name=f"bulk-{kind}"
        )
        self._tasks[progress.operation_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(progress.operation_id, None))
        logger.info("Started %s over %d links (%s)", kind, len(items), progress.operation_id)
        return progress

    async def _run(self, kind: BulkKind, operation_id: str, items: list[tuple[str, str]]) -> None:
        action = resync_single if kind is BulkKind.RESYNC_BY_APP else retry_single
        async with self._session_factory() as session:
            for app_id, repository_id in items:
                if await bulk_progress.is_cancelled(session, operation_id):
                    logger.info("Bulk operation %s cancelled", operation_id)
                    return
                try:
                    ok = await action(session, self.queue, app_id, repository_id)
                except Exception:
                    logger.exception("%s failed for %s-%s", kind, app_id, repository_id)
                    await session.rollback()
                    ok = False
                await bulk_progress.record_item(session, operation_id, success=ok)
        logger.info("Bulk operation %s finished", operation_id)
