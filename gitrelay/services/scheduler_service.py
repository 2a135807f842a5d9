"""Periodic sweep that enqueues jobs for links needing a sync."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gitrelay.models import LinkStatus
from gitrelay.services import link_service

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gitrelay.services.job_queue import SyncJobQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    candidates: int
    enqueued: int
    rearmed: int


class Scheduler:
    """Selects pending, stale and failed links and enqueues one job per link.

    Repositories with an open circuit are skipped entirely.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: SyncJobQueue,
        *,
        interval_seconds: float = 60.0,
        rescan_interval_seconds: float = 300.0,
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.rescan_interval_seconds = rescan_interval_seconds
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def sweep(self) -> SweepResult:
        """Run one selection pass."""
        async with self._session_factory() as session:
            candidates = await link_service.find_sync_candidates(
                session, self.rescan_interval_seconds
            )
            rearmed = 0
            enqueued = 0
            for candidate in candidates:
                job = candidate.job
                if candidate.status is LinkStatus.FAILED:
                    # Keeps the retry count: one more attempt per sweep.
                    if not await link_service.reset_link(
                        session,
                        job.app_id,
                        job.repository_id,
                        only_failed=True,
                        reset_retry_count=False,
                    ):
                        continue
                    rearmed += 1
                if await self.queue.enqueue(job):
                    enqueued += 1
        if candidates:
            logger.info(
                "Scheduler sweep: %d candidates, %d enqueued, %d failed links re-armed",
                len(candidates),
                enqueued,
                rearmed,
            )
        return SweepResult(candidates=len(candidates), enqueued=enqueued, rearmed=rearmed)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="gitrelay-scheduler")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        logger.info("Scheduler started (every %gs)", self.interval_seconds)
        while not self._stopping.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Scheduler sweep failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass
        logger.info("Scheduler stopped")
