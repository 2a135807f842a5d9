"""Process-wide wiring of the sync engine: store, HTTP client, services, workers."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import httpx

from gitrelay.database import create_engine, create_schema
from gitrelay.services.admin_service import BulkAdmin
from gitrelay.services.git_service import GitService
from gitrelay.services.job_queue import SyncJobQueue
from gitrelay.services.notifier import Notifier
from gitrelay.services.repo_lock import RepoLock, SqlLockBackend
from gitrelay.services.repository_service import RepositoryManager
from gitrelay.services.scheduler_service import Scheduler
from gitrelay.services.worker_service import SnapshotWorker, WorkerPool

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from gitrelay.config import Settings

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


class RelayRuntime:
    """Owns every long-lived collaborator. Nothing is a module-level singleton."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._external_client = http_client is not None
        self._http_client = http_client
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None
        self.queue: SyncJobQueue | None = None
        self.git_service: GitService | None = None
        self.repo_lock: RepoLock | None = None
        self.notifier: Notifier | None = None
        self.worker: SnapshotWorker | None = None
        self.pool: WorkerPool | None = None
        self.scheduler: Scheduler | None = None
        self.bulk_admin: BulkAdmin | None = None
        self.repository_manager: RepositoryManager | None = None
        self._engine_started = False

    async def open(self) -> None:
        """Connect to the store and build the services, without starting background work."""
        settings = self.settings
        engine, session_factory = create_engine(settings)
        try:
            await create_schema(engine)
        except Exception as exc:
            logger.critical("Failed to create database schema: %s.", exc)
            await engine.dispose()
            raise
        self.engine = engine
        self.session_factory = session_factory

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=settings.notification_timeout_seconds, follow_redirects=False
            )

        self.queue = SyncJobQueue(
            session_factory,
            max_attempts=settings.max_retry_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
        )
        self.git_service = GitService(
            settings.repos_base_path, timeout=settings.git_timeout_seconds
        )
        self.repo_lock = RepoLock.from_settings(SqlLockBackend(session_factory), settings)
        self.notifier = Notifier.from_settings(self._http_client, settings)
        self.worker = SnapshotWorker(
            session_factory, settings, self.git_service, self.repo_lock, self.notifier
        )
        self.pool = WorkerPool(
            self.queue,
            self.worker,
            session_factory,
            concurrency=settings.scan_concurrency,
            poll_interval_seconds=settings.job_poll_interval_seconds,
        )
        self.scheduler = Scheduler(
            session_factory,
            self.queue,
            interval_seconds=settings.scan_interval_seconds,
            rescan_interval_seconds=settings.rescan_interval_seconds,
        )
        self.bulk_admin = BulkAdmin(session_factory, self.queue)
        self.repository_manager = RepositoryManager(
            self.git_service, self.repo_lock, self.queue
        )

    async def start(self) -> None:
        """Open the runtime and start the worker pool and the scheduler."""
        if self.engine is None:
            await self.open()
        assert self.queue is not None
        assert self.pool is not None
        assert self.scheduler is not None
        await self.queue.requeue_active()
        self.pool.start()
        self.scheduler.start()
        self._engine_started = True
        logger.info("Sync engine started")

    async def stop(self) -> None:
        """Stop background work, then release the HTTP client and the store."""
        if self._engine_started:
            assert self.scheduler is not None
            assert self.pool is not None
            try:
                await self.scheduler.stop()
            except Exception as exc:
                logger.error("Error during scheduler shutdown: %s", exc, exc_info=True)
            try:
                await self.pool.stop()
            except Exception as exc:
                logger.error("Error during worker pool shutdown: %s", exc, exc_info=True)
            self._engine_started = False

        if self.bulk_admin is not None:
            await self.bulk_admin.shutdown()

        if self._http_client is not None and not self._external_client:
            try:
                await self._http_client.aclose()
            except Exception as exc:
                logger.error("Error closing HTTP client: %s", exc, exc_info=True)
            self._http_client = None

        if self.engine is not None:
            try:
                await self.engine.dispose()
            except Exception as exc:
                logger.error("Error during engine disposal: %s", exc, exc_info=True)
            self.engine = None
        logger.info("Sync engine stopped")
