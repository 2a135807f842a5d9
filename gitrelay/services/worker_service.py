"""Snapshot worker: runs one (app, repository) job and drives the link state machine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from gitrelay.exceptions import GitSyncError, NotificationError
from gitrelay.models import LinkStatus
from gitrelay.schemas.notification import RepositoryInfo
from gitrelay.services import circuit_breaker, delivery_service, link_service
from gitrelay.services.change_detector import (
    ChangeType,
    detect_and_sort_changes,
    group_changes_by_type,
    is_initial_snapshot,
)
from gitrelay.services.crypto_service import decrypt_optional, decrypt_value
from gitrelay.services.failure_notifier import broadcast_sync_failure
from gitrelay.services.notifier import WebhookTarget
from gitrelay.services.scan_service import scan_repository
from gitrelay.services.snapshot_service import save_snapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gitrelay.config import Settings
    from gitrelay.schemas.job import SnapshotJobData
    from gitrelay.services.git_service import CloneResult, GitService
    from gitrelay.services.job_queue import ClaimedJob, SyncJobQueue
    from gitrelay.services.notifier import Notifier
    from gitrelay.services.repo_lock import RepoLock
    from gitrelay.services.scan_service import ScannedFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOutcome:
    """Summary of a successfully processed job."""

    commit_sha: str
    branch: str
    files_scanned: int
    created: int
    updated: int
    deleted: int

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted


class SnapshotWorker:
    """Processes snapshot jobs.

    Ledger entries change only after the matching notification succeeded,
    and the snapshot and synced status are written only after every
    notification of the job succeeded.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        git_service: GitService,
        repo_lock: RepoLock,
        notifier: Notifier,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings
        self.git_service = git_service
        self.repo_lock = repo_lock
        self.notifier = notifier

    async def process_job(self, job: SnapshotJobData) -> JobOutcome:
        """Run one job. Any failure is recorded on the link and re-raised."""
        prefix = job.log_prefix
        try:
            return await self._process(job)
        except Exception as exc:
            logger.error("%s Job failed for %s/%s: %s", prefix, job.owner, job.name, exc)
            await self._record_failure(job, exc)
            raise

    async def _process(self, job: SnapshotJobData) -> JobOutcome:
        prefix = job.log_prefix
        async with self._session_factory() as session:
            await link_service.mark_scanning(session, job.app_id, job.repository_id)

        key = self.settings.encryption_key
        token = decrypt_optional(job.github_token_encrypted, key)
        secret = decrypt_value(job.client_auth_key_encrypted, key)

        async def sync_and_scan() -> tuple[CloneResult, list[ScannedFile]]:
            clone = await self._sync_repository(job, token)
            files = await asyncio.to_thread(scan_repository, clone.local_path)
            return clone, files

        clone, files = await self.repo_lock.with_lock(
            job.repo_key, sync_and_scan, job_id=job.job_id
        )

        async with self._session_factory() as session:
            ledger = await delivery_service.get_delivered_files(
                session, job.app_id, job.repository_id
            )
            changes = detect_and_sort_changes(files, ledger)
            grouped = group_changes_by_type(changes)
            logger.info(
                "%s %s %s/%s@%s: %d files, %d created, %d updated, %d deleted",
                prefix,
                "Initial snapshot of" if is_initial_snapshot(ledger) else "Rescan of",
                job.owner,
                job.name,
                clone.commit_sha[:12],
                len(files),
                len(grouped.created),
                len(grouped.updated),
                len(grouped.deleted),
            )

            target = WebhookTarget(app_id=job.app_id, base_url=job.base_url, secret=secret)
            repository = RepositoryInfo(
                repository_id=job.repository_id,
                github_url=job.github_url,
                owner=job.owner,
                name=job.name,
            )
            for change in changes:
                result = await self.notifier.notify_change(
                    target, repository, change, clone.commit_sha
                )
                if not result.success:
                    msg = f"Failed to notify {change.type} for {change.path}: {result.error}"
                    raise NotificationError(msg, status_code=result.status_code)
                if change.type is ChangeType.DELETED:
                    await delivery_service.remove_delivery(
                        session, job.app_id, job.repository_id, change.path
                    )
                elif change.file is not None:
                    await delivery_service.record_delivery(
                        session, job.app_id, job.repository_id, change.path, change.file.sha
                    )

            await save_snapshot(
                session, job.repository_id, clone.commit_sha, clone.branch, files
            )
            await link_service.mark_synced(session, job.app_id, job.repository_id)

        logger.info("%s Synced %s/%s at %s", prefix, job.owner, job.name, clone.commit_sha[:12])
        return JobOutcome(
            commit_sha=clone.commit_sha,
            branch=clone.branch,
            files_scanned=len(files),
            created=len(grouped.created),
            updated=len(grouped.updated),
            deleted=len(grouped.deleted),
        )

    async def _sync_repository(self, job: SnapshotJobData, token: str | None) -> CloneResult:
        """Clone or pull, feeding the repository's circuit breaker."""
        try:
            clone = await self.git_service.sync(job.github_url, job.owner, job.name, token)
        except GitSyncError as exc:
            async with self._session_factory() as session:
                failure = await circuit_breaker.record_failure(
                    session,
                    job.repository_id,
                    threshold=self.settings.circuit_breaker_threshold,
                    cooldown_seconds=self.settings.circuit_breaker_cooldown_seconds,
                )
                if failure.opened:
                    await broadcast_sync_failure(
                        session,
                        self.notifier,
                        RepositoryInfo(
                            repository_id=job.repository_id,
                            github_url=job.github_url,
                            owner=job.owner,
                            name=job.name,
                        ),
                        str(exc),
                        failure,
                        threshold=self.settings.circuit_breaker_threshold,
                        encryption_key=self.settings.encryption_key,
                        timeout_seconds=self.settings.failure_notification_timeout_seconds,
                    )
            raise

        async with self._session_factory() as session:
            await circuit_breaker.record_success(session, job.repository_id)
        return clone

    async def _record_failure(self, job: SnapshotJobData, exc: Exception) -> None:
        try:
            async with self._session_factory() as session:
                failure = await link_service.record_job_failure(
                    session,
                    job.app_id,
                    job.repository_id,
                    str(exc) or type(exc).__name__,
                    max_attempts=self.settings.max_retry_attempts,
                )
        except Exception:
            logger.exception("%s Could not record job failure", job.log_prefix)
            return
        if failure.status is LinkStatus.FAILED:
            logger.error(
                "%s Giving up after %d attempts", job.log_prefix, failure.retry_count
            )
        else:
            logger.warning(
                "%s Attempt %d/%d failed, will retry",
                job.log_prefix,
                failure.retry_count,
                self.settings.max_retry_attempts,
            )


class WorkerPool:
    """A bounded set of consumer tasks pulling jobs from the queue.

    Every exception is contained per job; a consumer only stops on shutdown.
    """

    def __init__(
        self,
        queue: SyncJobQueue,
        worker: SnapshotWorker,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        concurrency: int = 5,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.queue = queue
        self.worker = worker
        self._session_factory = session_factory
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"gitrelay-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Started %d snapshot workers", self.concurrency)

    async def stop(self, timeout: float = 30.0) -> None:
        """Let in-flight jobs finish, cancelling them after ``timeout`` seconds."""
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Snapshot workers stopped")

    async def run_once(self) -> bool:
        """Claim and process a single due job. Returns False when none was due."""
        claimed = await self.queue.claim()
        if claimed is None:
            return False
        await self._handle(claimed)
        return True

    async def _consume(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception("Worker %d failed to poll the queue", index)
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(
                        self._stopping.wait(), timeout=self.poll_interval_seconds
                    )
                except TimeoutError:
                    pass

    async def _handle(self, claimed: ClaimedJob) -> None:
        try:
            await self.worker.process_job(claimed.data)
        except Exception as exc:
            give_up = await self._link_failed(claimed.data)
            state = await self.queue.fail(claimed.job_id, str(exc), final=give_up)
            logger.debug("Job %s is now %s", claimed.job_id, state)
            return
        await self.queue.complete(claimed.job_id)

    async def _link_failed(self, job: SnapshotJobData) -> bool:
        """A failed link gets no more queue retries until it is re-armed."""
        async with self._session_factory() as session:
            link = await link_service.get_link(session, job.app_id, job.repository_id)
        return link is None or link.status == LinkStatus.FAILED.value
