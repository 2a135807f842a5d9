"""Durable sync job queue keyed by (app, repository).

At most one live job exists per key: enqueueing while a job is waiting,
active or delayed is a no-op, while finished records are replaced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from gitrelay.models import PENDING_JOB_STATES, JobState, SyncJob
from gitrelay.schemas.job import SnapshotJobData
from gitrelay.services.datetime_service import format_datetime, now_utc, utc_after

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_CLAIM_ATTEMPTS = 5


@dataclass(frozen=True)
class ClaimedJob:
    job_id: str
    data: SnapshotJobData
    attempts_made: int
    max_attempts: int


@dataclass(frozen=True)
class JobInfo:
    job_id: str
    app_id: str
    repository_id: str
    state: JobState
    attempts_made: int
    run_at: str
    last_error: str | None


class SyncJobQueue:
    """Job queue stored in the shared relational store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
        base_delay_seconds: float = 1.0,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds

    async def enqueue(self, data: SnapshotJobData, *, delay_seconds: float = 0.0) -> bool:
        """Add a job unless one is already pending for the same key. Returns True if added."""
        now = format_datetime(now_utc())
        async with self._session_factory() as session:
            existing = await session.get(SyncJob, data.job_id)
            if existing is not None:
                if existing.state in PENDING_JOB_STATES:
                    return False
                await session.delete(existing)
                await session.flush()
            session.add(
                SyncJob(
                    job_id=data.job_id,
                    app_id=data.app_id,
                    repository_id=data.repository_id,
                    payload=data.model_dump_json(),
                    state=JobState.WAITING.value if delay_seconds <= 0 else JobState.DELAYED.value,
                    attempts_made=0,
                    max_attempts=self.max_attempts,
                    run_at=utc_after(delay_seconds) if delay_seconds > 0 else now,
                    created_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        logger.debug("Enqueued job %s", data.job_id)
        return True

    async def claim(self) -> ClaimedJob | None:
        """Atomically take the next due job, or None when nothing is due."""
        for _ in range(_CLAIM_ATTEMPTS):
            now = format_datetime(now_utc())
            async with self._session_factory() as session:
                stmt = (
                    select(SyncJob.job_id, SyncJob.state)
                    .where(SyncJob.state.in_((JobState.WAITING.value, JobState.DELAYED.value)))
                    .where(SyncJob.run_at <= now)
                    .order_by(SyncJob.run_at, SyncJob.created_at)
                    .limit(1)
                )
                row = (await session.execute(stmt)).one_or_none()
                if row is None:
                    return None
                job_id, observed_state = row
                result = await session.execute(
                    update(SyncJob)
                    .where(SyncJob.job_id == job_id, SyncJob.state == observed_state)
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts_made=SyncJob.attempts_made + 1,
                        processed_at=now,
                    )
                    .returning(SyncJob.payload, SyncJob.attempts_made, SyncJob.max_attempts)
                )
                claimed = result.one_or_none()
                await session.commit()
            if claimed is not None:
                payload, attempts_made, max_attempts = claimed
                return ClaimedJob(
                    job_id=job_id,
                    data=SnapshotJobData.model_validate_json(payload),
                    attempts_made=attempts_made,
                    max_attempts=max_attempts,
                )
            # Another consumer took it first; look again.
        return None

    async def complete(self, job_id: str) -> None:
        await self._finish(job_id, JobState.COMPLETED, None)

    async def fail(self, job_id: str, error: str, *, final: bool = False) -> JobState:
        """Record a failed attempt and schedule exponential backoff.

        The job is finished as failed when ``final`` is set or its attempts
        are exhausted.
        """
        async with self._session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                return JobState.FAILED
            if final or job.attempts_made >= job.max_attempts:
                job.state = JobState.FAILED.value
                job.finished_at = format_datetime(now_utc())
            else:
                delay = self.backoff_delay(job.attempts_made)
                job.state = JobState.DELAYED.value
                job.run_at = utc_after(delay)
                logger.info("Job %s retry in %.1fs (attempt %d)", job_id, delay, job.attempts_made)
            job.last_error = error
            await session.commit()
            return JobState(job.state)

    def backoff_delay(self, attempts_made: int) -> float:
        """Exponential backoff: base, 2*base, 4*base, ..."""
        return self.base_delay_seconds * 2 ** max(attempts_made - 1, 0)

    async def requeue_active(self) -> int:
        """Return jobs left active by a stopped process to the waiting state."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncJob)
                .where(SyncJob.state == JobState.ACTIVE.value)
                .values(state=JobState.WAITING.value, run_at=format_datetime(now_utc()))
            )
            await session.commit()
        count = result.rowcount or 0
        if count:
            logger.warning("Requeued %d interrupted jobs", count)
        return count

    async def remove_pending(self, job_id: str) -> bool:
        """Drop one waiting or delayed job."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncJob).where(
                    SyncJob.job_id == job_id,
                    SyncJob.state.in_((JobState.WAITING.value, JobState.DELAYED.value)),
                )
            )
            await session.commit()
        return bool(result.rowcount)

    async def remove_pending_for_app(self, app_id: str) -> int:
        """Drop waiting and delayed jobs of an app. Active jobs run to completion."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncJob).where(
                    SyncJob.app_id == app_id,
                    SyncJob.state.in_((JobState.WAITING.value, JobState.DELAYED.value)),
                )
            )
            await session.commit()
        return result.rowcount or 0

    async def counts(self) -> dict[str, int]:
        """Number of jobs in each state."""
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(SyncJob.state, func.count()).group_by(SyncJob.state)
                )
            ).all()
        counts = {state.value: 0 for state in JobState}
        for state, count in rows:
            counts[state] = count
        return counts

    async def list_jobs(self, state: JobState | None = None, *, limit: int = 100) -> list[JobInfo]:
        async with self._session_factory() as session:
            stmt = select(SyncJob).order_by(SyncJob.created_at).limit(limit)
            if state is not None:
                stmt = stmt.where(SyncJob.state == state.value)
            jobs = (await session.execute(stmt)).scalars().all()
        return [
            JobInfo(
                job_id=job.job_id,
                app_id=job.app_id,
                repository_id=job.repository_id,
                state=JobState(job.state),
                attempts_made=job.attempts_made,
                run_at=job.run_at,
                last_error=job.last_error,
            )
            for job in jobs
        ]

    async def _finish(self, job_id: str, state: JobState, error: str | None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SyncJob)
                .where(SyncJob.job_id == job_id)
                .values(state=state.value, last_error=error, finished_at=format_datetime(now_utc()))
            )
            await session.commit()
