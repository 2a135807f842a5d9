"""Exclusive, TTL-bounded lock per physical repository working tree."""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Protocol, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from gitrelay.exceptions import LockTimeoutError
from gitrelay.models import RepoLockRow
from gitrelay.services.datetime_service import format_datetime, now_utc, utc_after

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gitrelay.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_KEY_PREFIX = "repo-lock:"


class LockBackend(Protocol):
    """Storage for lock rows shared by every worker process."""

    async def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool: ...

    async def extend(self, key: str, token: str, ttl_seconds: float) -> bool: ...

    async def release(self, key: str, token: str) -> bool: ...


class SqlLockBackend:
    """Lock rows in the shared relational store.

    Acquisition drops an expired row for the key, then inserts; a primary
    key conflict means another owner holds the lock.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        async with self._session_factory() as session:
            now = format_datetime(now_utc())
            await session.execute(
                delete(RepoLockRow).where(
                    RepoLockRow.lock_key == key, RepoLockRow.expires_at <= now
                )
            )
            session.add(
                RepoLockRow(lock_key=key, owner_token=token, expires_at=utc_after(ttl_seconds))
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def extend(self, key: str, token: str, ttl_seconds: float) -> bool:
        """Push the expiry forward while ``token`` still owns the row."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(RepoLockRow)
                .where(RepoLockRow.lock_key == key, RepoLockRow.owner_token == token)
                .values(expires_at=utc_after(ttl_seconds))
            )
            await session.commit()
            return bool(result.rowcount)

    async def release(self, key: str, token: str) -> bool:
        """Delete the row only if ``token`` still owns it."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(RepoLockRow).where(
                    RepoLockRow.lock_key == key, RepoLockRow.owner_token == token
                )
            )
            await session.commit()
            return bool(result.rowcount)


class RepoLock:
    """Serializes clone, pull and delete on one working tree across all jobs."""

    def __init__(
        self,
        backend: LockBackend,
        *,
        ttl_seconds: float = 120.0,
        retry_count: int = 30,
        retry_delay_seconds: float = 2.0,
        retry_jitter_seconds: float = 0.4,
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.retry_count = retry_count
        self.retry_delay_seconds = retry_delay_seconds
        self.retry_jitter_seconds = retry_jitter_seconds

    @classmethod
    def from_settings(cls, backend: LockBackend, settings: Settings) -> RepoLock:
        return cls(
            backend,
            ttl_seconds=settings.repo_lock_ttl_seconds,
            retry_count=settings.repo_lock_retry_count,
            retry_delay_seconds=settings.repo_lock_retry_delay_seconds,
            retry_jitter_seconds=settings.repo_lock_retry_jitter_seconds,
        )

    async def acquire(self, repo_key: str, job_id: str | None = None) -> str:
        """Acquire the lock and return the owner token. Raises LockTimeoutError."""
        key = f"{LOCK_KEY_PREFIX}{repo_key}"
        token = f"{job_id or 'anon'}:{uuid.uuid4().hex}"
        for attempt in range(self.retry_count + 1):
            if await self.backend.try_acquire(key, token, self.ttl_seconds):
                logger.debug("Acquired %s (job %s, attempt %d)", key, job_id, attempt + 1)
                return token
            if attempt < self.retry_count:
                delay = self.retry_delay_seconds + random.uniform(0, self.retry_jitter_seconds)
                await asyncio.sleep(delay)
        logger.warning("Gave up acquiring %s after %d attempts", key, self.retry_count + 1)
        raise LockTimeoutError(repo_key)

    async def release(self, repo_key: str, token: str) -> None:
        key = f"{LOCK_KEY_PREFIX}{repo_key}"
        if not await self.backend.release(key, token):
            logger.warning("Lock %s expired before release", key)

    async def _keep_alive(self, repo_key: str, token: str) -> None:
        """Renew the expiry every third of the TTL until cancelled."""
        key = f"{LOCK_KEY_PREFIX}{repo_key}"
        while True:
            await asyncio.sleep(self.ttl_seconds / 3)
            try:
                renewed = await self.backend.extend(key, token, self.ttl_seconds)
            except Exception:
                logger.exception("Failed to renew %s", key)
                continue
            if not renewed:
                logger.error("Lost %s while holding it", key)
                return

    @asynccontextmanager
    async def hold(self, repo_key: str, job_id: str | None = None) -> AsyncIterator[None]:
        """Hold the lock for the duration of the ``async with`` block.

        The expiry is renewed in the background, so a holder that outlives
        the TTL keeps the lock; the TTL only bounds a crashed holder.
        """
        token = await self.acquire(repo_key, job_id)
        renewal = asyncio.create_task(
            self._keep_alive(repo_key, token), name=f"renew-{repo_key}"
        )
        try:
            yield
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)
            await self.release(repo_key, token)

    async def with_lock(
        self,
        repo_key: str,
        fn: Callable[[], Awaitable[T]],
        *,
        job_id: str | None = None,
    ) -> T:
        """Await ``fn()`` while holding the lock for ``repo_key``."""
        async with self.hold(repo_key, job_id):
            return await fn()
