"""Tests for the per-repository lock."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from gitrelay.exceptions import LockTimeoutError
from gitrelay.models import RepoLockRow
from gitrelay.services.repo_lock import RepoLock, SqlLockBackend

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _lock(
    session_factory: async_sessionmaker[AsyncSession], *, retries: int = 200, ttl: float = 30.0
) -> RepoLock:
    return RepoLock(
        SqlLockBackend(session_factory),
        ttl_seconds=ttl,
        retry_count=retries,
        retry_delay_seconds=0.01,
        retry_jitter_seconds=0.005,
    )


class TestRepoLock:
    async def test_same_key_never_overlaps(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        lock = _lock(session_factory)
        active = 0
        max_active = 0

        async def critical() -> None:
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.02)
            active -= 1

        await asyncio.gather(
            *(lock.with_lock("acme/widgets", critical, job_id=f"j{i}") for i in range(4))
        )
        assert max_active == 1

    async def test_different_keys_run_in_parallel(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        lock = _lock(session_factory, retries=0)
        both_inside = asyncio.Event()
        inside = 0

        async def critical() -> None:
            nonlocal inside
            inside += 1
            if inside == 2:
                both_inside.set()
            await asyncio.wait_for(both_inside.wait(), timeout=5)

        await asyncio.gather(
            lock.with_lock("acme/one", critical), lock.with_lock("acme/two", critical)
        )
        assert both_inside.is_set()

    async def test_timeout_when_held(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        lock = _lock(session_factory, retries=2)
        async with lock.hold("acme/widgets", job_id="holder"):
            with pytest.raises(LockTimeoutError) as exc_info:
                await lock.acquire("acme/widgets", job_id="waiter")
        assert exc_info.value.repo_key == "acme/widgets"
        assert "acme/widgets" in str(exc_info.value)

    async def test_released_on_exception(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        lock = _lock(session_factory, retries=0)

        async def boom() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await lock.with_lock("acme/widgets", boom)
        assert await lock.with_lock("acme/widgets", _return_ok) == "ok"

    async def test_expired_lock_can_be_taken_over(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        async with session_factory() as session:
            session.add(
                RepoLockRow(
                    lock_key="repo-lock:acme/widgets",
                    owner_token="crashed",
                    expires_at="2000-01-01 00:00:00.000000+0000",
                )
            )
            await session.commit()
        lock = _lock(session_factory, retries=0)
        assert await lock.with_lock("acme/widgets", _return_ok) == "ok"

    async def test_release_requires_owner_token(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        backend = SqlLockBackend(session_factory)
        assert await backend.try_acquire("k", "owner", 30)
        assert not await backend.try_acquire("k", "other", 30)
        assert not await backend.release("k", "other")
        assert await backend.release("k", "owner")
        assert await backend.try_acquire("k", "other", 30)

    async def test_holder_outliving_ttl_keeps_lock(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        lock = _lock(session_factory, ttl=0.2)
        active = 0
        max_active = 0

        async def critical() -> None:
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.6)
            active -= 1

        await asyncio.gather(
            lock.with_lock("acme/widgets", critical, job_id="j1"),
            lock.with_lock("acme/widgets", critical, job_id="j2"),
        )
        assert max_active == 1

    async def test_extend_requires_owner_token(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        backend = SqlLockBackend(session_factory)
        assert await backend.try_acquire("k", "owner", 30)
        assert not await backend.extend("k", "other", 30)
        assert await backend.extend("k", "owner", 30)
        assert await backend.release("k", "owner")
        assert not await backend.extend("k", "owner", 30)


async def _return_ok() -> str:
    return "ok"
