"""Tests for the per-repository circuit breaker."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gitrelay.models import Repository
from gitrelay.services import circuit_breaker
from gitrelay.services.datetime_service import format_datetime, now_utc
from gitrelay.services.link_service import find_or_create_repository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


async def _reload(
    session_factory: async_sessionmaker[AsyncSession], repository_id: str
) -> Repository:
    async with session_factory() as session:
        repository = await session.get(Repository, repository_id)
        assert repository is not None
        return repository


class TestCircuitBreaker:
    async def test_opens_at_threshold(
        self, db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        repo = await find_or_create_repository(db_session, "https://github.com/acme/widgets")
        results = [
            await circuit_breaker.record_failure(
                db_session, repo.repository_id, threshold=3, cooldown_seconds=60
            )
            for _ in range(3)
        ]
        assert [r.consecutive_failures for r in results] == [1, 2, 3]
        assert [r.opened for r in results] == [False, False, True]
        reloaded = await _reload(session_factory, repo.repository_id)
        assert reloaded.circuit_open_until == results[-1].open_until
        assert circuit_breaker.is_circuit_open(reloaded)

    async def test_every_failure_past_threshold_reopens(self, db_session: AsyncSession) -> None:
        repo = await find_or_create_repository(db_session, "https://github.com/acme/widgets")
        for _ in range(2):
            await circuit_breaker.record_failure(
                db_session, repo.repository_id, threshold=2, cooldown_seconds=60
            )
        again = await circuit_breaker.record_failure(
            db_session, repo.repository_id, threshold=2, cooldown_seconds=60
        )
        assert again.opened
        assert again.consecutive_failures == 3

    async def test_success_clears_even_inside_cooldown(
        self, db_session: AsyncSession, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        repo = await find_or_create_repository(db_session, "https://github.com/acme/widgets")
        await circuit_breaker.record_failure(
            db_session, repo.repository_id, threshold=1, cooldown_seconds=3600
        )
        await circuit_breaker.record_success(db_session, repo.repository_id)
        reloaded = await _reload(session_factory, repo.repository_id)
        assert reloaded.consecutive_failures == 0
        assert reloaded.circuit_open_until is None
        assert not circuit_breaker.is_circuit_open(reloaded)

    async def test_expired_cooldown_counts_as_closed(self, db_session: AsyncSession) -> None:
        repo = await find_or_create_repository(db_session, "https://github.com/acme/widgets")
        repo.circuit_open_until = "2000-01-01 00:00:00.000000+0000"
        await db_session.commit()
        assert not circuit_breaker.is_circuit_open(repo, format_datetime(now_utc()))

    async def test_unknown_repository(self, db_session: AsyncSession) -> None:
        result = await circuit_breaker.record_failure(
            db_session, "missing", threshold=1, cooldown_seconds=60
        )
        assert not result.opened
