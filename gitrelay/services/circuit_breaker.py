"""Per-repository circuit breaker over consecutive git sync failures."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import or_, update

from gitrelay.models import Repository
from gitrelay.services.datetime_service import format_datetime, now_utc, utc_after

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitFailure:
    """Counter state after recording one failure."""

    consecutive_failures: int
    opened: bool
    open_until: str | None = None


async def record_failure(
    session: AsyncSession,
    repository_id: str,
    *,
    threshold: int,
    cooldown_seconds: float,
) -> CircuitFailure:
    """Atomically increment the failure counter; open the circuit at the threshold.

    Every failure at or beyond the threshold re-opens the circuit with a
    fresh cooldown.
    """
    result = await session.execute(
        update(Repository)
        .where(Repository.repository_id == repository_id)
        .values(consecutive_failures=Repository.consecutive_failures + 1)
        .returning(Repository.consecutive_failures)
    )
    failures = result.scalar_one_or_none()
    if failures is None:
        await session.commit()
        logger.warning("Circuit failure recorded for unknown repository %s", repository_id)
        return CircuitFailure(consecutive_failures=0, opened=False)

    open_until: str | None = None
    if failures >= threshold:
        open_until = utc_after(cooldown_seconds)
        await session.execute(
            update(Repository)
            .where(Repository.repository_id == repository_id)
            .values(circuit_open_until=open_until, updated_at=format_datetime(now_utc()))
        )
        logger.warning(
            "Circuit opened for repository %s after %d consecutive failures (until %s)",
            repository_id,
            failures,
            open_until,
        )
    await session.commit()
    return CircuitFailure(
        consecutive_failures=failures, opened=open_until is not None, open_until=open_until
    )


async def record_success(session: AsyncSession, repository_id: str) -> None:
    """Zero the counter and close the circuit, regardless of remaining cooldown."""
    await session.execute(
        update(Repository)
        .where(Repository.repository_id == repository_id)
        .values(consecutive_failures=0, circuit_open_until=None)
    )
    await session.commit()


def circuit_closed_clause(now: str | None = None) -> ColumnElement[bool]:
    """SQL filter selecting repositories whose circuit is closed at ``now``."""
    current = now or format_datetime(now_utc())
    return or_(
        Repository.circuit_open_until.is_(None),
        Repository.circuit_open_until <= current,
    )


def is_circuit_open(repository: Repository, now: str | None = None) -> bool:
    current = now or format_datetime(now_utc())
    return repository.circuit_open_until is not None and repository.circuit_open_until > current
