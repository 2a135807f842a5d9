"""Apps, repositories and the per-link sync state machine."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from sqlalchemy import and_, or_, select, update

from gitrelay.models import App, AppRepository, LinkStatus, Repository
from gitrelay.schemas.job import SnapshotJobData
from gitrelay.services.circuit_breaker import circuit_closed_clause
from gitrelay.services.crypto_service import encrypt_value
from gitrelay.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkFailure:
    """Link state after a failed job."""

    retry_count: int
    status: LinkStatus


@dataclass(frozen=True)
class SyncCandidate:
    """A link selected by the scheduler."""

    job: SnapshotJobData
    status: LinkStatus


def parse_repository_url(github_url: str) -> tuple[str, str]:
    """Extract (owner, name) from the last two path segments of a repository URL."""
    path = urlsplit(github_url.strip()).path.rstrip("/")
    segments = [s for s in path.split("/") if s]
    if len(segments) < 2:
        msg = f"Cannot determine owner/name from repository URL: {github_url}"
        raise ValueError(msg)
    owner, name = segments[-2], segments[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    if not name:
        msg = f"Cannot determine owner/name from repository URL: {github_url}"
        raise ValueError(msg)
    return owner, name


def build_job_data(
    app: App, repository: Repository, link: AppRepository, *, is_rescan: bool = False
) -> SnapshotJobData:
    return SnapshotJobData(
        app_id=app.app_id,
        app_name=app.app_name,
        repository_id=repository.repository_id,
        github_url=repository.github_url,
        owner=repository.owner,
        name=repository.name,
        base_url=app.base_url,
        github_token_encrypted=link.github_token_encrypted,
        client_auth_key_encrypted=app.client_auth_key_encrypted,
        is_rescan=is_rescan,
    )


# -- registration ------------------------------------------------------------


async def create_app(
    session: AsyncSession,
    app_name: str,
    base_url: str,
    client_secret: str,
    encryption_key: str,
    *,
    app_id: str | None = None,
) -> App:
    """Register a client app; the shared secret is stored encrypted."""
    now = format_datetime(now_utc())
    app = App(
        app_id=app_id or uuid.uuid4().hex,
        app_name=app_name,
        base_url=base_url.rstrip("/"),
        client_auth_key_encrypted=encrypt_value(client_secret, encryption_key),
        created_at=now,
        updated_at=now,
    )
    session.add(app)
    await session.commit()
    logger.info("Registered app %s (%s)", app.app_name, app.app_id)
    return app


async def find_or_create_repository(
    session: AsyncSession, github_url: str, *, is_private: bool = False
) -> Repository:
    """Return the repository for ``github_url``, creating it on first use."""
    url = github_url.strip().rstrip("/")
    stmt = select(Repository).where(Repository.github_url == url)
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing is not None:
        return existing

    owner, name = parse_repository_url(url)
    now = format_datetime(now_utc())
    repository = Repository(
        repository_id=uuid.uuid4().hex,
        github_url=url,
        owner=owner,
        name=name,
        is_private=is_private,
        consecutive_failures=0,
        circuit_open_until=None,
        created_at=now,
        updated_at=now,
    )
    session.add(repository)
    await session.commit()
    logger.info("Tracking repository %s/%s", owner, name)
    return repository


async def link_app_to_repository(
    session: AsyncSession,
    app_id: str,
    repository_id: str,
    *,
    github_token: str | None = None,
    encryption_key: str,
) -> AppRepository:
    """Subscribe an app to a repository. Re-linking refreshes the stored token."""
    token_encrypted = encrypt_value(github_token, encryption_key) if github_token else None
    link = await get_link(session, app_id, repository_id)
    if link is not None:
        link.github_token_encrypted = token_encrypted
        await session.commit()
        return link

    link = AppRepository(
        app_id=app_id,
        repository_id=repository_id,
        github_token_encrypted=token_encrypted,
        status=LinkStatus.PENDING_SNAPSHOT.value,
        retry_count=0,
        created_at=format_datetime(now_utc()),
    )
    session.add(link)
    await session.commit()
    return link


# -- lookups -----------------------------------------------------------------


async def get_link(session: AsyncSession, app_id: str, repository_id: str) -> AppRepository | None:
    stmt = select(AppRepository).where(
        AppRepository.app_id == app_id, AppRepository.repository_id == repository_id
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_job_data(
    session: AsyncSession, app_id: str, repository_id: str, *, is_rescan: bool = False
) -> SnapshotJobData | None:
    """Build the job payload for one link, or None when the link does not exist."""
    stmt = (
        select(App, Repository, AppRepository)
        .join(AppRepository, AppRepository.app_id == App.app_id)
        .join(Repository, Repository.repository_id == AppRepository.repository_id)
        .where(AppRepository.app_id == app_id, AppRepository.repository_id == repository_id)
    )
    row = (await session.execute(stmt)).one_or_none()
    if row is None:
        return None
    app, repository, link = row
    return build_job_data(app, repository, link, is_rescan=is_rescan)


async def find_apps_watching(
    session: AsyncSession, repository_id: str
) -> list[tuple[App, AppRepository]]:
    """All apps subscribed to a repository, with their links."""
    stmt = (
        select(App, AppRepository)
        .join(AppRepository, AppRepository.app_id == App.app_id)
        .where(AppRepository.repository_id == repository_id)
        .order_by(App.app_id)
    )
    return [(app, link) for app, link in (await session.execute(stmt)).all()]


async def list_links(
    session: AsyncSession,
    *,
    app_id: str | None = None,
    status: LinkStatus | None = None,
) -> list[AppRepository]:
    stmt = select(AppRepository).order_by(AppRepository.id)
    if app_id is not None:
        stmt = stmt.where(AppRepository.app_id == app_id)
    if status is not None:
        stmt = stmt.where(AppRepository.status == status.value)
    return list((await session.execute(stmt)).scalars().all())


async def find_sync_candidates(
    session: AsyncSession, rescan_interval_seconds: float
) -> list[SyncCandidate]:
    """Links that need a job, among repositories whose circuit is closed.

    Pending links, failed links, and synced links that were never scanned or
    whose last scan is older than the rescan interval.
    """
    now = now_utc()
    stale_before = format_datetime(now - timedelta(seconds=rescan_interval_seconds))
    stmt = (
        select(App, Repository, AppRepository)
        .join(AppRepository, AppRepository.app_id == App.app_id)
        .join(Repository, Repository.repository_id == AppRepository.repository_id)
        .where(circuit_closed_clause(format_datetime(now)))
        .where(
            or_(
                AppRepository.status.in_(
                    (LinkStatus.PENDING_SNAPSHOT.value, LinkStatus.FAILED.value)
                ),
                and_(
                    AppRepository.status == LinkStatus.SYNCED.value,
                    or_(
                        AppRepository.last_scanned_at.is_(None),
                        AppRepository.last_scanned_at < stale_before,
                    ),
                ),
            )
        )
        .order_by(AppRepository.id)
    )
    candidates: list[SyncCandidate] = []
    for app, repository, link in (await session.execute(stmt)).all():
        status = LinkStatus(link.status)
        candidates.append(
            SyncCandidate(
                job=build_job_data(
                    app, repository, link, is_rescan=status is LinkStatus.SYNCED
                ),
                status=status,
            )
        )
    return candidates


# -- state machine -----------------------------------------------------------


async def mark_scanning(session: AsyncSession, app_id: str, repository_id: str) -> None:
    await _set_link_fields(
        session, app_id, repository_id, status=LinkStatus.SCANNING.value
    )


async def mark_synced(session: AsyncSession, app_id: str, repository_id: str) -> None:
    """Successful job: reset the retry counter and stamp the scan time."""
    await _set_link_fields(
        session,
        app_id,
        repository_id,
        status=LinkStatus.SYNCED.value,
        retry_count=0,
        last_error=None,
        last_scanned_at=format_datetime(now_utc()),
    )


async def record_job_failure(
    session: AsyncSession,
    app_id: str,
    repository_id: str,
    error: str,
    *,
    max_attempts: int,
) -> LinkFailure:
    """Atomically bump the retry counter and move the link to its next state.

    Below ``max_attempts`` the link goes back to pending_snapshot; at or
    above it the link is failed and keeps the error.
    """
    result = await session.execute(
        update(AppRepository)
        .where(AppRepository.app_id == app_id, AppRepository.repository_id == repository_id)
        .values(retry_count=AppRepository.retry_count + 1)
        .returning(AppRepository.retry_count)
    )
    retry_count = result.scalar_one_or_none()
    if retry_count is None:
        await session.commit()
        logger.warning("Job failure for missing link %s-%s", app_id, repository_id)
        return LinkFailure(retry_count=0, status=LinkStatus.FAILED)

    status = LinkStatus.FAILED if retry_count >= max_attempts else LinkStatus.PENDING_SNAPSHOT
    await session.execute(
        update(AppRepository)
        .where(AppRepository.app_id == app_id, AppRepository.repository_id == repository_id)
        .values(status=status.value, last_error=error)
    )
    await session.commit()
    return LinkFailure(retry_count=retry_count, status=status)


async def reset_link(
    session: AsyncSession,
    app_id: str,
    repository_id: str,
    *,
    only_failed: bool = False,
    reset_retry_count: bool = True,
) -> bool:
    """Move a link back to pending_snapshot.

    With ``only_failed`` the transition only applies to failed links.
    Returns False when no row was changed.
    """
    values: dict[str, object] = {
        "status": LinkStatus.PENDING_SNAPSHOT.value,
        "last_error": None,
    }
    if reset_retry_count:
        values["retry_count"] = 0
    stmt = update(AppRepository).where(
        AppRepository.app_id == app_id, AppRepository.repository_id == repository_id
    )
    if only_failed:
        stmt = stmt.where(AppRepository.status == LinkStatus.FAILED.value)
    result = await session.execute(stmt.values(**values))
    await session.commit()
    return bool(result.rowcount)


async def _set_link_fields(
    session: AsyncSession, app_id: str, repository_id: str, **values: object
) -> None:
    await session.execute(
        update(AppRepository)
        .where(AppRepository.app_id == app_id, AppRepository.repository_id == repository_id)
        .values(**values)
    )
    await session.commit()
