"""Best-effort ``sync_failed`` broadcast when a repository's circuit opens."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from gitrelay.schemas.notification import (
    CircuitBreakerInfo,
    RepositoryInfo,
    SyncErrorInfo,
    SyncFailedPayload,
)
from gitrelay.services.crypto_service import decrypt_value
from gitrelay.services.datetime_service import format_iso, now_utc, parse_timestamp
from gitrelay.services.link_service import find_apps_watching
from gitrelay.services.notifier import WebhookTarget

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from gitrelay.models import App, AppRepository
    from gitrelay.services.circuit_breaker import CircuitFailure
    from gitrelay.services.notifier import Notifier

logger = logging.getLogger(__name__)

SYNC_FAILED_ENDPOINT = "sync_failed"


def build_sync_failed_payload(
    repository: RepositoryInfo,
    error_message: str,
    failure: CircuitFailure,
    *,
    threshold: int,
    retry_count: int,
) -> SyncFailedPayload:
    deadline = parse_timestamp(failure.open_until) if failure.open_until else now_utc()
    cooldown_until = format_iso(deadline)
    return SyncFailedPayload(
        repository=repository,
        error=SyncErrorInfo(message=error_message),
        circuit_breaker=CircuitBreakerInfo(
            consecutive_failures=failure.consecutive_failures,
            threshold=threshold,
            cooldown_until=cooldown_until,
        ),
        retry_count=retry_count,
        timestamp=format_iso(now_utc()),
    )


async def broadcast_sync_failure(
    session: AsyncSession,
    notifier: Notifier,
    repository: RepositoryInfo,
    error_message: str,
    failure: CircuitFailure,
    *,
    threshold: int,
    encryption_key: str,
    timeout_seconds: float = 10.0,
) -> int:
    """Notify every app watching the repository. Returns how many calls succeeded.

    Errors are logged and never propagated.
    """
    try:
        watchers = await find_apps_watching(session, repository.repository_id)
    except Exception:
        logger.exception(
            "Could not load apps watching %s/%s for failure broadcast",
            repository.owner,
            repository.name,
        )
        return 0

    async def _send(app: App, link: AppRepository) -> bool:
        try:
            target = WebhookTarget(
                app_id=app.app_id,
                base_url=app.base_url,
                secret=decrypt_value(app.client_auth_key_encrypted, encryption_key),
            )
            payload = build_sync_failed_payload(
                repository,
                error_message,
                failure,
                threshold=threshold,
                retry_count=link.retry_count,
            )
            result = await notifier.post(
                target, SYNC_FAILED_ENDPOINT, payload, timeout=timeout_seconds
            )
        except Exception:
            logger.exception("sync_failed broadcast to app %s raised", app.app_id)
            return False
        if not result.success:
            logger.warning("sync_failed broadcast to app %s failed: %s", app.app_id, result.error)
        return result.success

    results = await asyncio.gather(*(_send(app, link) for app, link in watchers))
    delivered = sum(1 for ok in results if ok)
    logger.info(
        "Broadcast sync_failed for %s/%s to %d/%d apps",
        repository.owner,
        repository.name,
        delivered,
        len(watchers),
    )
    return delivered
