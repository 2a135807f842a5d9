"""Tests for the sync_failed broadcast."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from gitrelay.schemas.notification import RepositoryInfo
from gitrelay.services.circuit_breaker import CircuitFailure
from gitrelay.services.datetime_service import utc_after
from gitrelay.services.failure_notifier import broadcast_sync_failure
from gitrelay.services.notifier import Notifier

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from tests.conftest import RecordingReceiver, SeededLink

URL = "https://github.com/acme/widgets"


def _info(seeded: SeededLink) -> RepositoryInfo:
    repo = seeded.repository
    return RepositoryInfo(
        repository_id=repo.repository_id,
        github_url=repo.github_url,
        owner=repo.owner,
        name=repo.name,
    )


class TestBroadcast:
    async def test_every_watcher_is_notified(
        self,
        seed_link: Callable[..., Awaitable[SeededLink]],
        db_session: AsyncSession,
        http_client: httpx.AsyncClient,
        receiver: RecordingReceiver,
        test_settings,
    ) -> None:
        first = await seed_link(URL, app_name="one", base_url="http://one.test")
        await seed_link(URL, app_name="two", base_url="http://two.test")
        await seed_link("https://github.com/acme/other", app_name="three")
        failure = CircuitFailure(consecutive_failures=5, opened=True, open_until=utc_after(1800))

        delivered = await broadcast_sync_failure(
            db_session,
            Notifier(http_client),
            _info(first),
            "git clone failed",
            failure,
            threshold=5,
            encryption_key=test_settings.encryption_key,
        )
        assert delivered == 2
        assert sorted(r.url.host for r in receiver.requests) == ["one.test", "two.test"]
        body = receiver.bodies("sync_failed")[0]
        assert body["event"] == "sync_failed"
        assert body["repository"]["name"] == "widgets"
        assert body["error"] == {"type": "git_failure", "message": "git clone failed"}
        assert body["circuit_breaker"]["status"] == "open"
        assert body["circuit_breaker"]["consecutive_failures"] == 5
        assert body["circuit_breaker"]["threshold"] == 5
        assert body["circuit_breaker"]["cooldown_until"].startswith("20")
        assert body["retry_count"] == 0

    async def test_errors_are_not_propagated(
        self,
        seed_link: Callable[..., Awaitable[SeededLink]],
        db_session: AsyncSession,
        test_settings,
    ) -> None:
        seeded = await seed_link(URL)

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            delivered = await broadcast_sync_failure(
                db_session,
                Notifier(client),
                _info(seeded),
                "boom",
                CircuitFailure(consecutive_failures=1, opened=True, open_until=utc_after(60)),
                threshold=1,
                encryption_key=test_settings.encryption_key,
            )
        assert delivered == 0

    async def test_undecryptable_secret_is_skipped(
        self,
        seed_link: Callable[..., Awaitable[SeededLink]],
        db_session: AsyncSession,
        http_client: httpx.AsyncClient,
        receiver: RecordingReceiver,
    ) -> None:
        seeded = await seed_link(URL)
        delivered = await broadcast_sync_failure(
            db_session,
            Notifier(http_client),
            _info(seeded),
            "boom",
            CircuitFailure(consecutive_failures=1, opened=True, open_until=utc_after(60)),
            threshold=1,
            encryption_key="a-different-key-that-cannot-decrypt-anything",
        )
        assert delivered == 0
        assert receiver.requests == []
