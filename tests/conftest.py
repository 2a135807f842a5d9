"""Shared test fixtures for gitrelay."""

from __future__ import annotations

import json
import subprocess
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gitrelay.config import Settings
from gitrelay.database import create_engine, create_schema
from gitrelay.main import create_app
from gitrelay.models import App, AppRepository, Repository
from gitrelay.runtime import RelayRuntime
from gitrelay.services import link_service

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

TEST_ENCRYPTION_KEY = "test-encryption-key-with-at-least-32-characters"
TEST_CLIENT_SECRET = "client-shared-secret"
TEST_BASE_URL = "http://client.test/hooks"


class UpstreamRepo:
    """A local git repository standing in for the remote being tracked."""

    def __init__(self, path: Path) -> None:
        self.path = path
        path.mkdir(parents=True)
        self._git("init", "--initial-branch", "main")
        self._git("config", "user.email", "tests@gitrelay.local")
        self._git("config", "user.name", "gitrelay tests")
        self._git("config", "commit.gpgsign", "false")

    @property
    def url(self) -> str:
        return self.path.as_uri()

    def _git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args], cwd=self.path, check=True, capture_output=True, text=True
        )
        return result.stdout.strip()

    def write(self, rel_path: str, content: str | bytes) -> None:
        target = self.path / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")

    def remove(self, rel_path: str) -> None:
        self._git("rm", "-q", rel_path)

    def commit(self, message: str = "update") -> str:
        self._git("add", "-A")
        self._git("commit", "-q", "--allow-empty", "-m", message)
        return self._git("rev-parse", "HEAD")


@dataclass
class RecordingReceiver:
    """``httpx.MockTransport`` handler that records every webhook call.

    ``fail_with`` maps an endpoint name (``create``, ``update`` ...) to the
    status code it should answer with.
    """

    fail_with: dict[str, int] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        endpoint = request.url.path.rsplit("/", 1)[-1]
        status = self.fail_with.get(endpoint, 200)
        return httpx.Response(status, json={"ok": status < 400})

    @property
    def endpoints(self) -> list[str]:
        return [r.url.path.rsplit("/", 1)[-1] for r in self.requests]

    def bodies(self, endpoint: str | None = None) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if endpoint is None or r.url.path.endswith(f"/{endpoint}")
        ]

    def clear(self) -> None:
        self.requests.clear()


@dataclass
class SeededLink:
    app: App
    repository: Repository
    link: AppRepository


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths and fast retries."""
    db_path = tmp_path / "test.db"
    return Settings(
        encryption_key=TEST_ENCRYPTION_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        repos_base_path=tmp_path / "repos",
        run_engine_in_app=False,
        max_retry_attempts=3,
        retry_base_delay_seconds=0,
        circuit_breaker_threshold=3,
        circuit_breaker_cooldown_seconds=600,
        repo_lock_ttl_seconds=30,
        repo_lock_retry_count=3,
        repo_lock_retry_delay_seconds=0.01,
        repo_lock_retry_jitter_seconds=0,
        git_timeout_seconds=60,
    )


@pytest.fixture
def upstream_repo(tmp_path: Path) -> UpstreamRepo:
    """An upstream repository at ``.../acme/widgets`` with one initial commit."""
    repo = UpstreamRepo(tmp_path / "upstream" / "acme" / "widgets")
    repo.write("README.md", "# widgets\n")
    repo.commit("initial")
    return repo


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine, _ = create_engine(test_settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def receiver() -> RecordingReceiver:
    return RecordingReceiver()


@pytest.fixture
async def http_client(receiver: RecordingReceiver) -> AsyncGenerator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver)) as client:
        yield client


@pytest.fixture
async def runtime(
    test_settings: Settings, http_client: httpx.AsyncClient, db_engine: AsyncEngine
) -> AsyncGenerator[RelayRuntime]:
    """A fully wired runtime whose webhooks go to the recording receiver.

    Background work is not started; tests drive ``pool.run_once()`` and
    ``scheduler.sweep()`` directly.
    """
    relay = RelayRuntime(test_settings, http_client=http_client)
    await relay.open()
    yield relay
    await relay.stop()


@pytest.fixture
def seed_link(
    db_session: AsyncSession,
) -> Callable[..., Awaitable[SeededLink]]:
    """Factory registering an app, a repository and the link between them."""

    async def _seed(
        github_url: str,
        *,
        app_name: str = "demo",
        base_url: str = TEST_BASE_URL,
        secret: str = TEST_CLIENT_SECRET,
        token: str | None = None,
    ) -> SeededLink:
        app = await link_service.create_app(
            db_session, app_name, base_url, secret, TEST_ENCRYPTION_KEY
        )
        repository = await link_service.find_or_create_repository(db_session, github_url)
        link = await link_service.link_app_to_repository(
            db_session,
            app.app_id,
            repository.repository_id,
            github_token=token,
            encryption_key=TEST_ENCRYPTION_KEY,
        )
        return SeededLink(app=app, repository=repository, link=link)

    return _seed


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[httpx.AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Opens the runtime by hand because ASGITransport does not trigger the
    application lifespan. Background work is not started.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    runtime = RelayRuntime(settings)
    await runtime.open()
    app.state.runtime = runtime
    try:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            yield client
    finally:
        await runtime.stop()
