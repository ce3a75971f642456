"""
Pytest fixtures for SurveyGuard backend tests.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from typing import Any, Optional

import pytest
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app
os.environ.setdefault("CHALLENGE_SECRET_KEY", "test-challenge-secret-for-testing")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")

from models.screening import RequestContext, SignalKind, SignalResult  # noqa: E402
from models.survey_link import ProjectPolicy, SurveyLink  # noqa: E402
from repositories.link_repository import InMemoryLinkRepository  # noqa: E402
from services.result_cache import InMemoryResultCache  # noqa: E402
from services.signal_provider import BaseSignalProvider  # noqa: E402


class FakeClock:
    """Manually advanced clock for TTL and timing tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubProvider(BaseSignalProvider):
    """Signal provider returning a canned result, optionally slow or failing."""

    def __init__(
        self,
        kind: SignalKind,
        result: Optional[SignalResult] = None,
        delay: float = 0,
        error: Optional[Exception] = None,
    ):
        self.kind = kind
        self.result = result or SignalResult(kind=kind)
        self.delay = delay
        self.error = error
        self.calls = 0

    async def evaluate(self, context: RequestContext) -> SignalResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests."""
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_provider() -> type[StubProvider]:
    """Factory for canned signal providers."""
    return StubProvider


@pytest.fixture
def cache(clock: FakeClock) -> InMemoryResultCache:
    """Result cache on the fake clock."""
    return InMemoryResultCache(
        ttls={
            SignalKind.VPN: 3600,
            SignalKind.GEO: 4 * 3600,
            SignalKind.DOMAIN: 3600,
            "honeypot_session": 1800,
            "challenge_token": 600,
            "device_links": 24 * 3600,
        },
        max_entries=1000,
        clock=clock,
    )


@pytest.fixture
def request_context() -> RequestContext:
    return RequestContext(
        ip_address="8.8.8.8",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
        link_uid="uid-123",
    )


@pytest.fixture
def sample_link() -> SurveyLink:
    return SurveyLink(id="link-1", uid="uid-123", project_id="project-1")


@pytest.fixture
def sample_policy() -> ProjectPolicy:
    return ProjectPolicy(project_id="project-1", allowed_countries=["US", "CA"])


@pytest.fixture
async def link_repository(sample_link: SurveyLink, sample_policy: ProjectPolicy) -> InMemoryLinkRepository:
    repository = InMemoryLinkRepository()
    await repository.add_link(sample_link)
    await repository.set_project_policy(sample_policy)
    return repository


@pytest.fixture
async def app(link_repository: InMemoryLinkRepository) -> AsyncGenerator[Any, None]:
    """FastAPI application with its startup handler run against an in-memory repository."""
    from core.events import create_start_app_handler, create_stop_app_handler
    from main import app as fastapi_app

    fastapi_app.state.link_repository = link_repository
    await create_start_app_handler(fastapi_app)()
    yield fastapi_app
    await create_stop_app_handler(fastapi_app)()
    fastapi_app.state.link_repository = None


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Origin": "http://localhost:3000"},
    ) as ac:
        yield ac
