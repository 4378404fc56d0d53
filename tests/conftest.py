"""Pytest configuration and fixtures."""

import os
from collections.abc import AsyncGenerator, Callable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment before any app code runs
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["OPENAI_API_KEY"] = ""
os.environ["SENTRY_DSN"] = ""

from api.config import get_settings  # noqa: E402

get_settings.cache_clear()  # Use test env/DB, not stale or .env values

from api.database import Base, create_session_maker  # noqa: E402
from api.models import Client, Competitor  # noqa: E402
from worker.effectiveness.orchestrator import OrchestratorConfig, RunOrchestrator  # noqa: E402
from worker.effectiveness.progress import ProgressRegistry  # noqa: E402
from worker.effectiveness.resilience import (  # noqa: E402
    CircuitBreaker,
    ResilientApiClient,
    RetryPolicy,
)
from worker.effectiveness.scorers import build_default_registry  # noqa: E402
from worker.effectiveness.tiers import TieredScorer  # noqa: E402

from tests.fixtures import (  # noqa: E402
    FakeJudge,
    FakePerformanceApi,
    SleepRecorder,
    make_collector,
)


@pytest.fixture
async def db_engine(tmp_path) -> AsyncGenerator:
    """File-backed SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'effectiveness.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_maker(db_engine)


@pytest.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
async def client_with_competitors(session_maker) -> Client:
    """A client with two competitors."""
    async with session_maker() as db:
        client = Client(name="Acme Analytics", website_url="https://acme.example")
        client.competitors = [
            Competitor(domain="globex.example", name="Globex"),
            Competitor(domain="https://initech.example"),
        ]
        db.add(client)
        await db.commit()
    return client


@pytest.fixture
async def lone_client(session_maker) -> Client:
    """A client without competitors."""
    async with session_maker() as db:
        client = Client(name="Solo Studio", website_url="https://solo.example")
        client.competitors = []
        db.add(client)
        await db.commit()
    return client


@pytest.fixture
def registry() -> ProgressRegistry:
    return ProgressRegistry(heartbeat_interval=3600)


@pytest.fixture
def make_orchestrator(session_maker, registry) -> Callable[..., RunOrchestrator]:
    """Factory for orchestrators wired to fakes and the test database."""

    def factory(
        collector=None,
        judge=None,
        performance_api=None,
        insights=None,
        config: OrchestratorConfig | None = None,
        ai_enabled: bool = True,
    ) -> RunOrchestrator:
        scorers = build_default_registry(
            (judge or FakeJudge()) if ai_enabled else None,
            performance_api or FakePerformanceApi(),
            ResilientApiClient("pagespeed", CircuitBreaker(), sleep=SleepRecorder()),
            RetryPolicy(max_attempts=2),
        )
        return RunOrchestrator(
            session_maker=session_maker,
            collector=collector or make_collector(),
            scorer=TieredScorer(scorers),
            registry=registry,
            insights=insights,
            config=config or OrchestratorConfig(),
        )

    return factory


@pytest.fixture
def test_engine(session_maker, registry, make_orchestrator):
    """Effectiveness engine assembled from fakes."""
    from worker.effectiveness.browser import PlaywrightBrowser
    from worker.effectiveness.engine import EffectivenessEngine
    from worker.effectiveness.reaper import StaleRunReaper

    return EffectivenessEngine(
        orchestrator=make_orchestrator(),
        reaper=StaleRunReaper(session_maker, registry),
        registry=registry,
        breaker=CircuitBreaker(),
        browser=PlaywrightBrowser(),
    )


@pytest.fixture
async def client(session_maker, test_engine) -> AsyncGenerator[AsyncClient, None]:
    """Async test client against the app, wired to the test database and engine."""
    from api.database import get_db
    from api.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.engine = test_engine

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await test_engine.orchestrator.wait_idle(timeout=10)
    app.dependency_overrides.clear()
    app.state.engine = None
