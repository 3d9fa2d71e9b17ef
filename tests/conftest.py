from collections.abc import AsyncGenerator
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from wayli_jobs.config.settings import Settings, get_settings
from wayli_jobs.infra.database import Database, get_database
from wayli_jobs.main import create_app
from wayli_jobs.v1.core.registries import JobRegistry

# Import models to ensure they're registered
from wayli_jobs.v1.infra.jobs import models  # noqa: F401
from wayli_jobs.v1.infra.jobs.queue import JobQueue
from wayli_jobs.v1.infra.jobs.service import JobService
from wayli_jobs.v1.infra.jobs.store import JobStore
from wayli_jobs.v1.infra.jobs.workers import WorkerRegistry


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file with fast timings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        debug=False,
        job_poll_interval_ms=10,
        job_poll_jitter_ms=0,
        job_error_backoff_s=0.01,
        job_cancellation_check_interval_ms=0,
        worker_heartbeat_interval_s=1,
        worker_liveness_window_s=30,
        worker_shutdown_grace_period_s=1,
        realtime_reconnect_base_delay_ms=0,
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Create a test database with all tables."""
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def store(database) -> JobStore:
    return JobStore(database.SessionLocal)


@pytest.fixture
def queue(store, settings) -> JobQueue:
    return JobQueue(store, settings)


@pytest.fixture
def worker_registry(database, settings) -> WorkerRegistry:
    return WorkerRegistry(database.SessionLocal, settings)


@pytest.fixture
def service(settings, store) -> JobService:
    return JobService(settings, store)


@pytest.fixture
def handlers() -> JobRegistry:
    """An empty processor registry, isolated from the global one."""
    return JobRegistry()


@pytest.fixture
def owner() -> UUID:
    return uuid4()


@pytest.fixture
def app(settings, database):
    """Create a test FastAPI application with test database."""
    app = create_app()

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: database

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
