import os
from collections.abc import AsyncGenerator
from unittest.mock import Mock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from factories import TEST_SECRET, make_settings
from labelops.config.settings import Settings, get_settings
from labelops.infra.database import Database, get_database
from labelops.main import create_app
from labelops.v1.infra.jobs.continuation import WorkerTrigger, get_worker_trigger

# Import models to ensure they're registered
from labelops.v1.infra.jobs import models as job_models  # noqa: F401
from labelops.v1.records import models as record_models  # noqa: F401


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
async def database(tmp_path, test_settings) -> AsyncGenerator[Database, None]:
    """A job store with all tables created; a fresh SQLite file per test."""
    database_url = os.getenv("DATABASE_URL")

    if database_url and "postgresql" in database_url:
        db = Database(test_settings, database_url)
    else:
        db = Database(test_settings, f"sqlite+aiosqlite:///{tmp_path}/labelops.db")

    await db.create_all()
    yield db

    if db.engine.dialect.name == "postgresql":
        async with db.engine.begin() as conn:
            await conn.execute(text("DELETE FROM record_evaluations"))
            await conn.execute(text("DELETE FROM data_records"))
            await conn.execute(text("DELETE FROM jobs"))
    await db.close()


@pytest.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with database.session() as session:
        yield session


@pytest.fixture
def trigger(test_settings) -> WorkerTrigger:
    return WorkerTrigger(test_settings)


@pytest.fixture
def app(test_settings, database, trigger):
    """Create a test FastAPI application bound to the test store."""
    app = create_app()

    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_worker_trigger] = lambda: trigger

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def trigger_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_SECRET}"}


@pytest.fixture
def mock_client():
    """Mock CLI API client usable as a context manager."""
    client = Mock()
    client.__enter__ = Mock(return_value=client)
    client.__exit__ = Mock(return_value=None)
    return client


