"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite database by default. Set
``TEST_DATABASE_URL`` to run them against PostgreSQL instead.
"""

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backlog.api.main import create_app
from backlog.config import Settings
from backlog.db import close_db, init_db
from backlog.db.connection import (
    create_schema,
    drop_schema,
    get_test_engine,
    make_session_factory,
)
from backlog.db.repository import JobRepository

import job_fixtures


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return os.getenv(
        "TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{tmp_path / 'backlog_test.db'}",
    )


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an engine with a fresh job table and the global session factory."""
    engine = get_test_engine(database_url)

    await drop_schema(engine)
    await create_schema(engine)
    async with engine.begin() as conn:
        await conn.run_sync(job_fixtures.WidgetBase.metadata.drop_all)
        await conn.run_sync(job_fixtures.WidgetBase.metadata.create_all)

    # Entity references in payloads are loaded through the global factory
    await init_db(engine=engine)

    yield engine

    await close_db()
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_calls() -> None:
    job_fixtures.CALLS.clear()


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        worker_name="host:test",
        worker_index="0",
        log_level="DEBUG",
        log_format="console",
        sleep_delay_seconds=0.2,
        sleep_increment_seconds=0.02,
    )


@pytest.fixture
def repo(db_session: AsyncSession, test_settings: Settings) -> JobRepository:
    """Create a repository instance."""
    return JobRepository(db_session, settings=test_settings, worker_id="worker-a")


@pytest_asyncio.fixture
async def app(async_engine: AsyncEngine) -> FastAPI:
    """Create a FastAPI app bound to the test database."""
    return create_app(with_lifespan=False)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
