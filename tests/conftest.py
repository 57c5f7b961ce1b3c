"""Shared pytest fixtures for API, database, and recorder integration tests."""

import os
import tempfile

# Configure before any redirector module reads its settings.
_DB_DIR = tempfile.mkdtemp(prefix="redirector-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'redirector.db')}"
)
os.environ["REDIS_URL"] = ""
os.environ["KAFKA_BOOTSTRAP_SERVERS"] = ""
os.environ["APP_ENV"] = "test"
os.environ["RESOLVE_TIMEOUT_SECONDS"] = "5"
os.environ["RECORDER_RETRY_DELAY_SECONDS"] = "0"
os.environ["RECORDER_SHUTDOWN_GRACE_SECONDS"] = "10"
os.environ["ROLLUP_SETTLE_SECONDS"] = "0"

import datetime
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redirector.config import get_settings
from redirector.database import Base, build_engine, get_db
from redirector.dependencies import ServiceManager, _service_manager, get_service_manager
from redirector.link_store import LinkStore
from redirector.main import app
from redirector.models import ClickEvent, Link

settings = get_settings()

test_engine = build_engine(settings.DATABASE_URL)

test_session = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def manager(session_factory) -> AsyncGenerator[ServiceManager, None]:
    await _service_manager.initialize(session_factory=session_factory)
    yield _service_manager
    await _service_manager.cleanup()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, manager: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_service_manager() -> ServiceManager:
        return manager

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_manager] = override_get_service_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def make_link(session_factory):
    """Insert a link straight through the store, bypassing request validation."""

    async def _make_link(
        code: str,
        destination: str = "https://example.com/landing",
        owner_id: str = "owner-1",
        active: bool = True,
        expires_at: datetime.datetime | None = None,
        tags: list[str] | None = None,
    ) -> Link:
        async with session_factory() as session:
            return await LinkStore(session).create(
                code=code,
                destination=destination,
                owner_id=owner_id,
                active=active,
                expires_at=expires_at,
                tags=tags,
            )

    return _make_link


@pytest_asyncio.fixture(scope="function")
async def fetch_link(session_factory):
    """Read a link back through a fresh session."""

    async def _fetch_link(code: str) -> Link:
        async with session_factory() as session:
            return await LinkStore(session).get(code)

    return _fetch_link


@pytest_asyncio.fixture(scope="function")
async def click_events(session_factory):
    """Return the stored click events, optionally for one code."""

    async def _click_events(code: str | None = None) -> list[ClickEvent]:
        stmt = select(ClickEvent).order_by(ClickEvent.id)
        if code is not None:
            stmt = stmt.where(ClickEvent.link_code == code)
        async with session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    return _click_events
