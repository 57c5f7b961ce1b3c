"""Async engine, session factory and schema lifecycle.

PostgreSQL through asyncpg is the production backend. SQLite through
aiosqlite is accepted for local runs and the test suite.

Who opens sessions::

    HTTP request ──get_db()──▶ one session per request, closed afterwards
    ClickRecorder ───────────▶ one session per recording attempt
    rollup worker ───────────▶ one session per cycle

Key Behaviours
===============
- All three share ``async_session`` (expire_on_commit=False) but never a
  session object.
- SQLite connections are opened per checkout (NullPool) in WAL mode with a
  30 second busy timeout.
- ``init_db()`` creates missing tables on startup; there are no migrations.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from redirector.config import get_settings

__all__ = ["Base", "build_engine", "async_session", "get_db", "init_db", "close_db"]

settings = get_settings()


def _enable_sqlite_wal(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_wal)
        return engine

    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


engine = build_engine(settings.DATABASE_URL, echo=(settings.APP_ENV == "development"))

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    # Imported for its side effect of registering the tables on Base.metadata.
    import redirector.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
