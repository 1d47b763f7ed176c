from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker

from mailbill.core.config import settings


def _to_async_url(url: str) -> str:
    """Convert a sync SQLAlchemy URL to an async one for Postgres/SQLite.

    - postgresql[+psycopg2]:// -> postgresql+asyncpg://
    - sqlite:/// -> sqlite+aiosqlite:///
    - otherwise: returned unchanged (caller must ensure compatibility)
    """
    if not url:
        return url
    if url.startswith("postgresql+psycopg2://"):
        url = "postgresql+asyncpg://" + url[len("postgresql+psycopg2://"):]
    elif url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    elif url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    # asyncpg takes `ssl`, not libpq's `sslmode`
    return url.replace("sslmode=require", "ssl=require")


def _connect_args(url: str) -> dict:
    if url.startswith("postgresql+asyncpg://"):
        # PgBouncer (transaction/statement mode) breaks server-side prepared statements.
        return {"statement_cache_size": 0}
    return {}


ASYNC_DATABASE_URL: str = _to_async_url(settings.database_url)

async_engine: AsyncEngine = create_async_engine(
    ASYNC_DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args(ASYNC_DATABASE_URL),
)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession for read-only views."""
    async with AsyncSessionLocal() as session:
        yield session
