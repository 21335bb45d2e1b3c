from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import get_settings


def normalize_database_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


@lru_cache(maxsize=4)
def get_engine(database_url: str | None = None) -> AsyncEngine:
    database_url = database_url or get_settings().database_url
    normalized_url = normalize_database_url(database_url)
    return create_async_engine(
        normalized_url,
        pool_pre_ping=True,
    )


@lru_cache(maxsize=4)
def get_session_factory(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    engine = get_engine(database_url)
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
    )
