"""
Database engine and session factory for the league night store.

PostgreSQL (asyncpg) in deployment. A sqlite+aiosqlite URL is accepted for
local runs; its engine skips the connection pool sizing asyncpg needs.
"""

import os
from typing import AsyncGenerator, Dict
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.orm import DeclarativeBase
from dotenv import load_dotenv

load_dotenv()


def build_database_url() -> str:
    """DATABASE_URL if set, otherwise assembled from the POSTGRES_* variables."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    user = os.getenv("POSTGRES_USER", "leaguenight")
    password = os.getenv("POSTGRES_PASSWORD", "leaguenight")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    name = os.getenv("POSTGRES_DB", "leaguenight")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


def engine_options(url: str) -> Dict:
    """Engine keyword arguments for the given backend."""
    options = {"echo": os.getenv("SQL_ECHO", "false").lower() == "true"}
    if url.startswith("sqlite"):
        return options
    options.update(
        pool_pre_ping=True,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
    )
    return options


DATABASE_URL = build_database_url()

engine: AsyncEngine = create_async_engine(DATABASE_URL, **engine_options(DATABASE_URL))

# Services commit their own transitions, so objects stay readable after commit
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Declarative base for league night tables."""


# Registers every table on Base.metadata
from league_night.database import models  # noqa: F401, E402


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Writes the services left pending are committed when the route returns;
    any error rolls the session back.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_database() -> None:
    """Create missing tables. Migrations remain the source of truth in production."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
