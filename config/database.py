"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
PostgreSQL (asyncpg) in production; SQLite (aiosqlite) for local runs and tests.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config.settings import settings


def _engine_options(url: str) -> dict:
    options = {"echo": settings.DEBUG}             # Log SQL in debug mode
    if url.startswith("sqlite"):
        return options
    options.update(
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_pre_ping=True,      # Detect stale connections
        pool_recycle=3600,       # Recycle connections every hour
    )
    return options


# ── Engine ────────────────────────────────────────────────────
engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,      # Don't expire after commit (async-safe)
    autocommit=False,
    autoflush=False,
)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependency ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session.
    The verification engine commits its own units of work; anything left
    pending here is committed on success and rolled back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def sibling_session(db: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    A separate session on the same engine as `db`, for writes that commit
    on their own. Rolling it back never expires objects held by `db`.
    The caller commits; anything uncommitted is discarded on exit.
    """
    async with AsyncSession(bind=db.bind, expire_on_commit=False, autoflush=False) as session:
        yield session


async def init_db() -> None:
    """Create all tables. Run during app startup."""
    import shared.models.models  # noqa: F401  (registers mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose engine. Run during app shutdown."""
    await engine.dispose()
