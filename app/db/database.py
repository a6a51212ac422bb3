"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings


def _engine_kwargs() -> dict:
    # SQLite (בדיקות / פיתוח מקומי) לא מקבל פרמטרים של pool
    if settings.DATABASE_URL.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_timeout": settings.DATABASE_POOL_TIMEOUT_SECONDS}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **_engine_kwargs()
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, all DateTime columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session():
    """
    Create a fresh database session for Celery tasks.

    A new engine per task keeps the connection pool bound to the event loop
    the task created, avoiding "attached to a different loop" errors when a
    module-level engine is reused across Celery invocations.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        **_engine_kwargs()
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with task_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()

    await task_engine.dispose()
