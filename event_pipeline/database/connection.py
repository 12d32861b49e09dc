"""
Database Connection Management

Async engine and session factory with SQLAlchemy 2.0. Each pipeline
service graph builds its own engine from settings and hands the session
factory to the components that need the durable store.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from event_pipeline.config.settings import DatabaseSettings
from .models import Base

logger = structlog.get_logger(__name__)


def create_engine(config: DatabaseSettings) -> AsyncEngine:
    """
    Create an async engine for the durable store.

    asyncpg pools connections itself, so the SQLAlchemy side uses NullPool.
    """
    return create_async_engine(
        config.async_url,
        echo=config.echo,
        future=True,
        pool_pre_ping=True,
        poolclass=NullPool,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(config: DatabaseSettings, create_tables: bool = False) -> AsyncEngine:
    """
    Create the engine and verify the database responds.

    Args:
        config: Database settings section
        create_tables: Create missing tables after connecting

    Returns:
        AsyncEngine: The initialized database engine
    """
    engine = create_engine(config)
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Database connection established",
            host=config.host,
            database=config.db,
        )
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        await engine.dispose()
        raise

    if create_tables:
        await create_schema(engine)
    return engine


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session scope.

    Commits on success, rolls back and re-raises on any error.

    Example:
        async with session_scope(factory) as db:
            result = await db.execute(query)
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except BaseException as e:
        logger.debug("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


async def check_database_health(engine: AsyncEngine) -> dict:
    """
    Check database health status.

    Returns:
        dict: Health status with latency information
    """
    try:
        start = time.perf_counter()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000
        return {"status": "healthy", "latency_ms": round(latency_ms, 2)}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
