"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration and the
session factory handed to the pipeline.

Short Transaction Pattern:
    Pipeline stages never hold a session across a provider call. Each status
    write opens its own ``async with session_factory() as db, db.begin():``
    block and closes it before any network I/O.

Usage:
    from framebrew.database import create_engine_and_factory

    engine, session_factory = create_engine_and_factory(get_database_url())
    async with session_factory() as db, db.begin():
        job = await db.get(GenerationJob, job_id)
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_engine_and_factory(
    database_url: str,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the process-wide engine and session factory.

    PostgreSQL gets a bounded pool with pre-ping; SQLite (local development)
    uses the driver defaults.

    Args:
        database_url: SQLAlchemy async URL.

    Returns:
        Tuple of (engine, session_factory).
    """
    echo = os.getenv("DATABASE_ECHO", "").lower() == "true"
    if database_url.startswith("postgresql"):
        engine = create_async_engine(
            database_url,
            pool_size=10,
            max_overflow=5,
            pool_pre_ping=True,
            echo=echo,
        )
    else:
        engine = create_async_engine(database_url, echo=echo)

    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # CRITICAL: rows are read after the transaction closes
    )
    return engine, session_factory


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, async_session_factory) for testing.
    """
    from sqlalchemy.pool import StaticPool

    test_engine = create_async_engine(
        database_url,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
