"""
Database configuration and session management.
Campaign metrics, keywords and recommendations live in PostgreSQL, reached
through asyncpg with the SQLAlchemy 2 async engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ppc_optimizer.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,
    connect_args={"timeout": 30},  # Fail fast if DB unreachable
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """A session whose work is committed on success and rolled back on any error."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create the metrics, keyword and recommendation tables that are missing."""
    import ppc_optimizer.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await _add_missing_columns(conn)
    logger.info(f"Database ready with tables: {', '.join(sorted(Base.metadata.tables))}")


async def check_db_connection() -> bool:
    """Test database connectivity."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


async def _add_missing_columns(conn):
    """Add columns introduced after a table was first created. Safe to run repeatedly."""
    column_additions = [
        ("recommendations", "valid_until", "TIMESTAMP"),
        ("recommendations", "implemented_at", "TIMESTAMP"),
        ("recommendations", "implemented_by", "VARCHAR(255)"),
        ("recommendations", "rollback_snapshot", "JSON"),
        ("recommendations", "apply_attempts", "INTEGER DEFAULT 0"),
        ("recommendations", "last_error", "TEXT"),
        ("recommendations", "last_error_code", "VARCHAR(50)"),
    ]
    for table, column, col_type in column_additions:
        await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {col_type}"))
