"""
Async database connection using asyncpg (NO ORM).

Every collation write runs inside a single transaction on one pooled
connection, so a sheet, its entries and the workflow event for a
transition are committed together or not at all.
"""

from typing import Any, AsyncGenerator
from uuid import UUID

import asyncpg

from collation_engine.core.config import Settings
from collation_engine.core.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_db_pool(settings: Settings):
    """
    Initialize database connection pool on startup.

    Call this in the FastAPI lifespan event.
    """
    global _pool
    _pool = await asyncpg.create_pool(
        dsn=settings.DATABASE_URL,
        min_size=settings.DB_POOL_MIN_SIZE,
        max_size=settings.DB_POOL_MAX_SIZE,
        max_queries=50000,  # Maximum queries per connection before recycling
        max_inactive_connection_lifetime=300,  # Close idle connections after 5 minutes
        timeout=30,  # Connection timeout in seconds
        command_timeout=settings.DB_COMMAND_TIMEOUT,
    )
    logger.info(
        f"Database pool initialized: {_pool.get_size()} / {_pool.get_max_size()} connections"
    )


async def close_db_pool():
    """
    Close database connection pool on shutdown.

    Call this in the FastAPI lifespan event.
    """
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool | None:
    return _pool


async def get_db() -> AsyncGenerator[asyncpg.Connection, None]:
    """
    FastAPI dependency for database connections.

    Usage in routes:
        @router.get("/sheets")
        async def list_sheets(conn: asyncpg.Connection = Depends(get_db)):
            ...
    """
    if not _pool:
        raise RuntimeError("Database pool not initialized. Call init_db_pool() first.")

    async with _pool.acquire() as connection:
        yield connection


def record_to_dict(record: asyncpg.Record | None) -> dict[str, Any] | None:
    """Convert an asyncpg Record to a dict with UUID values as strings."""
    if record is None:
        return None
    result = dict(record)
    for key, value in result.items():
        if isinstance(value, UUID):
            result[key] = str(value)
    return result


def records_to_list(records: list[asyncpg.Record]) -> list[dict[str, Any]]:
    """Convert a list of asyncpg Records to dicts."""
    return [record_to_dict(record) for record in records]
