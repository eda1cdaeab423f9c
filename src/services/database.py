"""asyncpg connection pool for the Oura store.

The pool is created once at app startup and handed to the repository;
engine components never reach for it directly.
"""

from __future__ import annotations

import logging
from pathlib import Path

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("oura_sync.db")

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=1,
        max_size=10,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=1, max=10)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


async def apply_schema(pool: asyncpg.Pool) -> None:
    """Create missing tables and indexes. Every statement is idempotent."""
    ddl = _SCHEMA_PATH.read_text(encoding="utf-8")
    async with pool.acquire() as conn:
        await conn.execute(ddl)
    logger.info("Schema applied from %s", _SCHEMA_PATH.name)
