import asyncpg
from loguru import logger
from medchat.config import get_settings

_pool: asyncpg.Pool | None = None

SCHEMA = """
CREATE TABLE IF NOT EXISTS api_tracking (
    id          BIGSERIAL PRIMARY KEY,
    call_type   TEXT NOT NULL,
    token_type  TEXT NOT NULL,
    token_count INTEGER NOT NULL CHECK (token_count >= 0),
    model       TEXT NOT NULL,
    message     TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS api_tracking_created_at_idx ON api_tracking (created_at);
"""


async def create_pool() -> asyncpg.Pool:
    global _pool
    settings = get_settings()
    _pool = await asyncpg.create_pool(
        dsn=settings.database_url,
        min_size=1,
        max_size=10,
    )
    logger.info("PostgreSQL connection pool created")
    return _pool


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await create_pool()
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("PostgreSQL connection pool closed")


async def ensure_schema() -> None:
    """Create the usage tracking table if missing. Chunk tables and RPCs are owned by the content store."""
    await execute(SCHEMA)


async def fetch_one(query: str, *args) -> asyncpg.Record | None:
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.fetchrow(query, *args)


async def fetch_all(query: str, *args) -> list[asyncpg.Record]:
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.fetch(query, *args)


async def execute(query: str, *args) -> str:
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.execute(query, *args)
