import json
import logging

import asyncpg

from app.config import get_settings

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None
_store = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=lambda value: json.dumps(value, default=str),
            decoder=json.loads,
            schema="pg_catalog",
        )


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=2,
            max_size=settings.database_pool_size,
            init=_init_connection,
        )
        logger.info("Database pool created (max_size=%d)", settings.database_pool_size)
    return _pool


async def close_pool() -> None:
    global _pool, _store
    if _pool is not None:
        await _pool.close()
        _pool = None
    _store = None


async def get_store():
    """Return the configured LeadStore (Postgres in deployments, in-memory for local runs)."""
    global _store
    if _store is None:
        if get_settings().store_backend == "memory":
            from app.modules.store.memory import MemoryStore
            _store = MemoryStore()
        else:
            from app.modules.store.postgres import PostgresStore
            _store = PostgresStore(await get_pool())
    return _store


def set_store(store) -> None:
    """Install a specific store instance (tests, scripts)."""
    global _store
    _store = store
