"""asyncpg access to the Supabase Postgres database.

The pool connects with the service role, which RLS does not restrict.
Webhook deliveries and batch syncs act on behalf of the provider, not a
signed-in user.  User-facing reads pass ``user_id``, which populates
``request.jwt.claims`` so ``auth.uid()`` resolves to the caller in SQL, but
the role is not switched: access to another user's rows is prevented by the
explicit ``user_id`` filter every user-scoped query carries.  The RLS
policies in the migration guard PostgREST clients, not this connection.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from lifedash.config import Settings, get_settings

logger = logging.getLogger("lifedash.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.supabase_db_url,
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


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    user_id: str | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection inside a transaction.

    Usage::

        async with get_connection(user_id=ctx.user_id) as conn:
            rows = await conn.fetch("SELECT * FROM garmin_activities")

    ``set_config(..., true)`` is transaction-local, so the claims disappear
    when the connection returns to the pool.  They identify the caller to
    SQL functions only; they do not drop the service role's privileges.
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if user_id:
                await conn.execute(
                    "SELECT set_config('request.jwt.claims', $1, true)",
                    json.dumps({"sub": str(user_id), "role": "authenticated"}),
                )
            yield conn


async def execute(query: str, *args: Any, user_id: str | None = None) -> str:
    """Execute a single statement and return its status tag."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.execute(query, *args)


async def fetch(query: str, *args: Any, user_id: str | None = None) -> list[asyncpg.Record]:
    """Fetch rows."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetch(query, *args)


async def fetchrow(query: str, *args: Any, user_id: str | None = None) -> asyncpg.Record | None:
    """Fetch a single row."""
    async with get_connection(user_id=user_id) as conn:
        return await conn.fetchrow(query, *args)
