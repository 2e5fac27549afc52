"""
Database helpers: connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  Tables:

- ``messages``: synced messages, keyed by ``(message_id, chat_id)``.
- ``contacts``: known users from the account's contact list.
- ``groups``: group/channel metadata.
- ``audit_log``: structured audit events.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS messages (
        message_id      BIGINT NOT NULL,
        chat_id         BIGINT NOT NULL,
        sender_id       BIGINT,
        sender_name     TEXT,
        reply_to_msg_id BIGINT,
        timestamp       TIMESTAMPTZ NOT NULL,
        text            TEXT,
        has_media       BOOLEAN NOT NULL DEFAULT FALSE,
        raw_json        JSONB,
        PRIMARY KEY (message_id, chat_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        user_id      BIGINT PRIMARY KEY,
        username     TEXT,
        display_name TEXT,
        phone        TEXT,
        updated_at   TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        chat_id           BIGINT PRIMARY KEY,
        title             TEXT,
        chat_type         TEXT,
        participant_count INTEGER,
        updated_at        TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_chat_timestamp
    ON messages (chat_id, timestamp DESC)
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, ``password``,
                and optionally ``min_size``, ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
        OSError: If the server is unreachable.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host", "localhost"),
        port=int(config.get("port", 5432)),
        database=config.get("database", "tgsync"),
        user=config.get("user", "tgsync"),
        password=config.get("password"),
        min_size=int(config.get("min_size", 1)),
        max_size=int(config.get("max_size", 4)),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user", "tgsync"),
        config.get("host", "localhost"),
        config.get("database", "tgsync"),
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once per run before ingestion.  Idempotent (uses IF NOT EXISTS).
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.debug("Database schema ensured (%d statements)", len(_SCHEMA_STATEMENTS))


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database health check failed")
        return False
