"""
PostgreSQL storage for synced messages, contacts and groups.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...), never string interpolation of values.

Every write reports what was *durably* accepted: batch inserts return the
records that were new (conflicts on ``(message_id, chat_id)`` are dropped),
and their count is what ``SyncResult.messages_stored`` accumulates.  Driver
and I/O failures are re-raised as :class:`~tgsync.errors.StoreError`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Sequence

import asyncpg

from tgsync.errors import StoreError

logger = logging.getLogger("tgsync.message_store")

_MESSAGE_COLUMNS = (
    "message_id, chat_id, sender_id, sender_name, "
    "reply_to_msg_id, timestamp, text, has_media, raw_json"
)
_MESSAGE_ROW_WIDTH = 9

_UPSERT_CONTACT_SQL = """
    INSERT INTO contacts (user_id, username, display_name, phone, updated_at)
    VALUES ($1, $2, $3, $4, NOW())
    ON CONFLICT (user_id)
    DO UPDATE SET
        username = EXCLUDED.username,
        display_name = EXCLUDED.display_name,
        phone = EXCLUDED.phone,
        updated_at = NOW()
    WHERE
        contacts.username IS DISTINCT FROM EXCLUDED.username
        OR contacts.display_name IS DISTINCT FROM EXCLUDED.display_name
        OR contacts.phone IS DISTINCT FROM EXCLUDED.phone
"""

_UPSERT_GROUP_SQL = """
    INSERT INTO groups (chat_id, title, chat_type, participant_count, updated_at)
    VALUES ($1, $2, $3, $4, NOW())
    ON CONFLICT (chat_id)
    DO UPDATE SET
        title = EXCLUDED.title,
        chat_type = EXCLUDED.chat_type,
        participant_count = EXCLUDED.participant_count,
        updated_at = NOW()
    WHERE
        groups.title IS DISTINCT FROM EXCLUDED.title
        OR groups.chat_type IS DISTINCT FROM EXCLUDED.chat_type
        OR groups.participant_count IS DISTINCT FROM EXCLUDED.participant_count
"""


class MessageStore:
    """Manages message, contact and group persistence in PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._batch_insert_sql_cache: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @staticmethod
    def _msg_params(msg: Dict[str, Any]) -> tuple:
        """Extract ordered parameters from a message record."""
        raw_json = msg.get("raw_json")
        if raw_json is not None and not isinstance(raw_json, str):
            raw_json = json.dumps(raw_json, default=str)
        return (
            msg["message_id"],
            msg["chat_id"],
            msg.get("sender_id"),
            msg.get("sender_name"),
            msg.get("reply_to_msg_id"),
            msg["timestamp"],
            msg.get("text"),
            bool(msg.get("has_media", False)),
            raw_json,
        )

    def _batch_insert_sql(self, row_count: int) -> str:
        sql = self._batch_insert_sql_cache.get(row_count)
        if sql is not None:
            return sql
        values_sql: List[str] = []
        for idx in range(row_count):
            base = idx * _MESSAGE_ROW_WIDTH
            placeholders = ", ".join(
                f"${base + i}" for i in range(1, _MESSAGE_ROW_WIDTH + 1)
            )
            values_sql.append(f"({placeholders})")
        sql = (
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES "
            + ", ".join(values_sql)
            + " ON CONFLICT (message_id, chat_id) DO NOTHING"
            + " RETURNING message_id, chat_id"
        )
        self._batch_insert_sql_cache[row_count] = sql
        return sql

    async def store_messages_batch(
        self, messages: Sequence[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Insert a batch of message records in one statement.

        Returns:
            The records actually inserted (already-stored ones excluded).

        Raises:
            StoreError: If the insert fails.  Nothing from the batch is
                written in that case.
        """
        if not messages:
            return []

        sql = self._batch_insert_sql(len(messages))
        params: List[Any] = []
        for msg in messages:
            params.extend(self._msg_params(msg))

        try:
            rows = await self._pool.fetch(sql, *params)
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(f"failed to store {len(messages)} messages: {exc}") from exc

        new_keys = {(int(row["message_id"]), int(row["chat_id"])) for row in rows}
        inserted: List[Dict[str, Any]] = []
        for msg in messages:
            key = (int(msg["message_id"]), int(msg["chat_id"]))
            if key in new_keys:
                new_keys.discard(key)
                inserted.append(msg)
        logger.debug("Batch insert: %d/%d new rows", len(inserted), len(messages))
        return inserted

    async def get_last_synced_ids(self, chat_ids: List[int]) -> Dict[int, int]:
        """Return the highest stored ``message_id`` per chat, in one query.

        Chats never synced are absent from the result.
        """
        if not chat_ids:
            return {}
        try:
            rows = await self._pool.fetch(
                """
                SELECT chat_id, MAX(message_id) AS last_message_id
                FROM messages
                WHERE chat_id = ANY($1::bigint[])
                GROUP BY chat_id
                """,
                chat_ids,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(f"failed to read sync cursors: {exc}") from exc
        return {
            int(row["chat_id"]): int(row["last_message_id"])
            for row in rows
            if row["last_message_id"] is not None
        }

    # ------------------------------------------------------------------
    # Contacts and groups
    # ------------------------------------------------------------------

    async def upsert_contacts(self, contacts: Sequence[Dict[str, Any]]) -> int:
        """Insert or update contact records.

        Returns:
            Number of contacts written.
        """
        if not contacts:
            return 0
        rows = [
            (
                c["user_id"],
                c.get("username"),
                c.get("display_name"),
                c.get("phone"),
            )
            for c in contacts
        ]
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(_UPSERT_CONTACT_SQL, rows)
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(f"failed to store {len(rows)} contacts: {exc}") from exc
        logger.debug("Upserted %d contacts", len(rows))
        return len(rows)

    async def upsert_groups(self, groups: Sequence[Dict[str, Any]]) -> int:
        """Insert or update group/channel metadata.

        Returns:
            Number of groups written.
        """
        if not groups:
            return 0
        rows = [
            (
                g["chat_id"],
                g.get("title"),
                g.get("chat_type"),
                g.get("participant_count"),
            )
            for g in groups
        ]
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(_UPSERT_GROUP_SQL, rows)
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(f"failed to store {len(rows)} groups: {exc}") from exc
        logger.debug("Upserted %d groups", len(rows))
        return len(rows)

