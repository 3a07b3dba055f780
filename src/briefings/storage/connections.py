"""Calendar connection persistence backed by the ``calendar_connections`` table.

One row per (user, Google account). Tokens are stored as vault ciphertext;
this module never sees plaintext credentials.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from briefings.errors import ConnectionNotFoundError
from briefings.models import Connection

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_connections"

_COLUMNS = """
    id, user_id, title, account_email, external_account_id,
    access_token_encrypted, refresh_token_encrypted, token_expiry,
    is_active, last_sync_at, created_at, updated_at
"""


def _row_to_connection(row: Any) -> Connection:
    return Connection(
        id=str(row["id"]),
        user_id=row["user_id"],
        title=row["title"],
        account_email=row["account_email"],
        external_account_id=row["external_account_id"],
        access_token_encrypted=row["access_token_encrypted"],
        refresh_token_encrypted=row["refresh_token_encrypted"],
        token_expiry=row["token_expiry"],
        is_active=row["is_active"],
        last_sync_at=row["last_sync_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _parse_id(connection_id: str) -> uuid.UUID:
    """Coerce a connection id to a UUID; malformed ids are simply unknown."""
    try:
        return uuid.UUID(str(connection_id))
    except ValueError as exc:
        raise ConnectionNotFoundError(connection_id) from exc


def _affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg command status like ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class ConnectionStore:
    """Async access to calendar connections.

    Parameters
    ----------
    pool:
        An asyncpg connection pool. Each operation acquires a connection for
        the duration of the call.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, connection_id: str) -> Connection:
        """Load a connection by id, raising ``ConnectionNotFoundError`` if absent."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE id = $1",
                _parse_id(connection_id),
            )
        if row is None:
            raise ConnectionNotFoundError(connection_id)
        return _row_to_connection(row)

    async def get_by_account(self, user_id: str, external_account_id: str) -> Connection | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = $1 AND external_account_id = $2",
                user_id,
                external_account_id,
            )
        return _row_to_connection(row) if row is not None else None

    async def list_for_user(
        self, user_id: str, *, include_inactive: bool = True
    ) -> list[Connection]:
        """Return the user's connections, newest first."""
        query = f"SELECT {_COLUMNS} FROM {_TABLE} WHERE user_id = $1"
        if not include_inactive:
            query += " AND is_active"
        query += " ORDER BY created_at DESC"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, user_id)
        return [_row_to_connection(r) for r in rows]

    async def list_active_for_user(self, user_id: str) -> list[Connection]:
        return await self.list_for_user(user_id, include_inactive=False)

    async def list_active(self) -> list[Connection]:
        """Return every active connection across all users (scheduler input)."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE is_active ORDER BY created_at"
            )
        return [_row_to_connection(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_from_grant(
        self,
        *,
        user_id: str,
        external_account_id: str,
        account_email: str,
        title: str | None,
        access_token_encrypted: str,
        refresh_token_encrypted: str | None,
        token_expiry: datetime | None,
    ) -> Connection:
        """Create or refresh the connection for (user, Google account).

        A reconnect without a new refresh token keeps the stored one, and a
        reconnect without an explicit title keeps the stored title. The
        connection is (re)activated either way.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, external_account_id, account_email, title,
                     access_token_encrypted, refresh_token_encrypted, token_expiry, is_active)
                VALUES ($1, $2, $3, COALESCE($4::text, $3), $5, $6, $7, true)
                ON CONFLICT (user_id, external_account_id) DO UPDATE SET
                    account_email           = EXCLUDED.account_email,
                    title                   = COALESCE($4::text, {_TABLE}.title),
                    access_token_encrypted  = EXCLUDED.access_token_encrypted,
                    refresh_token_encrypted = COALESCE(
                        EXCLUDED.refresh_token_encrypted, {_TABLE}.refresh_token_encrypted
                    ),
                    token_expiry            = EXCLUDED.token_expiry,
                    is_active               = true,
                    updated_at              = now()
                RETURNING {_COLUMNS}
                """,
                user_id,
                external_account_id,
                account_email,
                title,
                access_token_encrypted,
                refresh_token_encrypted,
                token_expiry,
            )
        connection = _row_to_connection(row)
        logger.info(
            "Calendar connection saved: id=%s user=%s account=%s",
            connection.id,
            user_id,
            account_email,
        )
        return connection

    async def update_tokens(
        self,
        connection_id: str,
        *,
        access_token_encrypted: str,
        token_expiry: datetime | None,
        refresh_token_encrypted: str | None = None,
    ) -> None:
        """Persist a refreshed access token (and a rotated refresh token, if any)."""
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    access_token_encrypted  = $2,
                    token_expiry            = $3,
                    refresh_token_encrypted = COALESCE($4, refresh_token_encrypted),
                    updated_at              = now()
                WHERE id = $1
                """,
                _parse_id(connection_id),
                access_token_encrypted,
                token_expiry,
                refresh_token_encrypted,
            )
        if _affected_rows(status) == 0:
            raise ConnectionNotFoundError(connection_id)

    async def set_active(self, connection_id: str, active: bool) -> Connection:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {_TABLE} SET is_active = $2, updated_at = now()
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                _parse_id(connection_id),
                active,
            )
        if row is None:
            raise ConnectionNotFoundError(connection_id)
        logger.info("Calendar connection %s %s", connection_id, "activated" if active else "paused")
        return _row_to_connection(row)

    async def rename(self, connection_id: str, title: str) -> Connection:
        title = title.strip()
        if not title:
            raise ValueError("title must be a non-empty string")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {_TABLE} SET title = $2, updated_at = now()
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                _parse_id(connection_id),
                title,
            )
        if row is None:
            raise ConnectionNotFoundError(connection_id)
        return _row_to_connection(row)

    async def record_sync_completion(self, connection_id: str, completed_at: datetime) -> None:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                f"UPDATE {_TABLE} SET last_sync_at = $2, updated_at = now() WHERE id = $1",
                _parse_id(connection_id),
                completed_at,
            )
        if _affected_rows(status) == 0:
            raise ConnectionNotFoundError(connection_id)

    async def delete(self, connection_id: str) -> None:
        """Remove a connection; its meetings and progress rows cascade."""
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                f"DELETE FROM {_TABLE} WHERE id = $1",
                _parse_id(connection_id),
            )
        if _affected_rows(status) == 0:
            raise ConnectionNotFoundError(connection_id)
        logger.info("Calendar connection deleted: id=%s", connection_id)
