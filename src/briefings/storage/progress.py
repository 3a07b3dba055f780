"""Durable sync progress log backed by the ``calendar_sync_progress`` table.

Only coarse milestones are persisted (state changes, month boundaries and the
terminal outcome) so that a client that reconnects mid-run can replay what it
missed using a ``since_id`` cursor.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_sync_progress"
DEFAULT_PAGE_LIMIT = 200


class ProgressRow(BaseModel):
    id: int
    connection_id: str
    run_id: str
    event_type: str
    state: str
    month: str | None = None
    message: str | None = None
    events_scanned: int = 0
    meetings_matched: int = 0
    errors: int = 0
    created_at: datetime | None = None


def _row_to_progress(row: Any) -> ProgressRow:
    return ProgressRow(
        id=row["id"],
        connection_id=str(row["connection_id"]),
        run_id=row["run_id"],
        event_type=row["event_type"],
        state=row["state"],
        month=row["month"],
        message=row["message"],
        events_scanned=row["events_scanned"],
        meetings_matched=row["meetings_matched"],
        errors=row["errors"],
        created_at=row["created_at"],
    )


class SyncProgressLog:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def record(
        self,
        *,
        connection_id: str,
        run_id: str,
        event_type: str,
        state: str,
        month: str | None = None,
        message: str | None = None,
        events_scanned: int = 0,
        meetings_matched: int = 0,
        errors: int = 0,
    ) -> int:
        """Append one milestone row and return its id."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                f"""
                INSERT INTO {_TABLE}
                    (connection_id, run_id, event_type, state, month, message,
                     events_scanned, meetings_matched, errors)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING id
                """,
                connection_id,
                run_id,
                event_type,
                state,
                month,
                message,
                events_scanned,
                meetings_matched,
                errors,
            )

    async def list_since(
        self,
        connection_id: str,
        since_id: int | None = None,
        *,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> list[ProgressRow]:
        """Return rows for *connection_id* with id greater than *since_id*, oldest first."""
        limit = max(1, min(limit, DEFAULT_PAGE_LIMIT))
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT id, connection_id, run_id, event_type, state, month, message,
                       events_scanned, meetings_matched, errors, created_at
                FROM {_TABLE}
                WHERE connection_id = $1 AND id > $2
                ORDER BY id
                LIMIT $3
                """,
                connection_id,
                since_id or 0,
                limit,
            )
        return [_row_to_progress(r) for r in rows]
