"""Meeting persistence backed by the ``calendar_meetings`` table.

Meetings are keyed on (connection_id, external_event_id). Re-syncing the same
event never creates a second row: the existing row is rewritten only when the
provider reports a newer modification time or the matcher found a stronger
analyst match.
"""

from __future__ import annotations

import logging
from typing import Any

import asyncpg

from briefings.errors import MeetingWriteError
from briefings.models import Meeting, MeetingRecord, UpsertOutcome

logger = logging.getLogger(__name__)

_TABLE = "calendar_meetings"

_COLUMNS = """
    id, connection_id, external_event_id, title, description, start_time, end_time,
    attendees, analyst_id, match_confidence, tags, source_updated_at,
    created_at, updated_at
"""

_UPSERT_SQL = f"""
INSERT INTO {_TABLE}
    (connection_id, external_event_id, title, description, start_time, end_time,
     attendees, analyst_id, match_confidence, tags, source_updated_at)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
ON CONFLICT (connection_id, external_event_id) DO UPDATE SET
    title             = EXCLUDED.title,
    description       = EXCLUDED.description,
    start_time        = EXCLUDED.start_time,
    end_time          = EXCLUDED.end_time,
    attendees         = EXCLUDED.attendees,
    analyst_id        = EXCLUDED.analyst_id,
    match_confidence  = EXCLUDED.match_confidence,
    tags              = EXCLUDED.tags,
    source_updated_at = EXCLUDED.source_updated_at,
    updated_at        = now()
WHERE EXCLUDED.source_updated_at > {_TABLE}.source_updated_at
   OR ({_TABLE}.source_updated_at IS NULL AND EXCLUDED.source_updated_at IS NOT NULL)
   OR EXCLUDED.match_confidence > {_TABLE}.match_confidence
RETURNING (xmax = 0) AS inserted
"""


def _row_to_meeting(row: Any) -> Meeting:
    return Meeting(
        id=str(row["id"]),
        connection_id=str(row["connection_id"]),
        external_event_id=row["external_event_id"],
        title=row["title"],
        description=row["description"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        attendees=list(row["attendees"] or []),
        analyst_id=row["analyst_id"],
        match_confidence=row["match_confidence"],
        tags=list(row["tags"] or []),
        source_updated_at=row["source_updated_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class MeetingStore:
    """Idempotent writes and simple reads for recognized meetings."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def upsert(self, record: MeetingRecord) -> UpsertOutcome:
        """Insert or conditionally update one meeting.

        Raises
        ------
        MeetingWriteError
            When the database rejects the write. The caller decides whether
            the failure aborts the run.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    _UPSERT_SQL,
                    record.connection_id,
                    record.external_event_id,
                    record.title,
                    record.description,
                    record.start_time,
                    record.end_time,
                    record.attendees,
                    record.analyst_id,
                    record.match_confidence,
                    record.tags,
                    record.source_updated_at,
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise MeetingWriteError(record.external_event_id, exc) from exc

        if row is None:
            return UpsertOutcome.UNCHANGED
        return UpsertOutcome.INSERTED if row["inserted"] else UpsertOutcome.UPDATED

    async def list_for_connection(self, connection_id: str, *, limit: int = 500) -> list[Meeting]:
        """Return a connection's meetings ordered by start time, most recent first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {_TABLE}
                WHERE connection_id = $1
                ORDER BY start_time DESC
                LIMIT $2
                """,
                connection_id,
                limit,
            )
        return [_row_to_meeting(r) for r in rows]
