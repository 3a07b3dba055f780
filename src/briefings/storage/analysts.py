"""Read-only adapter over the CRM's ``analysts`` table.

The analyst directory is owned by another part of the application; the sync
core only needs a point-in-time snapshot of the active analysts.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from briefings.models import KnownAnalyst

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


class AnalystDirectory:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def load_active(self) -> list[KnownAnalyst]:
        """Return every analyst whose status is ``ACTIVE``."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, first_name, last_name, email, company, company_domain
                FROM analysts
                WHERE status = 'ACTIVE'
                ORDER BY last_name, first_name, id
                """
            )
        analysts = [
            KnownAnalyst(
                id=str(row["id"]),
                first_name=row["first_name"] or "",
                last_name=row["last_name"] or "",
                email=row["email"],
                company=row["company"],
                company_domain=row["company_domain"],
            )
            for row in rows
        ]
        logger.debug("Loaded %d active analysts", len(analysts))
        return analysts
