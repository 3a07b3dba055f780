"""Per-connection concurrency guard for sync runs.

At most one run may be in flight per connection. A lease is taken
synchronously (no await between check and insert) and released when the run's
task finishes, whatever the exit path.

NOTE: Leases are process-local; a multi-process deployment needs a shared lock.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from briefings.errors import SyncAlreadyRunningError

logger = logging.getLogger(__name__)


class SyncLease:
    def __init__(self, guard: SyncGuard, connection_id: str, run_id: str) -> None:
        self._guard = guard
        self.connection_id = connection_id
        self.run_id = run_id
        self.cancel_event = asyncio.Event()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def cancel(self) -> None:
        self.cancel_event.set()

    def release(self) -> None:
        """Return the lease to the guard. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        self._guard._release(self)

    def __repr__(self) -> str:
        return f"SyncLease(connection_id={self.connection_id!r}, run_id={self.run_id!r})"


class SyncGuard:
    def __init__(self) -> None:
        self._leases: dict[str, SyncLease] = {}

    def acquire(self, connection_id: str) -> SyncLease:
        """Take the lease for *connection_id* or raise ``SyncAlreadyRunningError``."""
        if connection_id in self._leases:
            raise SyncAlreadyRunningError(connection_id)
        lease = SyncLease(self, connection_id, uuid.uuid4().hex)
        self._leases[connection_id] = lease
        logger.debug("Sync lease acquired: %r", lease)
        return lease

    def get(self, connection_id: str) -> SyncLease | None:
        return self._leases.get(connection_id)

    def is_running(self, connection_id: str) -> bool:
        return connection_id in self._leases

    def cancel(self, connection_id: str) -> bool:
        """Flag the in-flight run for *connection_id*; returns False if none is running."""
        lease = self._leases.get(connection_id)
        if lease is None:
            return False
        lease.cancel()
        return True

    def running(self) -> list[str]:
        return list(self._leases)

    def _release(self, lease: SyncLease) -> None:
        if self._leases.get(lease.connection_id) is lease:
            del self._leases[lease.connection_id]
            logger.debug("Sync lease released: %r", lease)
