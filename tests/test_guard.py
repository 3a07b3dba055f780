"""Tests for the per-connection sync guard."""

from __future__ import annotations

import pytest

from briefings.errors import SyncAlreadyRunningError
from briefings.sync.guard import SyncGuard

pytestmark = pytest.mark.unit


class TestSyncGuard:
    def test_second_acquire_for_same_connection_rejected(self):
        guard = SyncGuard()
        guard.acquire("conn-1")
        with pytest.raises(SyncAlreadyRunningError) as exc_info:
            guard.acquire("conn-1")
        assert exc_info.value.connection_id == "conn-1"

    def test_different_connections_run_concurrently(self):
        guard = SyncGuard()
        first = guard.acquire("conn-1")
        second = guard.acquire("conn-2")
        assert first.run_id != second.run_id
        assert sorted(guard.running()) == ["conn-1", "conn-2"]

    def test_release_allows_next_run(self):
        guard = SyncGuard()
        lease = guard.acquire("conn-1")
        lease.release()
        assert lease.released
        assert not guard.is_running("conn-1")
        assert guard.acquire("conn-1") is not lease

    def test_release_is_idempotent_and_does_not_evict_newer_lease(self):
        guard = SyncGuard()
        old = guard.acquire("conn-1")
        old.release()
        new = guard.acquire("conn-1")
        old.release()
        assert guard.get("conn-1") is new

    def test_cancel_sets_event(self):
        guard = SyncGuard()
        lease = guard.acquire("conn-1")
        assert guard.cancel("conn-1") is True
        assert lease.cancel_event.is_set()

    def test_cancel_without_run(self):
        assert SyncGuard().cancel("conn-1") is False
