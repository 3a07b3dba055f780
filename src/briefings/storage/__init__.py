"""Postgres-backed stores used by the sync core."""

from briefings.storage.analysts import AnalystDirectory
from briefings.storage.connections import ConnectionStore
from briefings.storage.meetings import MeetingStore
from briefings.storage.progress import ProgressRow, SyncProgressLog

__all__ = [
    "AnalystDirectory",
    "ConnectionStore",
    "MeetingStore",
    "ProgressRow",
    "SyncProgressLog",
]
