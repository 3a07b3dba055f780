"""Sync run orchestration: window policies, concurrency guard, progress and the reconciler."""

from briefings.sync.guard import SyncGuard, SyncLease
from briefings.sync.progress import (
    ProgressChannel,
    ProgressEventType,
    Subscription,
    SyncProgressEvent,
    SyncState,
)
from briefings.sync.reconciler import SyncOutcome, SyncReconciler
from briefings.sync.window import WindowPolicy, resolve_window

__all__ = [
    "ProgressChannel",
    "ProgressEventType",
    "Subscription",
    "SyncGuard",
    "SyncLease",
    "SyncOutcome",
    "SyncProgressEvent",
    "SyncReconciler",
    "SyncState",
    "WindowPolicy",
    "resolve_window",
]
