"""Calendar sync service, the boundary the HTTP API, CLI and scheduler call.

Owns the OAuth flow state, the per-connection sync guard and the live
progress channels. Every operation that takes a ``user_id`` checks ownership
and reports a connection belonging to someone else as not found.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

import asyncpg
import httpx

from briefings.config import Settings
from briefings.errors import (
    BriefingsError,
    ConnectionNotFoundError,
    InvalidOAuthStateError,
    SyncAlreadyRunningError,
)
from briefings.google.events import EventFetcher
from briefings.google.oauth import OAuthConnector
from briefings.google.state import OAuthFlowState, OAuthStateStore
from briefings.models import Connection, Meeting
from briefings.storage import (
    AnalystDirectory,
    ConnectionStore,
    MeetingStore,
    ProgressRow,
    SyncProgressLog,
)
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
from briefings.vault import TokenVault

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class OAuthStart:
    authorization_url: str
    state: str


@dataclass(frozen=True)
class OAuthCompletion:
    connection: Connection
    created: bool
    flow: OAuthFlowState


@dataclass
class SyncHandle:
    """A running (or just finished) sync for one connection."""

    run_id: str
    connection_id: str
    channel: ProgressChannel
    task: asyncio.Task = field(repr=False)

    def stream(self) -> Subscription:
        """Subscribe to this run's progress; iteration ends after the terminal event."""
        return self.channel.subscribe()

    @property
    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> SyncOutcome:
        # asyncio.wait never cancels the awaited task when the waiter is cancelled.
        await asyncio.wait({self.task})
        if not self.task.cancelled():
            return self.task.result()
        terminal = self.channel.terminal_event
        if terminal is None:
            return SyncOutcome(
                run_id=self.run_id,
                connection_id=self.connection_id,
                state=SyncState.CANCELLED,
                events_scanned=0,
                meetings_matched=0,
                meetings_written=0,
                errors=0,
                reason="task_cancelled",
            )
        # The reconciler reports its counts before letting the cancellation through.
        return SyncOutcome(
            run_id=self.run_id,
            connection_id=self.connection_id,
            state=terminal.state,
            events_scanned=terminal.events_scanned,
            meetings_matched=terminal.meetings_matched,
            meetings_written=terminal.meetings_written,
            errors=terminal.errors,
            reason=terminal.reason,
            error_type=terminal.error_type,
            needs_reconnect=terminal.needs_reconnect,
        )


class CalendarSyncService:
    def __init__(
        self,
        *,
        connections: ConnectionStore,
        meetings: MeetingStore,
        oauth: OAuthConnector,
        reconciler: SyncReconciler,
        progress_log: SyncProgressLog | None = None,
        state_store: OAuthStateStore | None = None,
        guard: SyncGuard | None = None,
        default_policy: WindowPolicy | None = None,
    ) -> None:
        self.connections = connections
        self.meetings = meetings
        self.oauth = oauth
        self.reconciler = reconciler
        self.progress_log = progress_log
        self.state_store = state_store or OAuthStateStore()
        self.guard = guard or SyncGuard()
        self.default_policy = default_policy or WindowPolicy.future()
        self._handles: dict[str, SyncHandle] = {}

    @classmethod
    def from_pool(
        cls,
        settings: Settings,
        pool: asyncpg.Pool,
        http_client: httpx.AsyncClient,
    ) -> CalendarSyncService:
        """Wire the stores, connector, fetcher and reconciler over one pool."""
        vault = TokenVault.from_settings(
            settings.encryption_key, development=settings.is_development
        )
        connections = ConnectionStore(pool)
        meetings = MeetingStore(pool)
        progress_log = SyncProgressLog(pool)
        oauth = OAuthConnector(
            settings.google,
            http_client,
            vault,
            connections,
            safety_margin_seconds=settings.sync.token_safety_margin_seconds,
        )
        fetcher = EventFetcher(
            http_client,
            page_size=settings.sync.page_size,
            max_retries=settings.sync.max_fetch_retries,
            backoff_base_seconds=settings.sync.backoff_base_seconds,
        )
        reconciler = SyncReconciler(
            connections=connections,
            meetings=meetings,
            analysts=AnalystDirectory(pool),
            oauth=oauth,
            fetcher=fetcher,
            progress_log=progress_log,
            run_timeout_seconds=settings.sync.run_timeout_seconds,
        )
        return cls(
            connections=connections,
            meetings=meetings,
            oauth=oauth,
            reconciler=reconciler,
            progress_log=progress_log,
            default_policy=WindowPolicy.from_name(settings.sync.default_window),
        )

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def start_oauth_flow(
        self,
        user_id: str,
        *,
        title: str | None = None,
        nonce: str | None = None,
        connect_first: bool = False,
    ) -> OAuthStart:
        state = self.state_store.issue(
            user_id, title=title, nonce=nonce, connect_first=connect_first
        )
        logger.info("Google OAuth flow started for user %s (state=%s...)", user_id, state[:8])
        return OAuthStart(
            authorization_url=self.oauth.build_authorization_url(state),
            state=state,
        )

    async def complete_oauth_flow(self, code: str, state: str) -> OAuthCompletion:
        """Exchange *code* and save the connection for the user recorded in *state*.

        Raises ``InvalidOAuthStateError`` for an unknown, expired or reused
        state and ``TokenExchangeError`` when Google rejects the exchange or
        the account identity cannot be read.
        """
        flow = self.state_store.consume(state)
        if flow is None:
            raise InvalidOAuthStateError("OAuth state is invalid, expired or already used")

        grant = await self.oauth.exchange_code(code)
        identity = await self.oauth.fetch_account_identity(grant.access_token)
        existing = await self.connections.get_by_account(
            flow.user_id, identity.external_account_id
        )

        title = flow.title
        if title is None and existing is None:
            title = await self.oauth.fetch_calendar_title(grant.access_token)
        if grant.refresh_token is None and existing is None:
            logger.warning(
                "Google returned no refresh token for new connection (account=%s)",
                identity.email,
            )

        vault = self.oauth.vault
        connection = await self.connections.upsert_from_grant(
            user_id=flow.user_id,
            external_account_id=identity.external_account_id,
            account_email=identity.email,
            title=title,
            access_token_encrypted=vault.encrypt(grant.access_token),
            refresh_token_encrypted=(
                vault.encrypt(grant.refresh_token) if grant.refresh_token else None
            ),
            token_expiry=grant.expiry,
        )
        return OAuthCompletion(connection=connection, created=existing is None, flow=flow)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def get_connection(self, connection_id: str, *, user_id: str | None = None) -> Connection:
        connection = await self.connections.get(connection_id)
        if user_id is not None and connection.user_id != user_id:
            raise ConnectionNotFoundError(connection_id)
        return connection

    async def list_connections(
        self, user_id: str, *, include_inactive: bool = True
    ) -> list[Connection]:
        return await self.connections.list_for_user(user_id, include_inactive=include_inactive)

    async def set_connection_active(
        self, connection_id: str, active: bool, *, user_id: str | None = None
    ) -> Connection:
        await self.get_connection(connection_id, user_id=user_id)
        return await self.connections.set_active(connection_id, active)

    async def rename_connection(
        self, connection_id: str, title: str, *, user_id: str | None = None
    ) -> Connection:
        await self.get_connection(connection_id, user_id=user_id)
        return await self.connections.rename(connection_id, title)

    async def delete_connection(self, connection_id: str, *, user_id: str | None = None) -> None:
        """Delete a connection, stopping any sync still running against it first."""
        await self.get_connection(connection_id, user_id=user_id)
        handle = self._handles.get(connection_id)
        if handle is not None and not handle.done:
            logger.info("Stopping sync %s before deleting connection", handle.run_id)
            handle.task.cancel()
            await asyncio.wait({handle.task})
        await self.connections.delete(connection_id)

    async def list_meetings(
        self, connection_id: str, *, user_id: str | None = None, limit: int = 500
    ) -> list[Meeting]:
        await self.get_connection(connection_id, user_id=user_id)
        return await self.meetings.list_for_connection(connection_id, limit=limit)

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    async def start_sync(
        self,
        connection_id: str,
        policy: WindowPolicy | None = None,
        *,
        user_id: str | None = None,
    ) -> SyncHandle:
        """Launch a sync run in the background and return its handle.

        Raises ``SyncAlreadyRunningError`` when one is already in flight and
        ``ValueError`` for an invalid window.
        """
        policy = policy or self.default_policy
        await self.get_connection(connection_id, user_id=user_id)
        resolve_window(policy, datetime.now(UTC))

        # No await between here and registering the done-callback.
        lease = self.guard.acquire(connection_id)
        channel = ProgressChannel()
        task = asyncio.create_task(
            self.reconciler.run(
                connection_id,
                policy,
                run_id=lease.run_id,
                cancel_event=lease.cancel_event,
                emit=channel.publish,
            ),
            name=f"briefings-sync-{connection_id}",
        )
        handle = SyncHandle(
            run_id=lease.run_id, connection_id=connection_id, channel=channel, task=task
        )
        self._handles[connection_id] = handle
        task.add_done_callback(lambda t: self._on_run_done(t, lease, handle))
        logger.info("Sync %s started for connection %s", lease.run_id, connection_id)
        return handle

    def _on_run_done(self, task: asyncio.Task, lease: SyncLease, handle: SyncHandle) -> None:
        lease.release()
        if self._handles.get(handle.connection_id) is handle:
            del self._handles[handle.connection_id]
        if task.cancelled():
            # Cancelled before the reconciler could report; close the stream ourselves.
            handle.channel.publish(
                SyncProgressEvent(
                    type=ProgressEventType.CANCELLED,
                    run_id=handle.run_id,
                    connection_id=handle.connection_id,
                    state=SyncState.CANCELLED,
                    reason="task_cancelled",
                    message="Sync cancelled",
                )
            )
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Sync task for connection %s crashed",
                handle.connection_id,
                exc_info=exc,
            )

    def active_sync(self, connection_id: str) -> SyncHandle | None:
        return self._handles.get(connection_id)

    def cancel_sync(self, connection_id: str) -> bool:
        """Ask the in-flight run to stop after its current page."""
        cancelled = self.guard.cancel(connection_id)
        if cancelled:
            logger.info("Cancellation requested for connection %s", connection_id)
        return cancelled

    async def sync_progress(
        self,
        connection_id: str,
        since_id: int | None = None,
        *,
        limit: int = 200,
        user_id: str | None = None,
    ) -> list[ProgressRow]:
        await self.get_connection(connection_id, user_id=user_id)
        if self.progress_log is None:
            return []
        return await self.progress_log.list_since(connection_id, since_id, limit=limit)

    async def sync_all_active(self, policy: WindowPolicy | None = None) -> list[SyncOutcome]:
        """Sync every active connection concurrently; busy connections are skipped."""
        handles: list[SyncHandle] = []
        for connection in await self.connections.list_active():
            try:
                handles.append(await self.start_sync(connection.id, policy))
            except SyncAlreadyRunningError:
                logger.info("Skipping connection %s: sync already running", connection.id)
            except (BriefingsError, ValueError) as exc:
                logger.warning("Skipping connection %s: %s", connection.id, exc)
        if not handles:
            return []
        return list(await asyncio.gather(*(h.wait() for h in handles)))

    async def run_scheduler(
        self,
        interval_minutes: float,
        stop_event: asyncio.Event,
        policy: WindowPolicy | None = None,
    ) -> None:
        """Sync all active connections every *interval_minutes* until *stop_event* is set."""
        interval_seconds = interval_minutes * 60
        logger.info("Calendar sync scheduler started (interval=%ds)", interval_seconds)
        while not stop_event.is_set():
            try:
                outcomes = await self.sync_all_active(policy)
                failed = sum(1 for o in outcomes if not o.succeeded)
                logger.info(
                    "Scheduled sync pass finished: %d runs, %d not completed",
                    len(outcomes),
                    failed,
                )
            except Exception:
                logger.exception("Scheduled sync pass failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                pass
        logger.info("Calendar sync scheduler stopped")

    async def shutdown(self) -> None:
        """Cancel in-flight runs and wait briefly for them to unwind."""
        tasks = [h.task for h in self._handles.values() if not h.done]
        if not tasks:
            return
        logger.info("Cancelling %d in-flight sync run(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_SECONDS)
