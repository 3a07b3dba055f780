"""Sync reconciler: the state machine behind one calendar sync run.

::

    PENDING -> ENSURING_TOKEN -> FETCHING <-> MATCHING -> COMPLETED
        \\              \\              \\          \\
         +--------------+--------------+----------+--> FAILED
                                       CANCELLED / TIMED_OUT (soft stops)

A run loads its connection, resolves the window, makes sure the access token
is usable, snapshots the known analysts, then walks the calendar page by page.
Each event is matched and, when it is a briefing, upserted as a meeting.
Progress is emitted after every event; milestones are also persisted.

Only a COMPLETED run advances the connection's ``last_sync_at``. Every
failure is converted into a structured terminal event at this boundary;
meetings already written by a failed run are kept.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime

from briefings.core.logging import sync_log_context
from briefings.core.metrics import sync_metrics
from briefings.core.telemetry import get_tracer
from briefings.errors import (
    BriefingsError,
    ConnectionNotFoundError,
    EventFetchError,
    MeetingWriteError,
    ReauthorizationRequiredError,
    SyncTimeoutError,
)
from briefings.google.common import sanitize_error
from briefings.google.events import EventFetcher, RawEvent, TimeWindow
from briefings.google.oauth import OAuthConnector
from briefings.matching import PUBLIC_EMAIL_DOMAINS, AnalystIndex, email_domain
from briefings.matching import match as match_event
from briefings.models import Connection, MeetingRecord, UpsertOutcome
from briefings.storage.analysts import AnalystDirectory
from briefings.storage.connections import ConnectionStore
from briefings.storage.meetings import MeetingStore
from briefings.storage.progress import SyncProgressLog
from briefings.sync.progress import (
    TERMINAL_EVENT_TYPES,
    ProgressEventType,
    SyncProgressEvent,
    SyncState,
)
from briefings.sync.window import WindowPolicy, resolve_window

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
DEFAULT_RUN_TIMEOUT_SECONDS = 900.0

ProgressEmitter = Callable[[SyncProgressEvent], None]


class _RunAborted(BriefingsError):
    """Precondition failure that ends the run as FAILED with a fixed reason."""

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


@dataclass
class SyncRun:
    """Mutable bookkeeping for one run. Surfaced only through progress events."""

    run_id: str
    connection_id: str
    policy: WindowPolicy
    state: SyncState = SyncState.PENDING
    window: TimeWindow | None = None
    page: int = 0
    events_scanned: int = 0
    events_skipped: int = 0
    meetings_matched: int = 0
    meetings_written: int = 0
    errors: int = 0
    last_analyst_name: str | None = None
    month: str | None = None
    month_events: int = 0
    month_matches: int = 0
    reason: str | None = None
    error_type: str | None = None
    needs_reconnect: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


@dataclass(frozen=True)
class SyncOutcome:
    run_id: str
    connection_id: str
    state: SyncState
    events_scanned: int
    meetings_matched: int
    meetings_written: int
    errors: int
    reason: str | None = None
    error_type: str | None = None
    needs_reconnect: bool = False
    window: TimeWindow | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is SyncState.COMPLETED


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _noop_emit(event: SyncProgressEvent) -> None:
    return None


class SyncReconciler:
    def __init__(
        self,
        *,
        connections: ConnectionStore,
        meetings: MeetingStore,
        analysts: AnalystDirectory,
        oauth: OAuthConnector,
        fetcher: EventFetcher,
        progress_log: SyncProgressLog | None = None,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        run_timeout_seconds: float = DEFAULT_RUN_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._connections = connections
        self._meetings = meetings
        self._analysts = analysts
        self._oauth = oauth
        self._fetcher = fetcher
        self._progress_log = progress_log
        self._calendar_id = calendar_id
        self._run_timeout = run_timeout_seconds
        self._clock = clock

    async def run(
        self,
        connection_id: str,
        policy: WindowPolicy,
        *,
        run_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
        emit: ProgressEmitter | None = None,
    ) -> SyncOutcome:
        """Execute one sync run to a terminal state and return its outcome.

        Never raises for sync-time failures; they are reported through the
        returned outcome and the terminal progress event. Task cancellation
        is reported as CANCELLED and then re-raised.
        """
        run = SyncRun(run_id=run_id or uuid.uuid4().hex, connection_id=connection_id, policy=policy)
        emit = emit or _noop_emit
        cancel_event = cancel_event or asyncio.Event()
        started = time.monotonic()

        with (
            sync_log_context(connection_id, run.run_id),
            get_tracer().start_as_current_span("briefings.sync.run") as span,
        ):
            span.set_attribute("briefings.connection_id", connection_id)
            span.set_attribute("briefings.window_policy", policy.describe())
            logger.info("Sync run started (window=%s)", policy.describe())
            await self._record(run, ProgressEventType.STATE)
            emit(self._event(run, ProgressEventType.STATE))

            deadline = asyncio.timeout(self._run_timeout)
            try:
                try:
                    async with deadline:
                        await self._execute(run, cancel_event, emit)
                except TimeoutError:
                    if not deadline.expired():
                        raise
                    raise SyncTimeoutError(self._run_timeout) from None
            except asyncio.CancelledError:
                self._finish(run, SyncState.CANCELLED, reason="task_cancelled")
                await self._conclude(run, emit, started, span)
                raise
            except SyncTimeoutError as exc:
                self._finish(run, SyncState.TIMED_OUT, reason="timeout", exc=exc)
            except ReauthorizationRequiredError as exc:
                run.needs_reconnect = True
                self._finish(run, SyncState.FAILED, reason="needs_reconnect", exc=exc)
            except _RunAborted as exc:
                self._finish(run, SyncState.FAILED, reason=exc.reason, exc=exc)
            except ConnectionNotFoundError as exc:
                self._finish(run, SyncState.FAILED, reason="connection_not_found", exc=exc)
            except EventFetchError as exc:
                self._finish(run, SyncState.FAILED, reason=sanitize_error(exc), exc=exc)
            except (BriefingsError, ValueError) as exc:
                self._finish(run, SyncState.FAILED, reason=sanitize_error(exc), exc=exc)
            except Exception as exc:
                logger.exception("Sync run failed unexpectedly")
                self._finish(run, SyncState.FAILED, reason="internal_error", exc=exc)

            await self._conclude(run, emit, started, span)
        return self._outcome(run)

    # ------------------------------------------------------------------
    # Happy path
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run: SyncRun,
        cancel_event: asyncio.Event,
        emit: ProgressEmitter,
    ) -> None:
        connection = await self._connections.get(run.connection_id)
        if not connection.is_active:
            raise _RunAborted("connection_inactive", "Calendar connection is paused")
        run.window = resolve_window(run.policy, self._clock())

        await self._transition(run, SyncState.ENSURING_TOKEN, emit)
        access_token = await self._oauth.ensure_valid_token(connection)
        index = AnalystIndex(await self._analysts.load_active())
        logger.info("Matching against %d active analysts", len(index))

        await self._transition(run, SyncState.FETCHING, emit)
        ignore_emails, ignore_domains = _self_addresses(connection)

        async def refresh_token() -> str:
            return await self._oauth.ensure_valid_token(connection, force_refresh=True)

        pages = self._fetcher.fetch_pages(
            access_token, self._calendar_id, run.window, token_refresher=refresh_token
        )
        async with aclosing(pages) as page_iter:
            async for page in page_iter:
                run.page = page.number
                run.events_skipped += page.skipped
                await self._transition(run, SyncState.MATCHING, emit, persist=False)
                for event in page.events:
                    await self._process_event(
                        run, connection, event, index, ignore_emails, ignore_domains, emit
                    )
                if cancel_event.is_set():
                    await self._close_month(run, emit)
                    self._finish(run, SyncState.CANCELLED, reason="cancelled_by_user")
                    logger.info("Sync run cancelled after page %d", page.number)
                    return
                await self._transition(run, SyncState.FETCHING, emit, persist=False)

        await self._close_month(run, emit)
        await self._connections.record_sync_completion(run.connection_id, self._clock())
        self._finish(run, SyncState.COMPLETED)

    async def _process_event(
        self,
        run: SyncRun,
        connection: Connection,
        event: RawEvent,
        index: AnalystIndex,
        ignore_emails: list[str],
        ignore_domains: list[str],
        emit: ProgressEmitter,
    ) -> None:
        month = event.start.strftime("%Y-%m")
        if month != run.month:
            await self._close_month(run, emit)
            run.month = month
            emit(self._event(run, ProgressEventType.MONTH_STARTED))
            await self._record(run, ProgressEventType.MONTH_STARTED)

        run.events_scanned += 1
        run.month_events += 1
        sync_metrics.events_scanned()

        # All-day entries (holidays, OOO) are counted but never treated as briefings.
        result = None
        if not event.all_day:
            result = match_event(
                event, index, ignore_emails=ignore_emails, ignore_domains=ignore_domains
            )

        if result is not None:
            run.meetings_matched += 1
            run.month_matches += 1
            run.last_analyst_name = result.analyst_name
            sync_metrics.meeting_matched(result.kind.value)
            record = MeetingRecord(
                connection_id=connection.id,
                external_event_id=event.external_id,
                title=event.title,
                description=event.description,
                start_time=event.start,
                end_time=event.end,
                attendees=event.attendee_emails,
                analyst_id=result.analyst_id,
                match_confidence=result.confidence,
                tags=result.tags(),
                source_updated_at=event.updated_at,
            )
            try:
                outcome = await self._meetings.upsert(record)
            except MeetingWriteError as exc:
                run.errors += 1
                logger.warning("Could not store meeting for event %s: %s", event.external_id, exc)
            else:
                if outcome is not UpsertOutcome.UNCHANGED:
                    run.meetings_written += 1
                logger.debug(
                    "Event %s matched %s (%s, %.1f): %s",
                    event.external_id,
                    result.analyst_name,
                    result.kind.value,
                    result.confidence,
                    outcome.value,
                )

        emit(self._event(run, ProgressEventType.PROGRESS))

    async def _close_month(self, run: SyncRun, emit: ProgressEmitter) -> None:
        if run.month is None:
            return
        event = self._event(run, ProgressEventType.MONTH_RESULT)
        emit(event)
        await self._record(run, ProgressEventType.MONTH_RESULT)
        run.month = None
        run.month_events = 0
        run.month_matches = 0

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    async def _transition(
        self,
        run: SyncRun,
        state: SyncState,
        emit: ProgressEmitter,
        *,
        persist: bool = True,
    ) -> None:
        if run.state is state:
            return
        logger.debug("Sync state %s -> %s", run.state.value, state.value)
        run.state = state
        emit(self._event(run, ProgressEventType.STATE))
        if persist:
            await self._record(run, ProgressEventType.STATE)

    def _finish(
        self,
        run: SyncRun,
        state: SyncState,
        *,
        reason: str | None = None,
        exc: BaseException | None = None,
    ) -> None:
        run.state = state
        run.reason = reason
        run.error_type = type(exc).__name__ if exc is not None else None
        run.finished_at = self._clock()

    async def _conclude(self, run: SyncRun, emit: ProgressEmitter, started: float, span) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        sync_metrics.record_run(run.state.value, duration_ms)
        span.set_attribute("briefings.sync.state", run.state.value)
        span.set_attribute("briefings.sync.events_scanned", run.events_scanned)
        span.set_attribute("briefings.sync.meetings_matched", run.meetings_matched)

        if run.state is SyncState.COMPLETED:
            logger.info(
                "Sync run completed: %d events scanned, %d meetings matched, %d written, "
                "%d errors (%.0fms)",
                run.events_scanned,
                run.meetings_matched,
                run.meetings_written,
                run.errors,
                duration_ms,
            )
        else:
            logger.warning(
                "Sync run ended %s: reason=%s after %d events (%d matched)",
                run.state.value,
                run.reason,
                run.events_scanned,
                run.meetings_matched,
            )

        event = self._event(run, TERMINAL_EVENT_TYPES[run.state])
        emit(event)
        await self._record(run, event.type)

    def _event(self, run: SyncRun, event_type: ProgressEventType) -> SyncProgressEvent:
        terminal = event_type in TERMINAL_EVENT_TYPES.values()
        return SyncProgressEvent(
            type=event_type,
            run_id=run.run_id,
            connection_id=run.connection_id,
            state=run.state,
            page=run.page,
            events_scanned=run.events_scanned,
            meetings_matched=run.meetings_matched,
            meetings_written=run.meetings_written,
            errors=run.errors,
            last_analyst_name=run.last_analyst_name,
            month=run.month,
            month_events=run.month_events if run.month else None,
            month_matches=run.month_matches if run.month else None,
            message=_describe(run, event_type),
            reason=run.reason if terminal else None,
            error_type=run.error_type if terminal else None,
            needs_reconnect=run.needs_reconnect,
            partial_count=_stored_count(run) if terminal and not _succeeded(run) else None,
        )

    async def _record(self, run: SyncRun, event_type: ProgressEventType) -> None:
        if self._progress_log is None:
            return
        try:
            await self._progress_log.record(
                connection_id=run.connection_id,
                run_id=run.run_id,
                event_type=event_type.value,
                state=run.state.value,
                month=run.month,
                message=_describe(run, event_type),
                events_scanned=run.events_scanned,
                meetings_matched=run.meetings_matched,
                errors=run.errors,
            )
        except Exception:
            # Progress rows are advisory; the run itself must not fail on them.
            logger.warning("Could not persist sync progress row", exc_info=True)

    def _outcome(self, run: SyncRun) -> SyncOutcome:
        return SyncOutcome(
            run_id=run.run_id,
            connection_id=run.connection_id,
            state=run.state,
            events_scanned=run.events_scanned,
            meetings_matched=run.meetings_matched,
            meetings_written=run.meetings_written,
            errors=run.errors,
            reason=run.reason,
            error_type=run.error_type,
            needs_reconnect=run.needs_reconnect,
            window=run.window,
        )


def _succeeded(run: SyncRun) -> bool:
    return run.state is SyncState.COMPLETED


def _stored_count(run: SyncRun) -> int:
    """Matched meetings now persisted, whether this run wrote them or they were unchanged."""
    return run.meetings_matched - run.errors


def _self_addresses(connection: Connection) -> tuple[list[str], list[str]]:
    """The connected account's own address and (non free-mail) domain."""
    emails = [connection.account_email]
    domain = email_domain(connection.account_email)
    domains = [domain] if domain and domain not in PUBLIC_EMAIL_DOMAINS else []
    return emails, domains


def _describe(run: SyncRun, event_type: ProgressEventType) -> str:
    match event_type:
        case ProgressEventType.MONTH_STARTED:
            return f"Scanning {run.month}"
        case ProgressEventType.MONTH_RESULT:
            return f"{run.month}: {run.month_matches} of {run.month_events} events matched"
        case ProgressEventType.PROGRESS:
            return f"{run.events_scanned} events scanned, {run.meetings_matched} briefings found"
        case ProgressEventType.COMPLETE:
            return (
                f"Sync complete: {run.meetings_matched} briefings found in "
                f"{run.events_scanned} events"
            )
        case ProgressEventType.CANCELLED:
            return f"Sync cancelled after {run.events_scanned} events"
        case ProgressEventType.TIMED_OUT:
            return f"Sync timed out after {run.events_scanned} events"
        case ProgressEventType.ERROR:
            return f"Sync failed: {run.reason}"
        case _:
            return f"Sync {run.state.value.replace('_', ' ')}"
