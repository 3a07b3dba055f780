"""Shared fixtures and in-memory test doubles for the briefings test suite.

The doubles mirror the observable behavior of the Postgres-backed stores,
the OAuth connector and the event fetcher closely enough to drive the sync
reconciler and the service end to end without a database or network.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta

import pytest

from briefings.config import GoogleOAuthSettings, Settings
from briefings.errors import ConnectionNotFoundError, EventFetchError, MeetingWriteError
from briefings.google.events import EventPage, RawEvent, TimeWindow
from briefings.google.oauth import AccountIdentity, TokenGrant
from briefings.models import Connection, KnownAnalyst, Meeting, MeetingRecord, UpsertOutcome
from briefings.service import CalendarSyncService
from briefings.storage.progress import ProgressRow
from briefings.sync.reconciler import SyncReconciler
from briefings.vault import TokenVault

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


class _AsyncCM:
    """Simple async context manager wrapper returning a fixed value."""

    def __init__(self, value):
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *args):
        return False


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_connection(**overrides) -> Connection:
    values = {
        "id": str(uuid.uuid4()),
        "user_id": "user-1",
        "title": "Work calendar",
        "account_email": "me@acme.com",
        "external_account_id": "google-123",
        "access_token_encrypted": "enc-access",
        "refresh_token_encrypted": "enc-refresh",
        "token_expiry": NOW + timedelta(hours=1),
        "is_active": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return Connection(**values)


def make_event(
    event_id: str,
    attendees: list[str],
    *,
    start: datetime | None = None,
    title: str | None = None,
    updated_at: datetime | None = None,
    all_day: bool = False,
) -> RawEvent:
    start = start or NOW + timedelta(days=1)
    return RawEvent(
        external_id=event_id,
        title=title or f"Meeting {event_id}",
        start=start,
        end=start + timedelta(minutes=30),
        attendee_emails=attendees,
        all_day=all_day,
        updated_at=updated_at or NOW - timedelta(days=1),
    )


# ---------------------------------------------------------------------------
# In-memory doubles
# ---------------------------------------------------------------------------


class FakeConnectionStore:
    def __init__(self, *connections: Connection) -> None:
        self.rows: dict[str, Connection] = {c.id: c for c in connections}
        self.token_updates: list[dict] = []

    def add(self, connection: Connection) -> Connection:
        self.rows[connection.id] = connection
        return connection

    async def get(self, connection_id: str) -> Connection:
        try:
            return self.rows[connection_id]
        except KeyError:
            raise ConnectionNotFoundError(connection_id) from None

    async def get_by_account(self, user_id: str, external_account_id: str) -> Connection | None:
        for c in self.rows.values():
            if c.user_id == user_id and c.external_account_id == external_account_id:
                return c
        return None

    async def list_for_user(self, user_id: str, *, include_inactive: bool = True):
        return [
            c
            for c in self.rows.values()
            if c.user_id == user_id and (include_inactive or c.is_active)
        ]

    async def list_active(self) -> list[Connection]:
        return [c for c in self.rows.values() if c.is_active]

    async def upsert_from_grant(
        self,
        *,
        user_id,
        external_account_id,
        account_email,
        title,
        access_token_encrypted,
        refresh_token_encrypted,
        token_expiry,
    ) -> Connection:
        existing = await self.get_by_account(user_id, external_account_id)
        if existing is None:
            return self.add(
                make_connection(
                    user_id=user_id,
                    external_account_id=external_account_id,
                    account_email=account_email,
                    title=title or account_email,
                    access_token_encrypted=access_token_encrypted,
                    refresh_token_encrypted=refresh_token_encrypted,
                    token_expiry=token_expiry,
                )
            )
        updated = existing.model_copy(
            update={
                "account_email": account_email,
                "title": title or existing.title,
                "access_token_encrypted": access_token_encrypted,
                "refresh_token_encrypted": (
                    refresh_token_encrypted or existing.refresh_token_encrypted
                ),
                "token_expiry": token_expiry,
                "is_active": True,
            }
        )
        return self.add(updated)

    async def update_tokens(
        self,
        connection_id,
        *,
        access_token_encrypted,
        token_expiry,
        refresh_token_encrypted=None,
    ) -> None:
        current = await self.get(connection_id)
        self.token_updates.append(
            {
                "access_token_encrypted": access_token_encrypted,
                "token_expiry": token_expiry,
                "refresh_token_encrypted": refresh_token_encrypted,
            }
        )
        self.rows[connection_id] = current.model_copy(
            update={
                "access_token_encrypted": access_token_encrypted,
                "token_expiry": token_expiry,
                "refresh_token_encrypted": (
                    refresh_token_encrypted or current.refresh_token_encrypted
                ),
            }
        )

    async def set_active(self, connection_id: str, active: bool) -> Connection:
        current = await self.get(connection_id)
        return self.add(current.model_copy(update={"is_active": active}))

    async def rename(self, connection_id: str, title: str) -> Connection:
        if not title.strip():
            raise ValueError("title must be a non-empty string")
        current = await self.get(connection_id)
        return self.add(current.model_copy(update={"title": title.strip()}))

    async def record_sync_completion(self, connection_id: str, completed_at: datetime) -> None:
        current = await self.get(connection_id)
        self.rows[connection_id] = current.model_copy(update={"last_sync_at": completed_at})

    async def delete(self, connection_id: str) -> None:
        await self.get(connection_id)
        del self.rows[connection_id]


class FakeMeetingStore:
    """Applies the same insert / update-if-newer-or-better rule as the SQL upsert."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], Meeting] = {}
        self.fail_on: set[str] = set()
        self.outcomes: list[UpsertOutcome] = []

    async def upsert(self, record: MeetingRecord) -> UpsertOutcome:
        if record.external_event_id in self.fail_on:
            raise MeetingWriteError(record.external_event_id, RuntimeError("db down"))
        key = (record.connection_id, record.external_event_id)
        existing = self.rows.get(key)
        if existing is None:
            self.rows[key] = Meeting(id=str(uuid.uuid4()), **record.model_dump())
            outcome = UpsertOutcome.INSERTED
        elif _is_improvement(existing, record):
            self.rows[key] = Meeting(id=existing.id, **record.model_dump())
            outcome = UpsertOutcome.UPDATED
        else:
            outcome = UpsertOutcome.UNCHANGED
        self.outcomes.append(outcome)
        return outcome

    async def list_for_connection(self, connection_id: str, *, limit: int = 500):
        rows = [m for (cid, _), m in self.rows.items() if cid == connection_id]
        return sorted(rows, key=lambda m: m.start_time, reverse=True)[:limit]


def _is_improvement(existing: Meeting, record: MeetingRecord) -> bool:
    if record.source_updated_at is not None:
        previous = existing.source_updated_at
        if previous is None or record.source_updated_at > previous:
            return True
    return record.match_confidence > existing.match_confidence


class FakeAnalystDirectory:
    def __init__(self, analysts: list[KnownAnalyst]) -> None:
        self.analysts = analysts
        self.calls = 0

    async def load_active(self) -> list[KnownAnalyst]:
        self.calls += 1
        return list(self.analysts)


class FakeProgressLog:
    def __init__(self, *, fail: bool = False) -> None:
        self.rows: list[dict] = []
        self.fail = fail

    async def record(self, **kwargs) -> int:
        if self.fail:
            raise RuntimeError("progress table unavailable")
        self.rows.append(kwargs)
        return len(self.rows)

    async def list_since(self, connection_id, since_id=None, *, limit=200):
        rows = [
            ProgressRow(id=n, **row)
            for n, row in enumerate(self.rows, start=1)
            if row["connection_id"] == connection_id and n > (since_id or 0)
        ]
        return rows[:limit]


class FakeOAuth:
    """Stands in for ``OAuthConnector``; token calls are scripted per test."""

    def __init__(self, vault: TokenVault | None = None) -> None:
        self.vault = vault or TokenVault("test-secret")
        self.ensure_calls: list[bool] = []
        self.ensure_error: Exception | None = None
        self.grant = TokenGrant(
            access_token="new-access",
            refresh_token="new-refresh",
            expiry=NOW + timedelta(hours=1),
        )
        self.identity = AccountIdentity(email="me@acme.com", external_account_id="google-123")
        self.calendar_title: str | None = "Acme Work"
        self.exchange_error: Exception | None = None

    async def ensure_valid_token(self, connection, *, force_refresh: bool = False) -> str:
        self.ensure_calls.append(force_refresh)
        if self.ensure_error is not None:
            raise self.ensure_error
        return "refreshed-access" if force_refresh else "access-token"

    def build_authorization_url(self, state: str, scopes=None) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.grant

    async def fetch_account_identity(self, access_token: str) -> AccountIdentity:
        return self.identity

    async def fetch_calendar_title(self, access_token: str, calendar_id: str = "primary"):
        return self.calendar_title


class FakeFetcher:
    """Yields scripted pages; can block on a gate or fail after some pages."""

    def __init__(
        self,
        pages: list[list[RawEvent]],
        *,
        fail_after: int | None = None,
        gate: asyncio.Event | None = None,
        on_page: Callable[[int], None] | None = None,
    ) -> None:
        self.pages = pages
        self.fail_after = fail_after
        self.gate = gate
        self.on_page = on_page
        self.pages_served = 0
        self.closed = False
        self.windows: list[TimeWindow] = []

    async def fetch_pages(
        self, access_token, calendar_id, window, *, token_refresher=None
    ) -> AsyncIterator[EventPage]:
        self.windows.append(window)
        yielded = 0
        try:
            for number, events in enumerate(self.pages, start=1):
                if self.gate is not None:
                    await self.gate.wait()
                if self.fail_after is not None and number > self.fail_after:
                    raise EventFetchError(
                        "Calendar API request failed (503) after 4 attempts",
                        events_yielded=yielded,
                        status_code=503,
                    )
                self.pages_served += 1
                if self.on_page is not None:
                    self.on_page(number)
                yielded += len(events)
                yield EventPage(number=number, events=list(events))
        finally:
            self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def analysts() -> list[KnownAnalyst]:
    return [
        KnownAnalyst(
            id="an-sarah",
            first_name="Sarah",
            last_name="Chen",
            email="sarah.chen@gartner.com",
            company="Gartner",
            company_domain="gartner.com",
        ),
        KnownAnalyst(
            id="an-jane",
            first_name="Jane",
            last_name="Doe",
            email="jane.doe@forrester.com",
            company="Forrester",
        ),
    ]


@pytest.fixture
def connection() -> Connection:
    return make_connection()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        google=GoogleOAuthSettings(
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="http://localhost:8000/api/oauth/google/callback",
        ),
        environment="test",
        encryption_key="test-secret",
    )


@pytest.fixture
def vault() -> TokenVault:
    return TokenVault("test-secret")


@pytest.fixture
def make_pool() -> Callable:
    """Return a factory building a mocked asyncpg pool around a connection mock."""
    from unittest.mock import MagicMock

    def _make_pool(conn):
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=_AsyncCM(conn))
        return pool

    return _make_pool


def make_service(
    *connections: Connection,
    analysts: list[KnownAnalyst] | None = None,
    fetcher: FakeFetcher | None = None,
    progress_log: FakeProgressLog | None = None,
) -> CalendarSyncService:
    """Build a real service and reconciler over the in-memory doubles."""
    store = FakeConnectionStore(*connections)
    meetings = FakeMeetingStore()
    oauth = FakeOAuth()
    log = progress_log or FakeProgressLog()
    reconciler = SyncReconciler(
        connections=store,
        meetings=meetings,
        analysts=FakeAnalystDirectory(analysts or []),
        oauth=oauth,
        fetcher=fetcher or FakeFetcher([[]]),
        progress_log=log,
        clock=lambda: NOW,
    )
    return CalendarSyncService(
        connections=store,
        meetings=meetings,
        oauth=oauth,
        reconciler=reconciler,
        progress_log=log,
    )
