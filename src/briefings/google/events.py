"""Paged retrieval of Google Calendar events for a bounded time window.

``EventFetcher.fetch_pages`` walks ``events.list`` page by page, yielding each
page as soon as it arrives so callers can process and checkpoint between
pages. Transient failures (rate limits, 5xx, transport errors) are retried
with exponential backoff up to a fixed cap; a 401 triggers one forced token
refresh when the caller supplies a refresher.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from briefings.core.metrics import sync_metrics
from briefings.errors import EventFetchError
from briefings.google.common import (
    GOOGLE_CALENDAR_API_BASE_URL,
    google_rfc3339,
    parse_google_datetime,
    safe_google_error_message,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_PAGE_SIZE = 250
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
MAX_RETRY_AFTER_SECONDS = 60.0
UNTITLED_EVENT = "(untitled)"

TokenRefresher = Callable[[], Awaitable[str]]


@dataclass(frozen=True)
class TimeWindow:
    """Half-open [start, end) interval in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeWindow bounds must be timezone-aware")
        if self.start >= self.end:
            raise ValueError("Invalid date range: start must be before end")


class RawEvent(BaseModel):
    """One calendar event as reported by Google, trimmed to what matching needs."""

    external_id: str
    title: str = UNTITLED_EVENT
    description: str | None = None
    start: datetime
    end: datetime
    attendee_emails: list[str] = Field(default_factory=list)
    all_day: bool = False
    updated_at: datetime | None = None
    status: str = "confirmed"


@dataclass
class EventPage:
    number: int
    events: list[RawEvent] = field(default_factory=list)
    skipped: int = 0


# ---------------------------------------------------------------------------
# Item parsing
# ---------------------------------------------------------------------------


def _parse_event_boundary(payload: Any) -> tuple[datetime, bool]:
    """Return (instant, all_day) for a Google ``start``/``end`` object."""
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event is missing start/end")
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_google_datetime(date_time), False
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        parsed = date.fromisoformat(date_value.strip())
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC), True
    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _extract_attendee_emails(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    emails: list[str] = []
    for attendee in payload:
        if not isinstance(attendee, dict) or attendee.get("resource") is True:
            continue
        email = attendee.get("email")
        if isinstance(email, str) and email.strip():
            emails.append(email.strip())
    return emails


def google_item_to_raw_event(item: Any) -> RawEvent | None:
    """Convert one ``events.list`` item. Returns None for cancelled events.

    Raises ``ValueError`` for malformed items.
    """
    if not isinstance(item, dict):
        raise ValueError("Google Calendar event item is not an object")
    event_id = item.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        raise ValueError("Google Calendar event is missing an id")
    status = item.get("status") if isinstance(item.get("status"), str) else "confirmed"
    if status == "cancelled":
        return None

    start, all_day = _parse_event_boundary(item.get("start"))
    end, _ = _parse_event_boundary(item.get("end"))
    if end < start:
        raise ValueError(f"Google Calendar event {event_id} ends before it starts")

    summary = item.get("summary")
    description = item.get("description")
    updated = item.get("updated")
    return RawEvent(
        external_id=event_id,
        title=summary.strip() if isinstance(summary, str) and summary.strip() else UNTITLED_EVENT,
        description=description if isinstance(description, str) and description else None,
        start=start,
        end=end,
        attendee_emails=_extract_attendee_emails(item.get("attendees")),
        all_day=all_day,
        updated_at=parse_google_datetime(updated) if isinstance(updated, str) and updated else None,
        status=status,
    )


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class EventFetcher:
    """Pages through ``calendars/{id}/events`` with retry and backoff."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self._page_size = page_size
        self._max_retries = max_retries
        self._backoff_base = backoff_base_seconds
        self._sleep = sleep

    async def fetch_pages(
        self,
        access_token: str,
        calendar_id: str,
        window: TimeWindow,
        *,
        token_refresher: TokenRefresher | None = None,
    ) -> AsyncIterator[EventPage]:
        """Yield pages of events in *window*, oldest first.

        Each call starts from the first page. Raises ``EventFetchError`` with
        ``events_yielded`` set when a page cannot be retrieved.
        """
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='@.')}/events"
        base_params: dict[str, Any] = {
            "timeMin": google_rfc3339(window.start),
            "timeMax": google_rfc3339(window.end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "false",
            "maxResults": self._page_size,
        }
        token = access_token
        page_token: str | None = None
        page_number = 0
        yielded = 0

        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token
            response, token = await self._get_with_retry(
                url, params, token, token_refresher, yielded
            )
            try:
                payload = response.json()
            except ValueError as exc:
                raise EventFetchError(
                    "Google Calendar returned invalid JSON",
                    events_yielded=yielded,
                    status_code=response.status_code,
                ) from exc
            if not isinstance(payload, dict):
                raise EventFetchError(
                    "Google Calendar returned an unexpected payload",
                    events_yielded=yielded,
                    status_code=response.status_code,
                )

            page_number += 1
            page = EventPage(number=page_number)
            for item in payload.get("items") or []:
                try:
                    event = google_item_to_raw_event(item)
                except ValueError as exc:
                    page.skipped += 1
                    logger.debug("Skipping malformed calendar item: %s", exc)
                    continue
                if event is None:
                    page.skipped += 1
                    continue
                page.events.append(event)

            yielded += len(page.events)
            yield page

            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token

    async def fetch_events(
        self,
        access_token: str,
        calendar_id: str,
        window: TimeWindow,
        *,
        token_refresher: TokenRefresher | None = None,
    ) -> AsyncIterator[RawEvent]:
        """Lazily yield every event in *window* across all pages."""
        async for page in self.fetch_pages(
            access_token, calendar_id, window, token_refresher=token_refresher
        ):
            for event in page.events:
                yield event

    async def _get_with_retry(
        self,
        url: str,
        params: dict[str, Any],
        token: str,
        token_refresher: TokenRefresher | None,
        yielded: int,
    ) -> tuple[httpx.Response, str]:
        attempt = 0
        refreshed = False
        while True:
            try:
                response = await self._http.get(
                    url, params=params, headers={"Authorization": f"Bearer {token}"}
                )
            except httpx.TransportError as exc:
                if attempt >= self._max_retries:
                    raise EventFetchError(
                        f"Calendar API unreachable after {attempt + 1} attempts: {exc}",
                        events_yielded=yielded,
                    ) from exc
                await self._backoff(attempt, reason=type(exc).__name__)
                attempt += 1
                continue

            if response.status_code == 401:
                if token_refresher is None or refreshed:
                    raise EventFetchError(
                        "Calendar API rejected the access token",
                        events_yielded=yielded,
                        status_code=401,
                    )
                logger.info("Calendar API returned 401; refreshing access token once")
                token = await token_refresher()
                refreshed = True
                continue

            if response.status_code in RETRYABLE_STATUS_CODES:
                if attempt >= self._max_retries:
                    raise EventFetchError(
                        f"Calendar API request failed ({response.status_code}) after "
                        f"{attempt + 1} attempts: {safe_google_error_message(response)}",
                        events_yielded=yielded,
                        status_code=response.status_code,
                    )
                await self._backoff(
                    attempt,
                    reason=str(response.status_code),
                    retry_after=_retry_after_seconds(response),
                )
                attempt += 1
                continue

            if response.status_code >= 400:
                raise EventFetchError(
                    f"Calendar API request failed ({response.status_code}): "
                    f"{safe_google_error_message(response)}",
                    events_yielded=yielded,
                    status_code=response.status_code,
                )
            return response, token

    async def _backoff(
        self, attempt: int, *, reason: str, retry_after: float | None = None
    ) -> None:
        delay = retry_after if retry_after is not None else self._backoff_base * (2**attempt)
        logger.warning(
            "Calendar API transient failure (%s), retrying in %.1fs (attempt %d/%d)",
            reason,
            delay,
            attempt + 1,
            self._max_retries,
        )
        sync_metrics.fetch_retry(reason)
        await self._sleep(delay)


def _retry_after_seconds(response: httpx.Response) -> float | None:
    if response.status_code != 429:
        return None
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        return min(max(float(header), 0.0), MAX_RETRY_AFTER_SECONDS)
    except ValueError:
        return None
