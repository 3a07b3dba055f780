"""Pydantic models for calendar connection, sync and meeting endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, model_validator

from briefings.models import Connection, Meeting
from briefings.sync.window import WindowPolicy


class ConnectionResponse(BaseModel):
    """A calendar connection as shown to its owner. Token material is never included."""

    id: str
    title: str
    account_email: str
    is_active: bool
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    sync_running: bool = False

    @classmethod
    def from_connection(
        cls, connection: Connection, *, sync_running: bool = False
    ) -> ConnectionResponse:
        return cls(
            id=connection.id,
            title=connection.title,
            account_email=connection.account_email,
            is_active=connection.is_active,
            last_sync_at=connection.last_sync_at,
            created_at=connection.created_at,
            updated_at=connection.updated_at,
            sync_running=sync_running,
        )


class ConnectionUpdate(BaseModel):
    is_active: bool | None = None
    title: str | None = None

    @model_validator(mode="after")
    def _require_one_field(self) -> ConnectionUpdate:
        if self.is_active is None and self.title is None:
            raise ValueError("Provide is_active and/or title")
        return self


class SyncRequest(BaseModel):
    """Window policy for a sync run; omitted fields fall back to the server default."""

    window: Literal["future", "all", "custom"] | None = None
    start: date | datetime | None = None
    end: date | datetime | None = None

    def to_policy(self) -> WindowPolicy | None:
        if self.window is None:
            if self.start is not None or self.end is not None:
                return WindowPolicy.custom(self.start, self.end)
            return None
        if self.window == "custom":
            return WindowPolicy("custom", self.start, self.end)
        return WindowPolicy.from_name(self.window)


class SyncStartResponse(BaseModel):
    run_id: str
    connection_id: str
    window: str
    events_url: str


class SyncCancelResponse(BaseModel):
    connection_id: str
    cancelled: bool


class MeetingResponse(BaseModel):
    id: str
    external_event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    attendees: list[str]
    analyst_id: str | None = None
    match_confidence: float
    tags: list[str]

    @classmethod
    def from_meeting(cls, meeting: Meeting) -> MeetingResponse:
        return cls(
            id=meeting.id,
            external_event_id=meeting.external_event_id,
            title=meeting.title,
            start_time=meeting.start_time,
            end_time=meeting.end_time,
            attendees=meeting.attendees,
            analyst_id=meeting.analyst_id,
            match_confidence=meeting.match_confidence,
            tags=meeting.tags,
        )
