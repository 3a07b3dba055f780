"""Domain records shared by the stores, the matcher and the reconciler."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class Connection(BaseModel):
    """One authorized Google Calendar account bound to one internal user.

    Token fields hold vault ciphertext, never plaintext.
    """

    id: str
    user_id: str
    title: str
    account_email: str
    external_account_id: str
    access_token_encrypted: str
    refresh_token_encrypted: str | None = None
    token_expiry: datetime | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Connection(id={self.id!r}, user_id={self.user_id!r}, "
            f"account_email={self.account_email!r}, is_active={self.is_active!r})"
        )

    __str__ = __repr__


class KnownAnalyst(BaseModel):
    """A tracked industry analyst, as read from the analyst directory."""

    id: str
    first_name: str = ""
    last_name: str = ""
    email: str | None = None
    company: str | None = None
    company_domain: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part).strip()


class MatchKind(StrEnum):
    EXACT_EMAIL = "exact_email"
    DOMAIN = "domain"


class MeetingRecord(BaseModel):
    """A calendar event recognized as an analyst briefing, ready to upsert."""

    connection_id: str
    external_event_id: str
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    attendees: list[str] = Field(default_factory=list)
    analyst_id: str | None = None
    match_confidence: float = 0.0
    tags: list[str] = Field(default_factory=list)
    source_updated_at: datetime | None = None


class Meeting(MeetingRecord):
    """A persisted meeting row."""

    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UpsertOutcome(StrEnum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
