"""Analyst matching: decide whether a calendar event is a tracked briefing.

Matching is a pure function of one event and a point-in-time snapshot of the
known analysts:

1. An attendee whose email is exactly a known analyst's email is a HIGH
   confidence match (1.0). Attendees are examined in list order and the first
   hit wins.
2. Otherwise an attendee whose email domain belongs to a tracked analyst's
   firm is a MEDIUM confidence match (0.5). When several analysts share the
   domain, the one whose name fits the attendee's mailbox (``sarah.chen``)
   is preferred, then the first by last name, first name and id.
3. No overlap means no match.

Free-mail domains and the connected account's own addresses and domain never
produce a domain match.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from briefings.google.events import RawEvent
from briefings.models import KnownAnalyst, MatchKind

HIGH_CONFIDENCE = 1.0
MEDIUM_CONFIDENCE = 0.5

BRIEFING_TAG = "analyst-briefing"

PUBLIC_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "outlook.com",
        "hotmail.com",
        "live.com",
        "msn.com",
        "yahoo.com",
        "icloud.com",
        "me.com",
        "mac.com",
        "aol.com",
        "proton.me",
        "protonmail.com",
        "gmx.com",
        "zoho.com",
        "fastmail.com",
        # Calendar-generated addresses (rooms, groups) are never a firm domain.
        "group.calendar.google.com",
        "resource.calendar.google.com",
    }
)

_NAME_CHARS = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class MatchResult:
    analyst_id: str
    confidence: float
    kind: MatchKind
    matched_email: str
    analyst_name: str
    company: str | None = None

    def tags(self) -> list[str]:
        tags = [BRIEFING_TAG, f"match:{self.kind.value}"]
        if self.company:
            tags.append(f"company:{self.company}")
        return tags


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    normalized = value.strip().lower()
    if normalized.startswith("mailto:"):
        normalized = normalized[len("mailto:") :]
    if normalized.count("@") != 1:
        return None
    local, domain = normalized.split("@")
    if not local or not domain:
        return None
    return normalized


def email_domain(email: str | None) -> str | None:
    normalized = normalize_email(email)
    return normalized.split("@", 1)[1] if normalized else None


def normalize_domain(value: str | None) -> str | None:
    if not value:
        return None
    domain = value.strip().lower().lstrip("@")
    if domain.startswith("www."):
        domain = domain[4:]
    return domain or None


def _name_key(value: str) -> str:
    return _NAME_CHARS.sub("", value.lower())


def _mailbox_matches_name(local_part: str, analyst: KnownAnalyst) -> bool:
    first = _name_key(analyst.first_name)
    last = _name_key(analyst.last_name)
    if not first or not last:
        return False
    candidates = {
        f"{first}.{last}",
        f"{first}_{last}",
        f"{first}-{last}",
        f"{first}{last}",
        f"{first[0]}{last}",
        f"{first[0]}.{last}",
    }
    return local_part in candidates


def _sort_key(analyst: KnownAnalyst) -> tuple[str, str, str]:
    return (analyst.last_name.lower(), analyst.first_name.lower(), analyst.id)


class AnalystIndex:
    """Exact-email and company-domain lookups over a set of known analysts."""

    def __init__(self, analysts: Iterable[KnownAnalyst]) -> None:
        self.by_email: dict[str, KnownAnalyst] = {}
        self.by_domain: dict[str, list[KnownAnalyst]] = {}
        ordered = sorted(analysts, key=_sort_key)
        for analyst in ordered:
            email = normalize_email(analyst.email)
            if email is not None:
                self.by_email.setdefault(email, analyst)
            domain = normalize_domain(analyst.company_domain) or email_domain(analyst.email)
            if domain and domain not in PUBLIC_EMAIL_DOMAINS:
                self.by_domain.setdefault(domain, []).append(analyst)
        self._count = len(ordered)

    def __len__(self) -> int:
        return self._count

    def best_at_domain(self, domain: str, local_part: str) -> KnownAnalyst | None:
        candidates = self.by_domain.get(domain)
        if not candidates:
            return None
        for analyst in candidates:
            if _mailbox_matches_name(local_part, analyst):
                return analyst
        return candidates[0]


def match(
    event: RawEvent,
    analysts: AnalystIndex,
    *,
    ignore_emails: Sequence[str] = (),
    ignore_domains: Sequence[str] = (),
) -> MatchResult | None:
    """Return the primary analyst match for *event*, or None."""
    ignored_emails = {e for e in (normalize_email(x) for x in ignore_emails) if e}
    ignored_domains = {d for d in (normalize_domain(x) for x in ignore_domains) if d}

    attendees: list[str] = []
    for raw in event.attendee_emails:
        email = normalize_email(raw)
        if email is None or email in ignored_emails or email in attendees:
            continue
        attendees.append(email)

    for email in attendees:
        analyst = analysts.by_email.get(email)
        if analyst is not None:
            return MatchResult(
                analyst_id=analyst.id,
                confidence=HIGH_CONFIDENCE,
                kind=MatchKind.EXACT_EMAIL,
                matched_email=email,
                analyst_name=analyst.full_name or email,
                company=analyst.company,
            )

    for email in attendees:
        local_part, domain = email.split("@", 1)
        if domain in PUBLIC_EMAIL_DOMAINS or domain in ignored_domains:
            continue
        analyst = analysts.best_at_domain(domain, local_part)
        if analyst is not None:
            return MatchResult(
                analyst_id=analyst.id,
                confidence=MEDIUM_CONFIDENCE,
                kind=MatchKind.DOMAIN,
                matched_email=email,
                analyst_name=analyst.full_name or email,
                company=analyst.company,
            )

    return None
