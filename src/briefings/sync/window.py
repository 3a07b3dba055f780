"""Sync window policies and their resolution to concrete time ranges."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Literal

from briefings.google.events import TimeWindow

HORIZON_MONTHS = 6
ALL_HISTORY_START = datetime(2024, 1, 1, tzinfo=UTC)

WindowKind = Literal["future", "all", "custom"]


@dataclass(frozen=True)
class WindowPolicy:
    """How far back and forward a sync should look.

    - ``future``: from the start of today until six months from now
    - ``all``: from 2024-01-01 until six months from now
    - ``custom``: caller-supplied bounds; a date-only end covers that whole day
    """

    kind: WindowKind = "future"
    start: date | datetime | None = None
    end: date | datetime | None = None

    @classmethod
    def future(cls) -> WindowPolicy:
        return cls("future")

    @classmethod
    def all(cls) -> WindowPolicy:
        return cls("all")

    @classmethod
    def custom(cls, start: date | datetime, end: date | datetime) -> WindowPolicy:
        return cls("custom", start, end)

    @classmethod
    def from_name(cls, name: str) -> WindowPolicy:
        if name == "future":
            return cls.future()
        if name == "all":
            return cls.all()
        raise ValueError(f"Unknown sync window policy: {name!r}")

    def describe(self) -> str:
        if self.kind != "custom":
            return self.kind
        return f"custom({self.start}..{self.end})"


def add_months(value: datetime, months: int) -> datetime:
    """Shift *value* by whole calendar months, clamping to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _start_bound(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    return datetime.combine(value, time.min, tzinfo=UTC)


def _end_bound(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    return datetime.combine(value, time.min, tzinfo=UTC) + timedelta(days=1, microseconds=-1)


def resolve_window(policy: WindowPolicy, now: datetime) -> TimeWindow:
    """Resolve *policy* against *now*.

    Raises ``ValueError`` when a custom range is incomplete or start is not
    before end.
    """
    now = _as_utc(now)
    horizon = add_months(now, HORIZON_MONTHS)
    if policy.kind == "future":
        return TimeWindow(datetime.combine(now.date(), time.min, tzinfo=UTC), horizon)
    if policy.kind == "all":
        return TimeWindow(ALL_HISTORY_START, horizon)
    if policy.kind == "custom":
        if policy.start is None or policy.end is None:
            raise ValueError("Custom sync window requires both start and end")
        return TimeWindow(_start_bound(policy.start), _end_bound(policy.end))
    raise ValueError(f"Unknown sync window policy: {policy.kind!r}")
