"""Tests for sync window resolution."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from briefings.sync.window import ALL_HISTORY_START, WindowPolicy, add_months, resolve_window

pytestmark = pytest.mark.unit

NOW = datetime(2025, 3, 10, 15, 30, tzinfo=UTC)


class TestResolveWindow:
    def test_future_starts_at_start_of_today(self):
        window = resolve_window(WindowPolicy.future(), NOW)
        assert window.start == datetime(2025, 3, 10, tzinfo=UTC)
        assert window.end == datetime(2025, 9, 10, 15, 30, tzinfo=UTC)

    def test_all_starts_at_fixed_history_start(self):
        window = resolve_window(WindowPolicy.all(), NOW)
        assert window.start == ALL_HISTORY_START == datetime(2024, 1, 1, tzinfo=UTC)
        assert window.end == datetime(2025, 9, 10, 15, 30, tzinfo=UTC)

    def test_custom_date_bounds_cover_whole_end_day(self):
        window = resolve_window(WindowPolicy.custom(date(2025, 1, 1), date(2025, 1, 31)), NOW)
        assert window.start == datetime(2025, 1, 1, tzinfo=UTC)
        assert window.end == datetime(2025, 2, 1, tzinfo=UTC) - timedelta(microseconds=1)

    def test_custom_datetime_bounds_converted_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        window = resolve_window(
            WindowPolicy.custom(
                datetime(2025, 1, 1, 10, 0, tzinfo=plus_two),
                datetime(2025, 1, 2, 10, 0),
            ),
            NOW,
        )
        assert window.start == datetime(2025, 1, 1, 8, 0, tzinfo=UTC)
        assert window.end == datetime(2025, 1, 2, 10, 0, tzinfo=UTC)

    def test_custom_start_after_end_rejected(self):
        with pytest.raises(ValueError, match="start must be before end"):
            resolve_window(WindowPolicy.custom(date(2025, 2, 1), date(2025, 1, 1)), NOW)

    def test_custom_missing_bound_rejected(self):
        with pytest.raises(ValueError, match="requires both start and end"):
            resolve_window(WindowPolicy("custom", start=date(2025, 1, 1)), NOW)

    def test_naive_now_treated_as_utc(self):
        window = resolve_window(WindowPolicy.future(), NOW.replace(tzinfo=None))
        assert window.start == datetime(2025, 3, 10, tzinfo=UTC)


class TestWindowPolicy:
    def test_from_name(self):
        assert WindowPolicy.from_name("future") == WindowPolicy.future()
        assert WindowPolicy.from_name("all").kind == "all"

    def test_from_name_unknown(self):
        with pytest.raises(ValueError, match="Unknown sync window policy"):
            WindowPolicy.from_name("custom")

    def test_describe(self):
        assert WindowPolicy.future().describe() == "future"
        policy = WindowPolicy.custom(date(2025, 1, 1), date(2025, 1, 2))
        assert policy.describe() == "custom(2025-01-01..2025-01-02)"


class TestAddMonths:
    def test_clamps_to_month_end(self):
        assert add_months(datetime(2025, 8, 31, tzinfo=UTC), 6) == datetime(
            2026, 2, 28, tzinfo=UTC
        )

    def test_crosses_year(self):
        assert add_months(datetime(2025, 11, 15, tzinfo=UTC), 3) == datetime(
            2026, 2, 15, tzinfo=UTC
        )
