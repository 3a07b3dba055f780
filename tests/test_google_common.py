"""Tests for shared Google helpers: error extraction, redaction, timestamps."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import httpx
import pytest

from briefings.google.common import (
    coerce_expires_in_seconds,
    google_error_code,
    google_rfc3339,
    parse_google_datetime,
    safe_google_error_message,
    sanitize_error,
)

pytestmark = pytest.mark.unit


class TestErrorMessages:
    def test_api_error_message(self):
        response = httpx.Response(403, json={"error": {"code": 403, "message": "Rate  Limit\n"}})
        assert safe_google_error_message(response) == "Rate Limit"

    def test_oauth_error_with_description(self):
        response = httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token has been revoked."}
        )
        assert safe_google_error_message(response) == "invalid_grant: Token has been revoked."
        assert google_error_code(response) == "invalid_grant"

    def test_plain_text_truncated(self):
        response = httpx.Response(502, text="x" * 500)
        assert len(safe_google_error_message(response)) == 200

    def test_empty_body(self):
        assert safe_google_error_message(httpx.Response(500)) == (
            "Request failed without an error payload"
        )
        assert google_error_code(httpx.Response(500)) is None


class TestSanitizeError:
    def test_redacts_credentials(self):
        exc = RuntimeError(
            "refresh failed: refresh_token=1//abc client_secret=shh "
            'payload {"access_token": "ya29.zzz"} header Bearer ya29.yyy'
        )
        text = sanitize_error(exc)
        for secret in ("1//abc", "shh", "ya29.zzz", "ya29.yyy"):
            assert secret not in text
        assert "[REDACTED]" in text

    def test_empty_message_uses_type_name(self):
        assert sanitize_error(TimeoutError()) == "TimeoutError"


class TestTimestamps:
    def test_rfc3339_is_utc_z(self):
        value = datetime(2025, 3, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        assert google_rfc3339(value) == "2025-03-01T08:00:00Z"

    def test_parse_zulu(self):
        assert parse_google_datetime("2025-03-01T08:00:00.000Z") == datetime(
            2025, 3, 1, 8, 0, tzinfo=UTC
        )

    def test_parse_invalid(self):
        with pytest.raises(ValueError, match="invalid dateTime"):
            parse_google_datetime("yesterday")


@pytest.mark.parametrize(
    ("value", "expected"),
    [(1800, 1800), ("900", 900), (0, 3600), (None, 3600), (True, 3600), ("soon", 3600)],
)
def test_coerce_expires_in_seconds(value, expected):
    assert coerce_expires_in_seconds(value) == expected
