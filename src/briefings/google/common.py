"""Helpers shared by the Google OAuth and Calendar clients."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

import httpx

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

_MAX_ERROR_LENGTH = 200
_SECRET_KEYS = r"client_secret|refresh_token|access_token|id_token|code|token"


def coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or 3600
    return 3600


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, whitespace-normalized error message from a Google response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:_MAX_ERROR_LENGTH]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            text = error_payload
            if isinstance(description, str) and description.strip():
                text = f"{error_payload}: {description}"
            return " ".join(text.split())[:_MAX_ERROR_LENGTH]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:_MAX_ERROR_LENGTH]
    return "Request failed without an error payload"


def google_error_code(response: httpx.Response) -> str | None:
    """Return the OAuth ``error`` code (e.g. ``invalid_grant``) when present."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


def redact_credential_values(message: str) -> str:
    """Mask credential-looking values in a free-form error message."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error(exc: BaseException) -> str:
    """Render an exception as a short message safe to show to end users."""
    text = " ".join(str(exc).split()) or type(exc).__name__
    return redact_credential_values(text)[:_MAX_ERROR_LENGTH]


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
