"""Error taxonomy for calendar sync and analyst matching.

Every error raised by the sync core derives from ``BriefingsError`` so the
HTTP layer and the reconciler can classify failures without string matching.
"""

from __future__ import annotations


class BriefingsError(Exception):
    """Base class for all briefings errors."""


class ConfigurationError(BriefingsError):
    """Raised when required configuration is missing, malformed, or invalid."""


class TokenDecryptionError(BriefingsError):
    """Raised when stored ciphertext cannot be decrypted with the current key."""


class TokenExchangeError(BriefingsError):
    """Raised when Google rejects an authorization code or the exchange call fails.

    ``error_code`` is a stable identifier surfaced to the OAuth callback
    redirect (``token_exchange_failed``, ``no_access_token``,
    ``user_info_failed``, ``no_user_email``).
    """

    def __init__(self, message: str, *, error_code: str = "token_exchange_failed") -> None:
        self.error_code = error_code
        super().__init__(message)


class ReauthorizationRequiredError(BriefingsError):
    """Raised when a connection can no longer refresh its tokens.

    The user must reconnect the calendar account through the OAuth flow.
    """

    def __init__(self, connection_id: str, reason: str) -> None:
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Connection {connection_id} needs to be reconnected: {reason}")


class TokenRefreshError(BriefingsError):
    """Raised when a token refresh fails for a transient reason (network, 5xx)."""


class InvalidOAuthStateError(BriefingsError):
    """Raised when an OAuth callback carries an unknown, expired, or reused state."""


class EventFetchError(BriefingsError):
    """Raised when Google Calendar events cannot be fetched after retries."""

    def __init__(
        self,
        message: str,
        *,
        events_yielded: int = 0,
        status_code: int | None = None,
    ) -> None:
        self.events_yielded = events_yielded
        self.status_code = status_code
        super().__init__(message)


class SyncAlreadyRunningError(BriefingsError):
    """Raised when a sync is requested for a connection with one already in flight."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Sync already in progress for connection {connection_id}")


class SyncTimeoutError(BriefingsError):
    """Raised when a sync run exceeds its overall time ceiling."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Sync run exceeded {timeout_seconds:.0f}s")


class ConnectionNotFoundError(BriefingsError):
    """Raised when a calendar connection id does not exist."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Calendar connection not found: {connection_id}")


class MeetingWriteError(BriefingsError):
    """Raised when a single meeting upsert fails."""

    def __init__(self, external_event_id: str, cause: Exception | None = None) -> None:
        self.external_event_id = external_event_id
        self.cause = cause
        msg = f"Failed to write meeting for event {external_event_id}"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)
