"""Google OAuth 2.0 connector.

Covers the three token operations the sync core needs:

- building the consent URL and exchanging the returned authorization code,
- keeping a connection's access token fresh using its stored refresh token,
- reading the identity of the account that granted access.

The connector is constructed from an explicit ``GoogleOAuthSettings`` and a
shared ``httpx.AsyncClient``; nothing here reads the process environment.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from briefings.config import GoogleOAuthSettings
from briefings.core.metrics import sync_metrics
from briefings.errors import (
    ReauthorizationRequiredError,
    TokenDecryptionError,
    TokenExchangeError,
    TokenRefreshError,
)
from briefings.google.common import (
    GOOGLE_AUTH_URL,
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    coerce_expires_in_seconds,
    google_error_code,
    safe_google_error_message,
)
from briefings.models import Connection
from briefings.vault import TokenVault

if TYPE_CHECKING:
    from briefings.storage.connections import ConnectionStore

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN_SECONDS = 60

# Refresh responses with these statuses mean the grant itself is dead.
_REAUTH_STATUS_CODES = {400, 401}


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expiry: datetime
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<redacted>, "
            f"refresh_token={'<redacted>' if self.refresh_token else None}, "
            f"expiry={self.expiry.isoformat()!r}, scope={self.scope!r})"
        )


@dataclass(frozen=True)
class AccountIdentity:
    email: str
    external_account_id: str
    display_name: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OAuthConnector:
    """Authorization-code exchange, token refresh and identity lookup for Google."""

    def __init__(
        self,
        settings: GoogleOAuthSettings,
        http_client: httpx.AsyncClient,
        vault: TokenVault,
        connections: ConnectionStore,
        *,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._http = http_client
        self._vault = vault
        self._connections = connections
        self._margin = timedelta(seconds=safety_margin_seconds)
        self._clock = clock
        # Entries vanish once no caller holds or waits on the lock.
        self._refresh_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def vault(self) -> TokenVault:
        return self._vault

    # ------------------------------------------------------------------
    # Consent + code exchange
    # ------------------------------------------------------------------

    def build_authorization_url(self, state: str, scopes: Sequence[str] | None = None) -> str:
        params = {
            "client_id": self._settings.client_id,
            "redirect_uri": self._settings.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes or self._settings.scopes),
            "access_type": "offline",
            "include_granted_scopes": "true",
            # Without an explicit consent prompt Google omits the refresh token on re-grants.
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for tokens.

        Raises
        ------
        TokenExchangeError
            When Google rejects the code or the request fails in transit.
        """
        try:
            response = await self._http.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self._settings.client_id,
                    "client_secret": self._settings.client_secret,
                    "redirect_uri": self._settings.redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Token exchange request failed: {exc}") from exc

        if response.status_code != 200:
            raise TokenExchangeError(
                f"Token exchange failed ({response.status_code}): "
                f"{safe_google_error_message(response)}"
            )
        payload = _json_object(response)
        if payload is None:
            raise TokenExchangeError("Token endpoint returned invalid JSON")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenExchangeError(
                "Token response did not include an access token", error_code="no_access_token"
            )
        return self._grant_from_payload(payload)

    # ------------------------------------------------------------------
    # Access-token freshness
    # ------------------------------------------------------------------

    def _is_fresh(self, connection: Connection) -> bool:
        if connection.token_expiry is None:
            return False
        return self._clock() < connection.token_expiry - self._margin

    async def ensure_valid_token(
        self, connection: Connection, *, force_refresh: bool = False
    ) -> str:
        """Return a usable access token for *connection*, refreshing it if needed.

        A refreshed token and expiry are persisted through the connection
        store before returning. A connection without a stored expiry is
        treated as expired.

        Raises
        ------
        ReauthorizationRequiredError
            No refresh token is stored, it cannot be decrypted, or Google
            rejected it. The user must reconnect.
        TokenRefreshError
            The refresh failed for a transient reason.
        """
        if not force_refresh and self._is_fresh(connection):
            return self._decrypt_access_token(connection)

        lock = self._refresh_locks.get(connection.id)
        if lock is None:
            lock = self._refresh_locks[connection.id] = asyncio.Lock()
        async with lock:
            # Another coroutine may have refreshed (or rotated tokens) while we waited.
            connection = await self._connections.get(connection.id)
            if not force_refresh and self._is_fresh(connection):
                return self._decrypt_access_token(connection)

            if not connection.refresh_token_encrypted:
                sync_metrics.token_refresh("reauth_required")
                raise ReauthorizationRequiredError(connection.id, "no refresh token stored")
            try:
                refresh_token = self._vault.decrypt(connection.refresh_token_encrypted)
            except TokenDecryptionError as exc:
                sync_metrics.token_refresh("reauth_required")
                raise ReauthorizationRequiredError(
                    connection.id, "stored refresh token is unreadable"
                ) from exc

            grant = await self._refresh(connection.id, refresh_token)
            await self._connections.update_tokens(
                connection.id,
                access_token_encrypted=self._vault.encrypt(grant.access_token),
                token_expiry=grant.expiry,
                refresh_token_encrypted=(
                    self._vault.encrypt(grant.refresh_token) if grant.refresh_token else None
                ),
            )
            sync_metrics.token_refresh("success")
            logger.info(
                "Refreshed access token for connection %s (expires %s)",
                connection.id,
                grant.expiry.isoformat(),
            )
            return grant.access_token

    def _decrypt_access_token(self, connection: Connection) -> str:
        try:
            return self._vault.decrypt(connection.access_token_encrypted)
        except TokenDecryptionError as exc:
            raise ReauthorizationRequiredError(
                connection.id, "stored access token is unreadable"
            ) from exc

    async def _refresh(self, connection_id: str, refresh_token: str) -> TokenGrant:
        try:
            response = await self._http.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._settings.client_id,
                    "client_secret": self._settings.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            sync_metrics.token_refresh("transient_error")
            raise TokenRefreshError(f"Token refresh request failed: {exc}") from exc

        if response.status_code in _REAUTH_STATUS_CODES:
            sync_metrics.token_refresh("reauth_required")
            reason = google_error_code(response) or safe_google_error_message(response)
            logger.warning(
                "Google rejected refresh token for connection %s (%d): %s",
                connection_id,
                response.status_code,
                reason,
            )
            raise ReauthorizationRequiredError(connection_id, reason)
        if response.status_code != 200:
            sync_metrics.token_refresh("transient_error")
            raise TokenRefreshError(
                f"Token refresh failed ({response.status_code}): "
                f"{safe_google_error_message(response)}"
            )

        payload = _json_object(response)
        access_token = payload.get("access_token") if payload else None
        if not isinstance(access_token, str) or not access_token.strip():
            sync_metrics.token_refresh("transient_error")
            raise TokenRefreshError("Token refresh response is missing an access_token")
        return self._grant_from_payload(payload)

    def _grant_from_payload(self, payload: dict[str, Any]) -> TokenGrant:
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None
        scope = payload.get("scope")
        return TokenGrant(
            access_token=str(payload["access_token"]).strip(),
            refresh_token=refresh_token,
            expiry=self._clock()
            + timedelta(seconds=coerce_expires_in_seconds(payload.get("expires_in"))),
            scope=scope if isinstance(scope, str) else None,
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def fetch_account_identity(self, access_token: str) -> AccountIdentity:
        """Read the email and stable id of the Google account behind *access_token*."""
        try:
            response = await self._http.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise TokenExchangeError(
                f"User info request failed: {exc}", error_code="user_info_failed"
            ) from exc
        if response.status_code != 200:
            raise TokenExchangeError(
                f"User info request failed ({response.status_code}): "
                f"{safe_google_error_message(response)}",
                error_code="user_info_failed",
            )
        payload = _json_object(response) or {}
        email = payload.get("email")
        if not isinstance(email, str) or not email.strip():
            raise TokenExchangeError(
                "Google account has no email address", error_code="no_user_email"
            )
        account_id = payload.get("id")
        name = payload.get("name")
        return AccountIdentity(
            email=email.strip().lower(),
            external_account_id=str(account_id) if account_id else email.strip().lower(),
            display_name=name if isinstance(name, str) and name.strip() else None,
        )

    async def fetch_calendar_title(
        self, access_token: str, calendar_id: str = "primary"
    ) -> str | None:
        """Return the calendar's summary, or None when it cannot be read."""
        try:
            response = await self._http.get(
                f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{calendar_id}",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Could not read calendar %s title: %s", calendar_id, exc)
            return None
        if response.status_code != 200:
            logger.warning(
                "Could not read calendar %s title (%d): %s",
                calendar_id,
                response.status_code,
                safe_google_error_message(response),
            )
            return None
        summary = (_json_object(response) or {}).get("summary")
        return summary.strip() if isinstance(summary, str) and summary.strip() else None


def _json_object(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None
