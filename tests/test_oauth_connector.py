"""Tests for the Google OAuth connector."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from conftest import NOW, FakeConnectionStore, make_connection

from briefings.config import GoogleOAuthSettings
from briefings.errors import ReauthorizationRequiredError, TokenExchangeError, TokenRefreshError
from briefings.google.common import GOOGLE_OAUTH_TOKEN_URL, GOOGLE_USERINFO_URL
from briefings.google.oauth import OAuthConnector

pytestmark = pytest.mark.unit

OAUTH_SETTINGS = GoogleOAuthSettings(
    client_id="cid",
    client_secret="secret",
    redirect_uri="http://localhost:8000/api/oauth/google/callback",
)


def _make_connector(
    handler: Callable[[httpx.Request], httpx.Response],
    vault,
    store: FakeConnectionStore | None = None,
) -> OAuthConnector:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OAuthConnector(
        OAUTH_SETTINGS,
        client,
        vault,
        store or FakeConnectionStore(),
        clock=lambda: NOW,
    )


def _token_handler(requests: list[httpx.Request], response: httpx.Response):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            return response
        return httpx.Response(500, json={"error": {"message": "unexpected request"}})

    return handler


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestAuthorizationUrl:
    def test_requests_offline_access_with_consent(self, vault):
        connector = _make_connector(lambda r: httpx.Response(500), vault)
        url = connector.build_authorization_url("state-123")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert parsed.netloc == "accounts.google.com"
        assert params["state"] == "state-123"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["response_type"] == "code"
        assert params["client_id"] == "cid"
        assert "calendar" in params["scope"]

    def test_explicit_scopes(self, vault):
        connector = _make_connector(lambda r: httpx.Response(500), vault)
        url = connector.build_authorization_url("s", scopes=["openid", "email"])
        assert parse_qs(urlparse(url).query)["scope"] == ["openid email"]


class TestExchangeCode:
    async def test_success(self, vault):
        requests: list[httpx.Request] = []
        connector = _make_connector(
            _token_handler(
                requests,
                httpx.Response(
                    200,
                    json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 1800},
                ),
            ),
            vault,
        )
        grant = await connector.exchange_code("auth-code")
        assert grant.access_token == "at-1"
        assert grant.refresh_token == "rt-1"
        assert grant.expiry == NOW + timedelta(seconds=1800)
        form = _form(requests[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code"

    async def test_rejected_code(self, vault):
        connector = _make_connector(
            _token_handler([], httpx.Response(400, json={"error": "invalid_grant"})), vault
        )
        with pytest.raises(TokenExchangeError) as exc_info:
            await connector.exchange_code("bad")
        assert exc_info.value.error_code == "token_exchange_failed"

    async def test_missing_access_token(self, vault):
        connector = _make_connector(
            _token_handler([], httpx.Response(200, json={"expires_in": 3600})), vault
        )
        with pytest.raises(TokenExchangeError) as exc_info:
            await connector.exchange_code("code")
        assert exc_info.value.error_code == "no_access_token"

    async def test_grant_repr_hides_tokens(self, vault):
        connector = _make_connector(
            _token_handler(
                [], httpx.Response(200, json={"access_token": "at-secret", "refresh_token": "rt"})
            ),
            vault,
        )
        grant = await connector.exchange_code("code")
        assert "at-secret" not in repr(grant)
        assert grant.expiry == NOW + timedelta(seconds=3600)


class TestEnsureValidToken:
    def _connection(self, vault, **overrides):
        values = {
            "access_token_encrypted": vault.encrypt("stored-access"),
            "refresh_token_encrypted": vault.encrypt("stored-refresh"),
        }
        values.update(overrides)
        return make_connection(**values)

    async def test_fresh_token_returned_without_network(self, vault):
        requests: list[httpx.Request] = []
        connection = self._connection(vault, token_expiry=NOW + timedelta(hours=1))
        connector = _make_connector(
            _token_handler(requests, httpx.Response(500)), vault, FakeConnectionStore(connection)
        )
        assert await connector.ensure_valid_token(connection) == "stored-access"
        assert requests == []

    async def test_expiring_token_refreshed_and_persisted(self, vault):
        requests: list[httpx.Request] = []
        connection = self._connection(vault, token_expiry=NOW + timedelta(seconds=30))
        store = FakeConnectionStore(connection)
        connector = _make_connector(
            _token_handler(
                requests, httpx.Response(200, json={"access_token": "new-at", "expires_in": 3600})
            ),
            vault,
            store,
        )
        assert await connector.ensure_valid_token(connection) == "new-at"
        assert _form(requests[0])["refresh_token"] == "stored-refresh"
        assert _form(requests[0])["grant_type"] == "refresh_token"
        update = store.token_updates[0]
        assert vault.decrypt(update["access_token_encrypted"]) == "new-at"
        assert update["token_expiry"] == NOW + timedelta(hours=1)
        assert update["refresh_token_encrypted"] is None

    async def test_missing_expiry_treated_as_expired(self, vault):
        requests: list[httpx.Request] = []
        connection = self._connection(vault, token_expiry=None)
        connector = _make_connector(
            _token_handler(requests, httpx.Response(200, json={"access_token": "new-at"})),
            vault,
            FakeConnectionStore(connection),
        )
        assert await connector.ensure_valid_token(connection) == "new-at"
        assert len(requests) == 1

    async def test_rotated_refresh_token_persisted(self, vault):
        connection = self._connection(vault, token_expiry=None)
        store = FakeConnectionStore(connection)
        connector = _make_connector(
            _token_handler(
                [], httpx.Response(200, json={"access_token": "a", "refresh_token": "rotated"})
            ),
            vault,
            store,
        )
        await connector.ensure_valid_token(connection)
        stored = store.rows[connection.id]
        assert vault.decrypt(stored.refresh_token_encrypted) == "rotated"

    async def test_force_refresh_ignores_fresh_expiry(self, vault):
        requests: list[httpx.Request] = []
        connection = self._connection(vault, token_expiry=NOW + timedelta(hours=1))
        connector = _make_connector(
            _token_handler(requests, httpx.Response(200, json={"access_token": "forced"})),
            vault,
            FakeConnectionStore(connection),
        )
        assert await connector.ensure_valid_token(connection, force_refresh=True) == "forced"
        assert len(requests) == 1

    async def test_invalid_grant_requires_reauthorization(self, vault):
        connection = self._connection(vault, token_expiry=None)
        connector = _make_connector(
            _token_handler(
                [],
                httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Token has been revoked."},
                ),
            ),
            vault,
            FakeConnectionStore(connection),
        )
        with pytest.raises(ReauthorizationRequiredError) as exc_info:
            await connector.ensure_valid_token(connection)
        assert exc_info.value.reason == "invalid_grant"
        assert exc_info.value.connection_id == connection.id

    async def test_server_error_is_transient(self, vault):
        connection = self._connection(vault, token_expiry=None)
        store = FakeConnectionStore(connection)
        connector = _make_connector(
            _token_handler([], httpx.Response(503, text="unavailable")), vault, store
        )
        with pytest.raises(TokenRefreshError):
            await connector.ensure_valid_token(connection)
        assert store.token_updates == []

    async def test_no_refresh_token_requires_reauthorization(self, vault):
        connection = self._connection(vault, token_expiry=None, refresh_token_encrypted=None)
        connector = _make_connector(
            _token_handler([], httpx.Response(500)), vault, FakeConnectionStore(connection)
        )
        with pytest.raises(ReauthorizationRequiredError, match="no refresh token"):
            await connector.ensure_valid_token(connection)

    async def test_undecryptable_refresh_token_requires_reauthorization(self, vault):
        connection = self._connection(
            vault, token_expiry=None, refresh_token_encrypted="not-a-fernet-token"
        )
        connector = _make_connector(
            _token_handler([], httpx.Response(500)), vault, FakeConnectionStore(connection)
        )
        with pytest.raises(ReauthorizationRequiredError, match="unreadable"):
            await connector.ensure_valid_token(connection)

    async def test_concurrent_callers_share_one_refresh(self, vault):
        requests: list[httpx.Request] = []
        connection = self._connection(vault, token_expiry=None)
        store = FakeConnectionStore(connection)
        connector = _make_connector(
            _token_handler(
                requests, httpx.Response(200, json={"access_token": "shared", "expires_in": 3600})
            ),
            vault,
            store,
        )
        results = await asyncio.gather(
            connector.ensure_valid_token(connection),
            connector.ensure_valid_token(connection),
        )
        assert results == ["shared", "shared"]
        assert len(requests) == 1

    async def test_refresh_lock_released_after_refresh(self, vault):
        connection = self._connection(vault, token_expiry=None)
        connector = _make_connector(
            _token_handler(
                [], httpx.Response(200, json={"access_token": "new", "expires_in": 3600})
            ),
            vault,
            FakeConnectionStore(connection),
        )

        await connector.ensure_valid_token(connection)

        assert connection.id not in connector._refresh_locks


class TestIdentity:
    async def test_fetch_account_identity(self, vault):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GOOGLE_USERINFO_URL
            assert request.headers["Authorization"] == "Bearer at"
            return httpx.Response(200, json={"id": "1234", "email": "Me@Acme.com", "name": "Me"})

        identity = await _make_connector(handler, vault).fetch_account_identity("at")
        assert identity.email == "me@acme.com"
        assert identity.external_account_id == "1234"
        assert identity.display_name == "Me"

    async def test_missing_email(self, vault):
        connector = _make_connector(lambda r: httpx.Response(200, json={"id": "1"}), vault)
        with pytest.raises(TokenExchangeError) as exc_info:
            await connector.fetch_account_identity("at")
        assert exc_info.value.error_code == "no_user_email"

    async def test_userinfo_failure(self, vault):
        connector = _make_connector(lambda r: httpx.Response(401), vault)
        with pytest.raises(TokenExchangeError) as exc_info:
            await connector.fetch_account_identity("at")
        assert exc_info.value.error_code == "user_info_failed"

    async def test_calendar_title(self, vault):
        connector = _make_connector(
            lambda r: httpx.Response(200, json={"summary": " Team Calendar "}), vault
        )
        assert await connector.fetch_calendar_title("at") == "Team Calendar"

    async def test_calendar_title_unavailable(self, vault):
        connector = _make_connector(lambda r: httpx.Response(403), vault)
        assert await connector.fetch_calendar_title("at") is None
