"""Google Calendar connect endpoints.

Two-leg OAuth 2.0 authorization-code flow:

  1. GET /api/oauth/google/start
     - Records the signed-in user, optional title and nonce under a random,
       single-use state token (TTL 10 min).
     - Redirects to Google's consent screen, or returns the URL as JSON
       (``?redirect=false``).

  2. GET /api/oauth/google/callback
     - Consumes the state; the user is taken from the state record only.
     - Exchanges the code, reads the account identity, and creates or updates
       the calendar connection with vault-encrypted tokens.
     - Redirects to the dashboard when one is configured, otherwise returns
       a JSON payload.

Failures surface a stable ``error_code`` (``google_auth_denied``,
``missing_auth_params``, ``invalid_state``, ``token_exchange_failed``,
``no_access_token``, ``user_info_failed``, ``no_user_email``,
``oauth_callback_failed``); provider detail is never echoed.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from briefings.api.deps import _get_service, _get_settings, get_current_user_id
from briefings.api.models.oauth import (
    OAuthCallbackError,
    OAuthCallbackSuccess,
    OAuthStartResponse,
)
from briefings.config import Settings
from briefings.errors import BriefingsError, InvalidOAuthStateError, TokenExchangeError
from briefings.google.common import sanitize_error
from briefings.service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])

_ERROR_MESSAGES = {
    "google_auth_denied": "Calendar access was not granted.",
    "missing_auth_params": "The callback is missing its authorization code or state.",
    "invalid_state": "The connect request is invalid or expired. Please start again.",
    "token_exchange_failed": "Could not complete authorization with Google. Please start again.",
    "no_access_token": "Google did not return an access token. Please start again.",
    "user_info_failed": "Could not read the Google account profile.",
    "no_user_email": "The Google account has no email address.",
    "oauth_callback_failed": "Connecting the calendar failed. Please try again.",
}


def _callback_error(settings: Settings, error_code: str) -> Response:
    if settings.dashboard_url:
        return RedirectResponse(
            url=f"{settings.dashboard_url}?{urlencode({'error': error_code})}",
            status_code=302,
        )
    message = _ERROR_MESSAGES.get(error_code, _ERROR_MESSAGES["oauth_callback_failed"])
    payload = OAuthCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=400, content=payload.model_dump())


@router.get(
    "/google/start",
    responses={
        200: {"model": OAuthStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to Google authorization URL"},
    },
)
async def oauth_google_start(
    title: str | None = Query(default=None, description="Display name for the connection."),
    nonce: str | None = Query(default=None, description="Opaque client correlation value."),
    connect_first: bool = Query(
        default=True,
        description="Redirect back with the new connection's details so it can be named.",
    ),
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to Google. If false, return the URL as JSON.",
    ),
    user_id: str = Depends(get_current_user_id),
    service: CalendarSyncService = Depends(_get_service),
) -> Response:
    """Begin connecting a Google Calendar for the signed-in user."""
    start = service.start_oauth_flow(
        user_id, title=title, nonce=nonce, connect_first=connect_first
    )
    if redirect:
        return RedirectResponse(url=start.authorization_url, status_code=302)
    return JSONResponse(
        content=OAuthStartResponse(
            authorization_url=start.authorization_url,
            state=start.state,
        ).model_dump()
    )


@router.get("/google/callback")
async def oauth_google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="State token issued by /start."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    service: CalendarSyncService = Depends(_get_service),
    settings: Settings = Depends(_get_settings),
) -> Response:
    """Finish the connect flow Google redirected back to."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        if state:
            # Burn the state so a denied flow cannot be replayed.
            service.state_store.consume(state)
        return _callback_error(settings, "google_auth_denied")

    if not code or not state:
        return _callback_error(settings, "missing_auth_params")

    try:
        completion = await service.complete_oauth_flow(code, state)
    except InvalidOAuthStateError:
        logger.warning("OAuth callback received invalid or expired state token")
        return _callback_error(settings, "invalid_state")
    except TokenExchangeError as exc:
        logger.warning("Google OAuth exchange failed (%s): %s", exc.error_code, sanitize_error(exc))
        return _callback_error(settings, exc.error_code)
    except BriefingsError as exc:
        logger.error("Google OAuth callback failed: %s", sanitize_error(exc))
        return _callback_error(settings, "oauth_callback_failed")

    connection = completion.connection
    logger.info(
        "Google Calendar connected: connection=%s account=%s created=%s",
        connection.id,
        connection.account_email,
        completion.created,
    )

    if settings.dashboard_url:
        params = {"success": "calendar_connected"}
        if completion.flow.connect_first:
            params |= {
                "connectionId": connection.id,
                "email": connection.account_email,
                "calendarName": connection.title,
            }
        return RedirectResponse(
            url=f"{settings.dashboard_url}?{urlencode(params)}", status_code=302
        )

    return JSONResponse(
        content=OAuthCallbackSuccess(
            connection_id=connection.id,
            email=connection.account_email,
            calendar_name=connection.title,
            created=completion.created,
        ).model_dump()
    )
