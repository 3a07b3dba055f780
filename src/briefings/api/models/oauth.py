"""Pydantic models for the Google Calendar connect flow."""

from __future__ import annotations

from pydantic import BaseModel


class OAuthStartResponse(BaseModel):
    """Authorization URL the browser should visit to grant calendar access."""

    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    message: str = "Calendar connected."
    provider: str = "google"
    connection_id: str
    email: str
    calendar_name: str
    created: bool


class OAuthCallbackError(BaseModel):
    """Error payload returned when the OAuth callback fails.

    ``error_code`` is stable and safe to show; provider detail is never echoed.
    """

    success: bool = False
    error_code: str
    message: str
    provider: str = "google"
