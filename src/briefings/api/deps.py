"""FastAPI dependencies for the briefings API.

Routers depend on the ``_get_service`` / ``_get_settings`` stubs defined here;
``wire_dependencies()`` points them at the live objects at startup, and tests
override them the same way through ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import Header, HTTPException

from briefings.config import Settings
from briefings.service import CalendarSyncService

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


def _get_service() -> CalendarSyncService:
    """Stub replaced at startup by ``wire_dependencies()``."""
    raise RuntimeError("CalendarSyncService not initialized; call wire_dependencies() first")


def _get_settings() -> Settings:
    """Stub replaced at startup by ``wire_dependencies()``."""
    raise RuntimeError("Settings not initialized; call wire_dependencies() first")


def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """Identity of the signed-in user, as asserted by the upstream auth layer."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id.strip()


def wire_dependencies(app: FastAPI, service: CalendarSyncService, settings: Settings) -> None:
    """Bind the router-level stubs to *service* and *settings*."""
    app.dependency_overrides[_get_service] = lambda: service
    app.dependency_overrides[_get_settings] = lambda: settings
    logger.debug("API dependencies wired")
