"""Briefings API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds settings, logging, telemetry, the Postgres
  pool, the shared HTTP client and the sync service, and tears them down
- An optional background scheduler that syncs every active connection
- Health endpoint at GET /api/health
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from briefings import __version__
from briefings.api.deps import wire_dependencies
from briefings.api.middleware import register_error_handlers
from briefings.api.routers.calendar import router as calendar_router
from briefings.api.routers.oauth import router as oauth_router
from briefings.config import Settings, load_settings
from briefings.core.logging import configure_logging
from briefings.core.metrics import init_metrics
from briefings.core.telemetry import init_telemetry
from briefings.db import Database
from briefings.service import CalendarSyncService

logger = logging.getLogger(__name__)

SERVICE_NAME = "briefings"


@asynccontextmanager
async def _service_lifespan(app: FastAPI):
    """Own the full runtime: settings, DB pool, HTTP client, service and scheduler."""
    settings: Settings = app.state.settings or load_settings()
    configure_logging(settings.logging.level, settings.logging.format)
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)

    db = Database.from_env()
    pool = await db.connect()
    http_client = httpx.AsyncClient(timeout=settings.sync.http_timeout_seconds)
    service = CalendarSyncService.from_pool(settings, pool, http_client)
    wire_dependencies(app, service, settings)

    stop_event = asyncio.Event()
    scheduler: asyncio.Task | None = None
    if settings.sync.poll_interval_minutes > 0:
        scheduler = asyncio.create_task(
            service.run_scheduler(settings.sync.poll_interval_minutes, stop_event),
            name="briefings-sync-scheduler",
        )
    logger.info("Briefings API started (environment=%s)", settings.environment)

    try:
        yield
    finally:
        stop_event.set()
        if scheduler is not None:
            scheduler.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scheduler
        await service.shutdown()
        await http_client.aclose()
        await db.close()
        logger.info("Briefings API stopped")


@asynccontextmanager
async def _static_lifespan(app: FastAPI):
    """Lifespan for an app built around a caller-supplied service (tests, embedding)."""
    yield
    await app.state.service.shutdown()


def create_app(
    settings: Settings | None = None,
    service: CalendarSyncService | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    settings:
        Process settings. Loaded from the environment at startup when omitted.
    service:
        A ready-made sync service. When given, the lifespan does not touch
        the database or the network and *settings* is required.
    cors_origins:
        Allowed CORS origins. Defaults to the configured origins.
    """
    if service is not None and settings is None:
        raise ValueError("settings are required when a service is supplied")

    app = FastAPI(
        title="Briefings Calendar Sync API",
        version=__version__,
        lifespan=_static_lifespan if service is not None else _service_lifespan,
    )
    app.router.redirect_slashes = False
    app.state.settings = settings
    app.state.service = service

    if cors_origins is None:
        cors_origins = list(settings.cors_origins) if settings else ["http://localhost:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    if service is not None:
        wire_dependencies(app, service, settings)

    app.include_router(oauth_router)
    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
