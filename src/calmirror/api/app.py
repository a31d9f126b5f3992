"""HTTP application factory.

The app exposes the Google push endpoint, the two cron triggers and a few
operator endpoints.  Services are built in the lifespan unless the caller
passes a ready ``Services`` instance (tests do).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from calmirror.api.middleware import register_error_handlers
from calmirror.api.routers.calendars import router as calendars_router
from calmirror.api.routers.cron import router as cron_router
from calmirror.api.routers.webhook import router as webhook_router
from calmirror.config import AppConfig
from calmirror.services import Services, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service graph on startup and close it on shutdown."""
    owned = app.state.services is None
    if owned:
        app.state.services = await build_services(app.state.config)
        logger.info("Services initialized")

    yield

    if owned:
        await app.state.services.aclose()
        app.state.services = None


def create_app(
    config: AppConfig | None = None,
    services: Services | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Used to build services at startup.  Ignored when *services* is given.
    services:
        Pre-built services; the app will not close them on shutdown.
    """
    if config is None and services is None:
        raise ValueError("create_app() needs a config or prebuilt services")

    app = FastAPI(
        title="calmirror",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = services.config if services is not None else config
    app.state.services = services

    register_error_handlers(app)

    app.include_router(webhook_router)
    app.include_router(cron_router)
    app.include_router(calendars_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
