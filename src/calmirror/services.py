"""Process-wide service wiring.

``build_services`` creates the database pool, the shared HTTP client and every
manager exactly once; the result is handed to the HTTP app and the CLI jobs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from calmirror.calendars import CalendarService
from calmirror.config import AppConfig
from calmirror.db import Database
from calmirror.provider import CalendarProvider, GoogleCalendarProvider
from calmirror.storage import PostgresSyncStore, SyncStore
from calmirror.sync.engine import SyncEngine
from calmirror.tokens import TokenManager
from calmirror.webhooks import WebhookManager

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 30.0


@dataclass
class Services:
    """Everything a request handler or job needs."""

    config: AppConfig
    store: SyncStore
    tokens: TokenManager
    provider: CalendarProvider
    webhooks: WebhookManager
    engine: SyncEngine
    calendars: CalendarService
    http_client: httpx.AsyncClient
    db: Database | None = None

    async def aclose(self) -> None:
        await self.http_client.aclose()
        if self.db is not None:
            await self.db.close()
        logger.info("Services closed")


def wire_services(
    config: AppConfig,
    store: SyncStore,
    http_client: httpx.AsyncClient,
    *,
    db: Database | None = None,
) -> Services:
    """Assemble the managers around an existing store and HTTP client."""
    tokens = TokenManager(
        store,
        client_id=config.google.client_id,
        client_secret=config.google.client_secret,
        http_client=http_client,
    )
    provider = GoogleCalendarProvider(tokens, http_client)
    webhooks = WebhookManager(store, provider, base_url=config.server.base_url)
    engine = SyncEngine(
        store,
        provider,
        fanout_concurrency=config.sync.fanout_concurrency,
        initial_window_months=config.sync.initial_window_months,
    )
    return Services(
        config=config,
        store=store,
        tokens=tokens,
        provider=provider,
        webhooks=webhooks,
        engine=engine,
        calendars=CalendarService(store, provider, webhooks),
        http_client=http_client,
        db=db,
    )


async def build_services(config: AppConfig) -> Services:
    """Connect to the database and build the service graph."""
    db = Database.from_url(config.database.url)
    await db.connect()
    http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    services = wire_services(config, PostgresSyncStore(db), http_client, db=db)
    if services.webhooks.simulated:
        logger.warning(
            "Base URL %s is not publicly reachable; push channels will be simulated",
            config.server.base_url,
        )
    return services
