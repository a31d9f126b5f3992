"""Operator endpoints for individual calendars and webhook health."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from calmirror.api.deps import get_services, require_cron_secret
from calmirror.api.models import NotificationResponse
from calmirror.errors import CalendarNotFoundError
from calmirror.models import WebhookStats
from calmirror.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["calendars"], dependencies=[Depends(require_cron_secret)])


@router.post("/calendars/{calendar_id}/sync", response_model=None)
async def sync_calendar(calendar_id: str, services: Services = Depends(get_services)) -> dict:
    """Run the windowed initial sync for one calendar."""
    entry = await services.store.get_calendar(calendar_id)
    if entry is None:
        raise CalendarNotFoundError(calendar_id)
    processed = await services.engine.perform_initial_sync(entry.calendar, entry.account)
    return NotificationResponse(
        message="Calendar synced",
        events_processed=processed,
    ).model_dump(by_alias=True)


@router.get("/webhooks/stats", response_model=WebhookStats)
async def webhook_stats(services: Services = Depends(get_services)) -> WebhookStats:
    return await services.webhooks.get_stats()
