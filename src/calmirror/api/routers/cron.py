"""Scheduled maintenance triggers.

Both endpoints are meant to be hit by an external scheduler and require
``Authorization: Bearer <cron_secret>``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from calmirror.api.deps import get_services, require_cron_secret
from calmirror.api.models import TokenRefreshResponse, WebhookRefreshResponse, WebhookStatsDelta
from calmirror.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


@router.get("/refresh-tokens", response_model=TokenRefreshResponse)
async def refresh_tokens(services: Services = Depends(get_services)) -> TokenRefreshResponse:
    summary = await services.tokens.refresh_expiring_accounts()
    logger.info(
        "Token refresh job: %d/%d refreshed, %d failed",
        summary.refreshed,
        summary.total,
        len(summary.failed),
    )
    return TokenRefreshResponse(message="Token refresh completed", results=summary)


@router.get("/refresh-webhooks", response_model=WebhookRefreshResponse)
async def refresh_webhooks(services: Services = Depends(get_services)) -> WebhookRefreshResponse:
    before = await services.webhooks.get_stats()
    results = await services.webhooks.refresh_expiring_webhooks()
    after = await services.webhooks.get_stats()
    logger.info(
        "Webhook renewal job: %d/%d renewed, %d failed",
        results.refreshed,
        results.total,
        len(results.failed),
    )
    return WebhookRefreshResponse(
        message="Webhook refresh completed",
        results=results,
        stats=WebhookStatsDelta(before=before, after=after),
    )
