"""Inbound Google Calendar push notifications."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header

from calmirror.api.deps import get_services
from calmirror.api.models import MessageResponse, NotificationResponse
from calmirror.models import PushNotification
from calmirror.services import Services
from calmirror.webhooks import WEBHOOK_PATH

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


@router.post(WEBHOOK_PATH, response_model=None)
async def receive_calendar_notification(
    x_goog_channel_id: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
    x_goog_resource_id: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> dict:
    """Acknowledge the ``sync`` handshake or run an incremental pass.

    A missing channel header yields 400 and an unknown channel 404, both
    through the registered exception handlers.
    """
    notification = PushNotification(
        channel_id=x_goog_channel_id,
        resource_state=x_goog_resource_state,
        resource_id=x_goog_resource_id,
    )
    logger.info(
        "Push notification: channel=%s state=%s",
        notification.channel_id,
        notification.resource_state,
    )
    result = await services.engine.handle_notification(notification)

    if result.ignored and result.calendar_id is None:
        return MessageResponse(message="Sync message received").model_dump()
    if result.ignored:
        return NotificationResponse(message="Calendar is inactive").model_dump(by_alias=True)
    return NotificationResponse(
        message="Webhook processed",
        events_processed=result.events_processed,
    ).model_dump(by_alias=True)
