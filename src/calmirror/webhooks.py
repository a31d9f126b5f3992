"""Push notification channel lifecycle.

Google push channels live for at most seven days.  ``WebhookManager`` opens
one channel per active calendar, persists the channel identifiers and expiry
together, and renews every channel that would expire within a day from the
scheduled sweep.

When the public base URL is not reachable from the internet (localhost,
``*.local``, loopback or private addresses) channels are simulated: synthetic
identifiers are returned and nothing is sent or persisted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import urlparse

from calmirror.config import is_production_url
from calmirror.core.metrics import sync_metrics
from calmirror.core.telemetry import sync_span
from calmirror.errors import redact_credentials
from calmirror.models import (
    Account,
    Calendar,
    CalendarWithAccount,
    FailureDetail,
    InvalidWebhook,
    WebhookChannel,
    WebhookRefreshResult,
    WebhookStats,
    WebhookValidation,
)
from calmirror.provider import CalendarProvider
from calmirror.retry import Sleep, run_in_batches
from calmirror.storage import SyncStore

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhook/calendar"
CHANNEL_LIFETIME = timedelta(days=7)
RENEWAL_THRESHOLD = timedelta(hours=24)
RENEWAL_BATCH_SIZE = 5
RENEWAL_BATCH_PAUSE_SECONDS = 1.0

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def webhook_callback_url(base_url: str) -> str:
    """Return the notification address for *base_url*: its origin plus the webhook path."""
    parsed = urlparse(base_url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid base URL: {base_url!r}")
    return f"{parsed.scheme}://{parsed.netloc}{WEBHOOK_PATH}"


def build_channel_id(calendar_id: str, now: datetime) -> str:
    return f"cal-{calendar_id}-{int(now.timestamp() * 1000)}"


class WebhookManager:
    """Creates, renews and tears down push channels."""

    def __init__(
        self,
        store: SyncStore,
        provider: CalendarProvider,
        *,
        base_url: str | None,
        clock: Clock = _utcnow,
        sleep: Sleep = asyncio.sleep,
        simulate: bool | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._base_url = base_url
        self._clock = clock
        self._sleep = sleep
        self._simulate = not is_production_url(base_url) if simulate is None else simulate

    @property
    def simulated(self) -> bool:
        return self._simulate

    async def setup_webhook(self, account: Account, calendar: Calendar) -> WebhookChannel:
        """Open a fresh channel for *calendar*, replacing any existing one."""
        now = self._clock()

        if self._simulate:
            logger.info(
                "Simulating webhook for calendar %s (base URL %s is not public)",
                calendar.id,
                self._base_url,
            )
            return WebhookChannel(
                channel_id=f"dev-channel-{uuid.uuid4()}",
                resource_id=f"dev-resource-{uuid.uuid4()}",
                expiration=now + CHANNEL_LIFETIME,
            )

        assert self._base_url is not None

        if calendar.has_webhook:
            await self._stop_channel_quietly(account, calendar)

        channel_id = build_channel_id(calendar.id, now)
        requested_expiration = now + CHANNEL_LIFETIME
        try:
            info = await self._provider.open_channel(
                account,
                calendar_id=calendar.calendar_id,
                channel_id=channel_id,
                address=webhook_callback_url(self._base_url),
                expiration=requested_expiration,
            )
        except Exception:
            sync_metrics.record_webhook_renewal(success=False)
            raise

        expiration = info.expiration or requested_expiration
        await self._store.set_webhook(
            calendar.id,
            channel_id=info.channel_id,
            resource_id=info.resource_id,
            expires_at=expiration,
        )
        calendar.webhook_channel_id = info.channel_id
        calendar.webhook_resource_id = info.resource_id
        calendar.webhook_expires_at = expiration

        sync_metrics.record_webhook_renewal(success=True)
        logger.info(
            "Webhook set up for calendar %s, expires at %s",
            calendar.id,
            expiration.isoformat(),
        )
        return WebhookChannel(
            channel_id=info.channel_id,
            resource_id=info.resource_id,
            expiration=expiration,
        )

    async def remove_webhook(self, account: Account, calendar: Calendar) -> None:
        """Stop the calendar's channel (best effort) and clear its webhook fields."""
        if calendar.has_webhook and not self._simulate:
            await self._stop_channel_quietly(account, calendar)
        await self._store.clear_webhook(calendar.id)
        calendar.webhook_channel_id = None
        calendar.webhook_resource_id = None
        calendar.webhook_expires_at = None
        logger.info("Webhook removed for calendar %s", calendar.id)

    @sync_span("refresh_webhooks")
    async def refresh_expiring_webhooks(self) -> WebhookRefreshResult:
        """Renew every active channel expiring within the renewal threshold."""
        deadline = self._clock() + RENEWAL_THRESHOLD
        expiring = await self._store.list_webhooks_expiring_before(deadline)
        if not expiring:
            logger.info("No expiring webhooks found")
            return WebhookRefreshResult()

        logger.info("Found %d expiring webhook(s)", len(expiring))

        async def renew(entry: CalendarWithAccount) -> WebhookChannel:
            return await self.setup_webhook(entry.account, entry.calendar)

        result = await run_in_batches(
            expiring,
            renew,
            batch_size=RENEWAL_BATCH_SIZE,
            pause=RENEWAL_BATCH_PAUSE_SECONDS,
            sleep=self._sleep,
        )

        for failure in result.failed:
            logger.error(
                "Failed to refresh webhook for calendar %s: %s",
                failure.item.calendar.id,
                failure.error.kind,
            )

        summary = WebhookRefreshResult(
            total=len(expiring),
            refreshed=len(result.successful),
            failed=[
                FailureDetail(
                    id=failure.item.calendar.id,
                    error=redact_credentials(failure.error.message),
                    kind=str(failure.error.kind),
                )
                for failure in result.failed
            ],
        )
        logger.info(
            "Webhook refresh completed: total=%d refreshed=%d failed=%d",
            summary.total,
            summary.refreshed,
            len(summary.failed),
        )
        return summary

    async def validate_all_webhooks(self) -> WebhookValidation:
        """Report webhook-bearing calendars whose expiry is missing or already past."""
        now = self._clock()
        calendars = await self._webhook_calendars()
        validation = WebhookValidation(total=len(calendars))
        for entry in calendars:
            expires_at = entry.calendar.webhook_expires_at
            if expires_at is None:
                validation.invalid.append(
                    InvalidWebhook(calendar_id=entry.calendar.id, reason="No expiration date")
                )
            elif expires_at < now:
                validation.invalid.append(
                    InvalidWebhook(
                        calendar_id=entry.calendar.id,
                        reason=f"Expired at {expires_at.isoformat()}",
                    )
                )
            else:
                validation.valid += 1
        return validation

    async def get_stats(self) -> WebhookStats:
        """Bucket webhook-bearing calendars by channel expiry; no provider calls."""
        now = self._clock()
        threshold = now + RENEWAL_THRESHOLD
        calendars = await self._webhook_calendars()
        stats = WebhookStats(total=len(calendars))
        for entry in calendars:
            expires_at = entry.calendar.webhook_expires_at
            if expires_at is None:
                continue
            if expires_at < now:
                stats.expired += 1
            elif expires_at < threshold:
                stats.expiring += 1
            else:
                stats.active += 1
        return stats

    async def _webhook_calendars(self) -> list[CalendarWithAccount]:
        calendars = await self._store.list_active_calendars()
        return [entry for entry in calendars if entry.calendar.has_webhook]

    async def _stop_channel_quietly(self, account: Account, calendar: Calendar) -> None:
        assert calendar.webhook_channel_id is not None
        assert calendar.webhook_resource_id is not None
        try:
            await self._provider.close_channel(
                account,
                channel_id=calendar.webhook_channel_id,
                resource_id=calendar.webhook_resource_id,
            )
            logger.info("Stopped webhook channel %s", calendar.webhook_channel_id)
        except Exception as exc:
            logger.warning(
                "Failed to stop webhook channel %s (continuing): %s",
                calendar.webhook_channel_id,
                redact_credentials(str(exc)),
            )
