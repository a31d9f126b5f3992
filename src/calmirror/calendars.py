"""Registering and retiring calendars for mirroring."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from calmirror.errors import CalendarNotFoundError, classify_error, redact_credentials
from calmirror.models import Calendar, WebhookChannel
from calmirror.provider import CalendarProvider
from calmirror.storage import SyncStore
from calmirror.webhooks import WebhookManager

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY_CALENDAR_NAME = "Primary Calendar"


class CalendarServiceError(RuntimeError):
    """Base error for calendar registration; ``code`` is safe to return to clients."""

    code = "CALENDAR_ERROR"


class AccountNotFoundError(CalendarServiceError):
    code = "ACCOUNT_NOT_FOUND"


class MissingRefreshTokenError(CalendarServiceError):
    code = "NO_REFRESH_TOKEN"


class PrimaryCalendarNotFoundError(CalendarServiceError):
    code = "PRIMARY_CALENDAR_NOT_FOUND"


class CalendarAlreadyAddedError(CalendarServiceError):
    code = "CALENDAR_ALREADY_ADDED"


class AddCalendarResult(BaseModel):
    calendar: Calendar
    webhook: WebhookChannel | None = None
    webhook_error: str | None = None


class CalendarService:
    """Adds an account's primary calendar and deactivates calendars."""

    def __init__(
        self,
        store: SyncStore,
        provider: CalendarProvider,
        webhooks: WebhookManager,
    ) -> None:
        self._store = store
        self._provider = provider
        self._webhooks = webhooks

    async def add_primary_calendar(self, account_id: str) -> AddCalendarResult:
        """Register the account's primary calendar and open its push channel.

        A channel setup failure is reported in the result; the calendar stays
        registered and the renewal sweep can retry later.

        Raises
        ------
        AccountNotFoundError
            If *account_id* is unknown.
        MissingRefreshTokenError
            If the account must re-consent before it can be used offline.
        PrimaryCalendarNotFoundError
            If the calendar list has no primary entry.
        CalendarAlreadyAddedError
            If the primary calendar is already registered.
        """
        account = await self._store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        if not account.refresh_token:
            raise MissingRefreshTokenError(
                "The Google account needs to be re-authenticated to grant offline access"
            )

        calendars = await self._provider.list_calendars(account)
        primary = next((entry for entry in calendars if entry.primary), None)
        if primary is None:
            raise PrimaryCalendarNotFoundError("Primary calendar not found")

        if await self._store.find_calendar(account.id, primary.id) is not None:
            raise CalendarAlreadyAddedError("Calendar already added")

        calendar = await self._store.insert_calendar(
            account_id=account.id,
            provider_calendar_id=primary.id,
            calendar_name=primary.summary or DEFAULT_PRIMARY_CALENDAR_NAME,
        )
        logger.info("Added calendar %s for account %s", calendar.id, account.id)

        result = AddCalendarResult(calendar=calendar)
        try:
            result.webhook = await self._webhooks.setup_webhook(account, calendar)
        except Exception as exc:
            error = classify_error(exc)
            result.webhook_error = redact_credentials(error.message)
            logger.warning(
                "Webhook setup failed for new calendar %s (calendar kept): %s",
                calendar.id,
                error.kind,
            )
        return result

    async def deactivate_calendar(self, calendar_id: str) -> Calendar:
        """Stop mirroring a calendar; its record and ledger rows are kept."""
        entry = await self._store.get_calendar(calendar_id)
        if entry is None:
            raise CalendarNotFoundError(calendar_id)

        await self._webhooks.remove_webhook(entry.account, entry.calendar)
        await self._store.set_calendar_active(calendar_id, False)
        entry.calendar.is_active = False
        logger.info("Deactivated calendar %s", calendar_id)
        return entry.calendar
