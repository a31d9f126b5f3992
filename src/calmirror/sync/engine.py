"""Fan-out of source calendar changes to the user's other calendars.

For one changed source event the engine visits every other active calendar
of the same user and creates, patches or deletes the mirror there.  The
ledger (``sync_events``) maps each source event to its mirror per target and
makes repeated deliveries idempotent; the loop-prevention marker on every
mirror stops mirrors from being propagated again.
"""

from __future__ import annotations

import asyncio
import calendar as _calendar
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from calmirror.core.keyed import KeyedLock
from calmirror.core.metrics import sync_metrics
from calmirror.core.telemetry import sync_span
from calmirror.errors import (
    LedgerConflictError,
    SyncTokenExpiredError,
    UnknownChannelError,
    classify_error,
    redact_credentials,
)
from calmirror.models import (
    Account,
    Calendar,
    CalendarWithAccount,
    ChangeBatchResult,
    ChangeKind,
    EventPage,
    NotificationResult,
    ProviderEvent,
    PushNotification,
    SyncEvent,
    SyncEventResult,
    SyncLogEntry,
    SyncLogEventType,
    TargetOutcome,
    TargetStatus,
)
from calmirror.provider import CalendarProvider
from calmirror.storage import SyncStore, write_sync_log
from calmirror.sync.marker import build_mirror_body, is_sync_produced

logger = logging.getLogger(__name__)

DEFAULT_FANOUT_CONCURRENCY = 5
DEFAULT_INITIAL_WINDOW_MONTHS = 3
RESOURCE_STATE_SYNC = "sync"

LedgerKey = tuple[str, str, str]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, _calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class SyncEngine:
    """Propagates created, updated and deleted events across a user's calendars."""

    def __init__(
        self,
        store: SyncStore,
        provider: CalendarProvider,
        *,
        clock: Clock = _utcnow,
        fanout_concurrency: int = DEFAULT_FANOUT_CONCURRENCY,
        initial_window_months: int = DEFAULT_INITIAL_WINDOW_MONTHS,
    ) -> None:
        if fanout_concurrency < 1:
            raise ValueError("fanout_concurrency must be at least 1")
        self._store = store
        self._provider = provider
        self._clock = clock
        self._fanout_concurrency = fanout_concurrency
        self._initial_window_months = initial_window_months
        self._ledger_locks: KeyedLock[LedgerKey] = KeyedLock()
        self._calendar_locks: KeyedLock[str] = KeyedLock()

    # ------------------------------------------------------------------
    # Single event fan-out
    # ------------------------------------------------------------------

    async def sync_event(
        self,
        source_calendar: Calendar,
        source_account: Account,
        event: ProviderEvent | dict[str, Any],
        change: ChangeKind,
    ) -> SyncEventResult:
        """Mirror one source change onto every other active calendar of the user.

        Events carrying the loop-prevention marker return immediately with no
        provider calls and no writes.  Each target's failure is recorded in
        its own sync log entry and never stops the other targets.
        """
        if not isinstance(event, ProviderEvent):
            event = ProviderEvent.model_validate(event)
        change = ChangeKind(change)

        if is_sync_produced(event):
            logger.debug("Skipping synced copy %s (carries the sync marker)", event.id)
            return SyncEventResult(source_event_id=event.id, change=change, skipped_as_mirror=True)

        with sync_span("sync_event", calendar_id=source_calendar.id, change=str(change)):
            targets = await self._store.list_target_calendars(
                source_account.user_id, source_calendar.id
            )
            if not targets:
                logger.info(
                    "No target calendars for user %s; nothing to sync for event %s",
                    source_account.user_id,
                    event.id,
                )
                return SyncEventResult(source_event_id=event.id, change=change)

            logger.info(
                "Syncing %s event %s from calendar %s to %d target(s)",
                change,
                event.id,
                source_calendar.id,
                len(targets),
            )

            semaphore = asyncio.Semaphore(self._fanout_concurrency)

            async def run(target: CalendarWithAccount) -> TargetOutcome:
                async with semaphore:
                    return await self._sync_to_target(source_calendar, event, change, target)

            outcomes = await asyncio.gather(*(run(target) for target in targets))
            return SyncEventResult(source_event_id=event.id, change=change, targets=list(outcomes))

    async def _sync_to_target(
        self,
        source_calendar: Calendar,
        event: ProviderEvent,
        change: ChangeKind,
        target: CalendarWithAccount,
    ) -> TargetOutcome:
        target_name = target.calendar.display_name
        try:
            if change == ChangeKind.DELETED:
                outcome = await self._handle_deleted(source_calendar, event, target)
            elif change == ChangeKind.CREATED:
                outcome = await self._handle_created(source_calendar, event, target)
            else:
                outcome = await self._handle_updated(source_calendar, event, target)
        except Exception as exc:
            error = classify_error(exc)
            logger.error(
                "Error syncing event %s to %s: %s (%s)",
                event.id,
                target_name,
                redact_credentials(error.message),
                error.kind,
            )
            sync_metrics.record_propagation(str(change), TargetStatus.FAILED)
            details = error.to_dict()
            details["change"] = str(change)
            await write_sync_log(
                self._store,
                SyncLogEntry(
                    calendar_id=target.calendar.id,
                    event_type=SyncLogEventType.ERROR,
                    event_id=event.id,
                    message=f"Failed to sync event to {target_name}",
                    error_details=details,
                ),
            )
            return TargetOutcome(
                target_calendar_id=target.calendar.id,
                status=TargetStatus.FAILED,
                error=details,
            )

        sync_metrics.record_propagation(str(change), outcome.status)
        if outcome.status == TargetStatus.SKIPPED and change == ChangeKind.DELETED:
            message = f"No mirror to delete on {target_name}"
        elif outcome.status == TargetStatus.SKIPPED:
            message = f"Event already in sync with {target_name}"
        else:
            message = f"Successfully synced event to {target_name}"
        await write_sync_log(
            self._store,
            SyncLogEntry(
                calendar_id=target.calendar.id,
                event_type=SyncLogEventType(str(change)),
                event_id=event.id,
                message=message,
            ),
        )
        return outcome

    # ------------------------------------------------------------------
    # Per-target handlers
    # ------------------------------------------------------------------

    async def _handle_created(
        self, source_calendar: Calendar, event: ProviderEvent, target: CalendarWithAccount
    ) -> TargetOutcome:
        key = (source_calendar.id, event.id, target.calendar.id)
        async with self._ledger_locks(key):
            return await self._create_mirror(source_calendar, event, target, key)

    async def _handle_updated(
        self, source_calendar: Calendar, event: ProviderEvent, target: CalendarWithAccount
    ) -> TargetOutcome:
        key = (source_calendar.id, event.id, target.calendar.id)
        async with self._ledger_locks(key):
            entry = await self._store.get_sync_event(*key)
            if entry is None or entry.is_deleted:
                return await self._create_mirror(source_calendar, event, target, key)
            return await self._update_mirror(source_calendar, event, target, entry)

    async def _handle_deleted(
        self, source_calendar: Calendar, event: ProviderEvent, target: CalendarWithAccount
    ) -> TargetOutcome:
        key = (source_calendar.id, event.id, target.calendar.id)
        async with self._ledger_locks(key):
            entry = await self._store.get_sync_event(*key)
            if entry is None or entry.is_deleted:
                logger.debug("No synced event on %s to delete for %s", target.calendar.id, event.id)
                return TargetOutcome(
                    target_calendar_id=target.calendar.id, status=TargetStatus.SKIPPED
                )

            try:
                await self._provider.delete_event(
                    target.account,
                    calendar_id=target.calendar.calendar_id,
                    event_id=entry.target_event_id,
                )
            except Exception as exc:
                # The mirror may already be gone; the ledger entry is retired either way.
                logger.warning(
                    "Error deleting mirror %s on %s (continuing): %s",
                    entry.target_event_id,
                    target.calendar.id,
                    classify_error(exc).kind,
                )

            assert entry.id is not None
            await self._store.mark_sync_event_deleted(entry.id)
            return TargetOutcome(
                target_calendar_id=target.calendar.id,
                status=TargetStatus.DELETED,
                target_event_id=entry.target_event_id,
            )

    async def _create_mirror(
        self,
        source_calendar: Calendar,
        event: ProviderEvent,
        target: CalendarWithAccount,
        key: LedgerKey,
    ) -> TargetOutcome:
        """Create the mirror unless a live ledger entry exists.  Caller holds the key lock."""
        entry = await self._store.get_sync_event(*key)
        if entry is not None and not entry.is_deleted:
            logger.debug("Event %s already synced to %s, skipping", event.id, target.calendar.id)
            return TargetOutcome(
                target_calendar_id=target.calendar.id,
                status=TargetStatus.SKIPPED,
                target_event_id=entry.target_event_id,
            )

        mirror = await self._provider.create_event(
            target.account,
            calendar_id=target.calendar.calendar_id,
            body=build_mirror_body(event, source_calendar.id),
        )

        if entry is not None:
            # Source event came back after a delete; reuse its ledger row.
            assert entry.id is not None
            await self._store.update_sync_event(
                entry.id,
                target_event_id=mirror.id,
                event_title=event.summary,
                event_start=event.start_at,
                event_end=event.end_at,
                is_deleted=False,
            )
            return TargetOutcome(
                target_calendar_id=target.calendar.id,
                status=TargetStatus.CREATED,
                target_event_id=mirror.id,
            )

        try:
            await self._store.insert_sync_event(
                SyncEvent(
                    source_calendar_id=source_calendar.id,
                    source_event_id=event.id,
                    target_calendar_id=target.calendar.id,
                    target_event_id=mirror.id,
                    event_title=event.summary,
                    event_start=event.start_at,
                    event_end=event.end_at,
                )
            )
        except LedgerConflictError:
            # Another process recorded a mirror for this key first.
            logger.warning(
                "Ledger race for %s on %s; removing duplicate mirror %s",
                event.id,
                target.calendar.id,
                mirror.id,
            )
            await self._delete_orphan(target, mirror.id)
            winner = await self._store.get_sync_event(*key)
            if winner is None or winner.is_deleted:
                raise
            return await self._update_mirror(source_calendar, event, target, winner)

        return TargetOutcome(
            target_calendar_id=target.calendar.id,
            status=TargetStatus.CREATED,
            target_event_id=mirror.id,
        )

    async def _update_mirror(
        self,
        source_calendar: Calendar,
        event: ProviderEvent,
        target: CalendarWithAccount,
        entry: SyncEvent,
    ) -> TargetOutcome:
        await self._provider.update_event(
            target.account,
            calendar_id=target.calendar.calendar_id,
            event_id=entry.target_event_id,
            body=build_mirror_body(event, source_calendar.id),
        )
        assert entry.id is not None
        await self._store.update_sync_event(
            entry.id,
            target_event_id=entry.target_event_id,
            event_title=event.summary,
            event_start=event.start_at,
            event_end=event.end_at,
        )
        return TargetOutcome(
            target_calendar_id=target.calendar.id,
            status=TargetStatus.UPDATED,
            target_event_id=entry.target_event_id,
        )

    async def _delete_orphan(self, target: CalendarWithAccount, event_id: str) -> None:
        try:
            await self._provider.delete_event(
                target.account, calendar_id=target.calendar.calendar_id, event_id=event_id
            )
        except Exception as exc:
            logger.warning(
                "Failed to remove duplicate mirror %s on %s: %s",
                event_id,
                target.calendar.id,
                classify_error(exc).kind,
            )

    # ------------------------------------------------------------------
    # Calendar-level passes
    # ------------------------------------------------------------------

    def initial_window(self) -> tuple[datetime, datetime]:
        now = self._clock()
        return now, add_months(now, self._initial_window_months)

    async def perform_initial_sync(self, calendar: Calendar, account: Account) -> int:
        """Mirror every upcoming event of a newly added calendar.

        Fetches the window now .. now + initial window without a cursor,
        persists the returned cursor first, then runs the created path for
        every event that is not cancelled.  Returns the number of events
        fetched.
        """
        with sync_span("initial_sync", calendar_id=calendar.id):
            async with self._calendar_locks(calendar.id):
                time_min, time_max = self.initial_window()
                logger.info(
                    "Starting initial sync for calendar %s from %s to %s",
                    calendar.id,
                    time_min.isoformat(),
                    time_max.isoformat(),
                )
                page = await self._provider.list_events(
                    account, calendar_id=calendar.calendar_id, time_min=time_min, time_max=time_max
                )
                await self._save_cursor(calendar, page)

                processed = 0
                for event in page.events:
                    if event.is_cancelled:
                        logger.debug("Skipping cancelled event %s", event.id)
                        continue
                    await self.sync_event(calendar, account, event, ChangeKind.CREATED)
                    processed += 1

                logger.info(
                    "Initial sync complete for calendar %s: fetched=%d processed=%d",
                    calendar.id,
                    len(page.events),
                    processed,
                )
                return len(page.events)

    async def sync_calendar_changes(
        self, calendar: Calendar, account: Account
    ) -> ChangeBatchResult:
        """Fetch changes since the stored cursor and propagate each one.

        Without a usable cursor the initial window is fetched instead.  The
        new cursor is persisted before any event is processed.  The cursor is
        re-read under the calendar lock, so a pass that waited behind another
        one continues from the cursor that pass stored.
        """
        with sync_span("sync_changes", calendar_id=calendar.id):
            async with self._calendar_locks(calendar.id):
                current = await self._store.get_calendar(calendar.id)
                if current is not None:
                    calendar.sync_token = current.calendar.sync_token
                    calendar.last_sync_at = current.calendar.last_sync_at

                page: EventPage | None = None
                full_resync = False
                if calendar.sync_token:
                    try:
                        page = await self._provider.list_events(
                            account,
                            calendar_id=calendar.calendar_id,
                            sync_token=calendar.sync_token,
                        )
                    except SyncTokenExpiredError:
                        logger.warning(
                            "Sync token expired for calendar %s; falling back to window fetch",
                            calendar.id,
                        )
                        calendar.sync_token = None
                if page is None:
                    full_resync = True
                    time_min, time_max = self.initial_window()
                    page = await self._provider.list_events(
                        account,
                        calendar_id=calendar.calendar_id,
                        time_min=time_min,
                        time_max=time_max,
                    )

                await self._save_cursor(calendar, page)

                result = ChangeBatchResult(
                    calendar_id=calendar.id, fetched=len(page.events), full_resync=full_resync
                )
                for event in page.events:
                    if event.is_cancelled:
                        change = ChangeKind.DELETED
                    elif is_sync_produced(event):
                        result.skipped += 1
                        continue
                    elif await self._store.has_live_sync_events(calendar.id, event.id):
                        change = ChangeKind.UPDATED
                    else:
                        change = ChangeKind.CREATED

                    await self.sync_event(calendar, account, event, change)
                    if change == ChangeKind.DELETED:
                        result.deleted += 1
                    elif change == ChangeKind.UPDATED:
                        result.updated += 1
                    else:
                        result.created += 1

                logger.info(
                    "Processed %d change(s) for calendar %s "
                    "(created=%d updated=%d deleted=%d skipped=%d)",
                    result.fetched,
                    calendar.id,
                    result.created,
                    result.updated,
                    result.deleted,
                    result.skipped,
                )
                return result

    async def handle_notification(self, notification: PushNotification) -> NotificationResult:
        """Process one push notification.

        The ``sync`` handshake is acknowledged and ignored.  An unknown
        channel raises ``UnknownChannelError``.
        """
        if notification.resource_state == RESOURCE_STATE_SYNC:
            logger.info("Sync handshake received for channel %s", notification.channel_id)
            return NotificationResult(ignored=True)

        if not notification.channel_id:
            raise ValueError("Push notification is missing a channel id")

        entry = await self._store.get_calendar_by_channel(notification.channel_id)
        if entry is None:
            raise UnknownChannelError(notification.channel_id)

        if (
            notification.resource_id
            and entry.calendar.webhook_resource_id
            and notification.resource_id != entry.calendar.webhook_resource_id
        ):
            logger.warning(
                "Resource id mismatch for channel %s on calendar %s",
                notification.channel_id,
                entry.calendar.id,
            )

        if not entry.calendar.is_active:
            logger.info("Ignoring notification for inactive calendar %s", entry.calendar.id)
            return NotificationResult(ignored=True, calendar_id=entry.calendar.id)

        result = await self.sync_calendar_changes(entry.calendar, entry.account)
        return NotificationResult(calendar_id=entry.calendar.id, events_processed=result.fetched)

    async def _save_cursor(self, calendar: Calendar, page: EventPage) -> None:
        synced_at = self._clock()
        cursor = page.next_sync_token
        if not cursor:
            logger.warning(
                "No sync token returned for calendar %s; keeping the stored cursor",
                calendar.id,
            )
            cursor = calendar.sync_token
        await self._store.update_sync_cursor(calendar.id, cursor, synced_at)
        calendar.sync_token = cursor
        calendar.last_sync_at = synced_at
