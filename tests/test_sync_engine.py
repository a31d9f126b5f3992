"""Tests for calmirror.sync.engine: event fan-out and calendar-level passes.

Covers:
- Mirrors carrying the loop-prevention marker are never propagated again
- Created / updated / deleted propagation and the ledger bookkeeping
- Idempotent re-delivery, including concurrent duplicates
- Per-target failure isolation and the sync log
- Initial sync window, incremental passes and expired cursors
- Push notification routing
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from calmirror.errors import CalendarSyncError, ErrorKind, LedgerConflictError, UnknownChannelError
from calmirror.models import ChangeKind, EventPage, PushNotification, TargetStatus
from calmirror.sync.engine import SyncEngine, add_months
from calmirror.sync.marker import SYNC_MARKER_KEY
from tests.fakes import NOW, InMemorySyncStore, make_account, make_calendar, make_event

pytestmark = pytest.mark.unit


def _google_id(calendar) -> str:
    return calendar.calendar_id


# ---------------------------------------------------------------------------
# Loop prevention
# ---------------------------------------------------------------------------


class TestMarkerSkip:
    async def test_marked_event_makes_no_calls_and_no_writes(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        mirror = make_event("mirror-x", private={SYNC_MARKER_KEY: "true"})

        for change in ChangeKind:
            result = await engine.sync_event(calendar_1, account_1, mirror, change)
            assert result.skipped_as_mirror is True
            assert result.targets == []

        assert provider.calls == []
        assert store.sync_events == {}
        assert store.sync_logs == []

    async def test_mirror_delivered_back_produces_no_writes(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), (calendar_2, account_2) = two_calendars
        await engine.sync_event(calendar_1, account_1, make_event("evt-A"), ChangeKind.CREATED)
        provider.calls.clear()
        ledger_before = {k: v.model_copy() for k, v in store.sync_events.items()}

        # The mirror on calendar 2 now shows up in calendar 2's change feed.
        mirror = next(iter(provider.events[_google_id(calendar_2)].values()))
        provider.pages[_google_id(calendar_2)] = [
            EventPage(events=[mirror], next_sync_token="next-2")
        ]
        result = await engine.sync_calendar_changes(calendar_2, account_2)

        assert result.skipped == 1
        assert provider.write_calls == []
        assert store.sync_events == ledger_before

    async def test_dict_event_with_marker_is_skipped(self, engine, provider, two_calendars):
        (calendar_1, account_1), _ = two_calendars
        raw = {
            "id": "mirror-raw",
            "extendedProperties": {"private": {SYNC_MARKER_KEY: "true"}},
        }

        result = await engine.sync_event(calendar_1, account_1, raw, "created")

        assert result.skipped_as_mirror is True
        assert provider.calls == []


# ---------------------------------------------------------------------------
# Created
# ---------------------------------------------------------------------------


class TestCreated:
    async def test_creates_one_marked_mirror_and_ledger_row(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), (calendar_2, _) = two_calendars

        result = await engine.sync_event(
            calendar_1, account_1, make_event("evt-A", summary="Dentist"), ChangeKind.CREATED
        )

        creates = provider.calls_to("create_event")
        assert len(creates) == 1
        assert creates[0].account_id == "acc-2"
        assert creates[0].kwargs["calendar_id"] == _google_id(calendar_2)
        body = creates[0].kwargs["body"]
        assert body["summary"] == "Dentist"
        assert body["extendedProperties"]["private"][SYNC_MARKER_KEY] == "true"
        assert body["extendedProperties"]["private"]["source_event_id"] == "evt-A"

        [entry] = store.live_entries()
        assert entry.key == ("cal-1", "evt-A", "cal-2")
        assert entry.target_event_id == result.targets[0].target_event_id
        assert entry.event_title == "Dentist"
        assert result.targets[0].status == TargetStatus.CREATED

    async def test_untitled_event_mirrors_as_busy(self, engine, provider, two_calendars):
        (calendar_1, account_1), _ = two_calendars

        await engine.sync_event(
            calendar_1, account_1, make_event("evt-A", summary=None), ChangeKind.CREATED
        )

        assert provider.calls_to("create_event")[0].kwargs["body"]["summary"] == "Busy"

    async def test_duplicate_created_is_idempotent(self, engine, store, provider, two_calendars):
        (calendar_1, account_1), _ = two_calendars
        event = make_event("evt-A")

        await engine.sync_event(calendar_1, account_1, event, ChangeKind.CREATED)
        second = await engine.sync_event(calendar_1, account_1, event, ChangeKind.CREATED)

        assert len(provider.calls_to("create_event")) == 1
        assert len(store.sync_events) == 1
        assert second.targets[0].status == TargetStatus.SKIPPED

    async def test_concurrent_duplicate_created_creates_once(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        provider.create_delay = 0.01
        event = make_event("evt-A")

        await asyncio.gather(
            engine.sync_event(calendar_1, account_1, event, ChangeKind.CREATED),
            engine.sync_event(calendar_1, account_1, event, ChangeKind.CREATED),
        )

        assert len(provider.calls_to("create_event")) == 1
        assert len(store.sync_events) == 1

    async def test_fans_out_to_every_other_active_calendar_of_the_user(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        store.add_account(make_account("acc-3"))
        store.add_calendar(make_calendar("cal-3", account_id="acc-3"))
        store.add_calendar(make_calendar("cal-4", account_id="acc-3", is_active=False))
        store.add_account(make_account("acc-other", user_id="user-2"))
        store.add_calendar(make_calendar("cal-other", account_id="acc-other"))

        result = await engine.sync_event(calendar_1, account_1, make_event(), ChangeKind.CREATED)

        assert sorted(t.target_calendar_id for t in result.targets) == ["cal-2", "cal-3"]
        assert len(provider.calls_to("create_event")) == 2

    async def test_no_targets_is_a_noop(self, store, provider):
        account = store.add_account(make_account("acc-1"))
        calendar = store.add_calendar(make_calendar("cal-1"))
        engine = SyncEngine(store, provider)

        result = await engine.sync_event(calendar, account, make_event(), ChangeKind.CREATED)

        assert result.targets == []
        assert provider.calls == []

    async def test_created_after_delete_revives_ledger_row(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        event = make_event("evt-A")
        await engine.sync_event(calendar_1, account_1, event, ChangeKind.CREATED)
        await engine.sync_event(calendar_1, account_1, event, ChangeKind.DELETED)

        result = await engine.sync_event(calendar_1, account_1, event, ChangeKind.CREATED)

        assert result.targets[0].status == TargetStatus.CREATED
        assert len(store.sync_events) == 1
        [entry] = store.live_entries()
        assert entry.target_event_id == result.targets[0].target_event_id

    async def test_ledger_race_removes_duplicate_mirror(self, provider, clock):
        class RacingStore(InMemorySyncStore):
            raced = False

            async def insert_sync_event(self, entry):
                if not self.raced:
                    self.raced = True
                    await super().insert_sync_event(
                        entry.model_copy(update={"target_event_id": "winner-mirror"})
                    )
                    raise LedgerConflictError("duplicate key")
                return await super().insert_sync_event(entry)

        store = RacingStore()
        account_1 = store.add_account(make_account("acc-1"))
        store.add_account(make_account("acc-2"))
        calendar_1 = store.add_calendar(make_calendar("cal-1", account_id="acc-1"))
        store.add_calendar(make_calendar("cal-2", account_id="acc-2"))
        engine = SyncEngine(store, provider, clock=clock)

        result = await engine.sync_event(calendar_1, account_1, make_event("evt-A"), "created")

        [delete] = provider.calls_to("delete_event")
        assert delete.kwargs["event_id"] == "mirror-1"
        [update] = provider.calls_to("update_event")
        assert update.kwargs["event_id"] == "winner-mirror"
        assert result.targets[0].status == TargetStatus.UPDATED
        assert len(store.sync_events) == 1


# ---------------------------------------------------------------------------
# Updated
# ---------------------------------------------------------------------------


class TestUpdated:
    async def test_update_patches_existing_mirror(self, engine, store, provider, two_calendars):
        (calendar_1, account_1), _ = two_calendars
        await engine.sync_event(calendar_1, account_1, make_event("evt-A"), ChangeKind.CREATED)
        [entry] = store.live_entries()

        moved = make_event("evt-A", summary="Moved", start=NOW + timedelta(days=2))
        result = await engine.sync_event(calendar_1, account_1, moved, ChangeKind.UPDATED)

        [update] = provider.calls_to("update_event")
        assert update.kwargs["event_id"] == entry.target_event_id
        assert update.kwargs["body"]["summary"] == "Moved"
        [stored] = store.live_entries()
        assert stored.event_title == "Moved"
        assert stored.event_start == NOW + timedelta(days=2)
        assert result.targets[0].status == TargetStatus.UPDATED

    async def test_update_without_ledger_entry_creates(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars

        result = await engine.sync_event(
            calendar_1, account_1, make_event("evt-A"), ChangeKind.UPDATED
        )

        assert len(provider.calls_to("create_event")) == 1
        assert provider.calls_to("update_event") == []
        assert result.targets[0].status == TargetStatus.CREATED
        assert len(store.live_entries()) == 1


# ---------------------------------------------------------------------------
# Deleted
# ---------------------------------------------------------------------------


class TestDeleted:
    async def test_delete_without_ledger_entry_makes_no_calls(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars

        result = await engine.sync_event(
            calendar_1, account_1, make_event("evt-A", status="cancelled"), ChangeKind.DELETED
        )

        assert provider.calls == []
        assert store.error_logs() == []
        assert result.targets[0].status == TargetStatus.SKIPPED
        [log] = store.sync_logs
        assert log.message == "No mirror to delete on Calendar cal-2"

    async def test_delete_removes_mirror_and_retires_row(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), (calendar_2, _) = two_calendars
        await engine.sync_event(calendar_1, account_1, make_event("evt-A"), ChangeKind.CREATED)
        [entry] = store.live_entries()

        await engine.sync_event(calendar_1, account_1, make_event("evt-A"), ChangeKind.DELETED)

        [delete] = provider.calls_to("delete_event")
        assert delete.kwargs == {
            "calendar_id": _google_id(calendar_2),
            "event_id": entry.target_event_id,
        }
        assert store.live_entries() == []

    async def test_row_retired_even_when_provider_delete_fails(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), (calendar_2, _) = two_calendars
        await engine.sync_event(calendar_1, account_1, make_event("evt-A"), ChangeKind.CREATED)
        provider.failures[("delete_event", _google_id(calendar_2))] = CalendarSyncError(
            "Resource not found.", kind=ErrorKind.NOT_FOUND, retryable=False, status_code=404
        )

        result = await engine.sync_event(
            calendar_1, account_1, make_event("evt-A"), ChangeKind.DELETED
        )

        assert store.live_entries() == []
        assert result.targets[0].status == TargetStatus.DELETED
        assert store.error_logs() == []


# ---------------------------------------------------------------------------
# Failure isolation and sync log
# ---------------------------------------------------------------------------


class TestFailureIsolation:
    async def test_one_failing_target_does_not_stop_others(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), (calendar_2, _) = two_calendars
        store.add_account(make_account("acc-3"))
        store.add_calendar(make_calendar("cal-3", account_id="acc-3"))
        provider.failures[("create_event", _google_id(calendar_2))] = CalendarSyncError(
            "Access forbidden. Check calendar permissions.",
            kind=ErrorKind.FORBIDDEN,
            retryable=False,
            status_code=403,
        )

        result = await engine.sync_event(calendar_1, account_1, make_event(), ChangeKind.CREATED)

        statuses = {t.target_calendar_id: t.status for t in result.targets}
        assert statuses == {"cal-2": TargetStatus.FAILED, "cal-3": TargetStatus.CREATED}
        [error_log] = store.error_logs()
        assert error_log.calendar_id == "cal-2"
        assert error_log.error_details["kind"] == "FORBIDDEN"
        assert error_log.error_details["change"] == "created"
        assert [e.key[2] for e in store.live_entries()] == ["cal-3"]

    async def test_success_is_logged_per_target(self, engine, store, two_calendars):
        (calendar_1, account_1), _ = two_calendars

        await engine.sync_event(calendar_1, account_1, make_event("evt-A"), ChangeKind.CREATED)

        [log] = store.sync_logs
        assert log.calendar_id == "cal-2"
        assert log.event_type == "created"
        assert log.event_id == "evt-A"

    async def test_sync_log_failure_never_breaks_propagation(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        store.fail_sync_log = True

        result = await engine.sync_event(calendar_1, account_1, make_event(), ChangeKind.CREATED)

        assert result.targets[0].status == TargetStatus.CREATED
        assert len(store.live_entries()) == 1


# ---------------------------------------------------------------------------
# Calendar-level passes
# ---------------------------------------------------------------------------


class TestInitialSync:
    async def test_fetches_window_and_mirrors_upcoming_events(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        provider.pages[_google_id(calendar_1)] = [
            EventPage(
                events=[
                    make_event("evt-A"),
                    make_event("evt-B"),
                    make_event("evt-C", status="cancelled"),
                ],
                next_sync_token="cursor-1",
            )
        ]

        fetched = await engine.perform_initial_sync(calendar_1, account_1)

        assert fetched == 3
        [listing] = provider.calls_to("list_events")
        assert listing.kwargs["sync_token"] is None
        assert listing.kwargs["time_min"] == NOW
        assert listing.kwargs["time_max"] == datetime(2026, 6, 2, 12, 0, tzinfo=UTC)
        assert len(provider.calls_to("create_event")) == 2
        assert store.calendars["cal-1"].sync_token == "cursor-1"
        assert store.calendars["cal-1"].last_sync_at == NOW
        assert calendar_1.sync_token == "cursor-1"

    async def test_cursor_saved_even_when_propagation_fails(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        provider.pages[_google_id(calendar_1)] = [
            EventPage(events=[make_event("evt-A")], next_sync_token="cursor-1")
        ]
        provider.failures[("create_event", "*")] = CalendarSyncError(
            "boom", kind=ErrorKind.UNKNOWN, retryable=False
        )

        await engine.perform_initial_sync(calendar_1, account_1)

        assert store.calendars["cal-1"].sync_token == "cursor-1"
        assert len(store.error_logs()) == 1


class TestIncrementalSync:
    async def test_uses_stored_cursor_and_classifies_changes(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        await engine.sync_event(calendar_1, account_1, make_event("evt-A"), ChangeKind.CREATED)
        await engine.sync_event(calendar_1, account_1, make_event("evt-B"), ChangeKind.CREATED)
        provider.calls.clear()
        store.calendars["cal-1"].sync_token = "cursor-1"
        provider.pages[_google_id(calendar_1)] = [
            EventPage(
                events=[
                    make_event("evt-A", summary="Renamed"),
                    make_event("evt-B", status="cancelled"),
                    make_event("evt-C"),
                ],
                next_sync_token="cursor-2",
            )
        ]

        result = await engine.sync_calendar_changes(calendar_1, account_1)

        assert provider.calls_to("list_events")[0].kwargs["sync_token"] == "cursor-1"
        assert (result.created, result.updated, result.deleted) == (1, 1, 1)
        assert result.full_resync is False
        assert len(provider.calls_to("update_event")) == 1
        assert len(provider.calls_to("delete_event")) == 1
        assert len(provider.calls_to("create_event")) == 1
        assert store.calendars["cal-1"].sync_token == "cursor-2"

    async def test_expired_cursor_falls_back_to_window(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        store.calendars["cal-1"].sync_token = "stale"
        provider.expired_tokens.add("stale")
        provider.pages[_google_id(calendar_1)] = [
            EventPage(events=[make_event("evt-A")], next_sync_token="fresh")
        ]

        result = await engine.sync_calendar_changes(calendar_1, account_1)

        listings = provider.calls_to("list_events")
        assert listings[0].kwargs["sync_token"] == "stale"
        assert listings[1].kwargs["sync_token"] is None
        assert listings[1].kwargs["time_min"] == NOW
        assert result.full_resync is True
        assert result.created == 1
        assert store.calendars["cal-1"].sync_token == "fresh"

    async def test_page_without_cursor_keeps_stored_one(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        store.calendars["cal-1"].sync_token = "c1"
        provider.pages[_google_id(calendar_1)] = [EventPage(events=[], next_sync_token=None)]

        await engine.sync_calendar_changes(calendar_1, account_1)

        assert store.calendars["cal-1"].sync_token == "c1"
        assert store.calendars["cal-1"].last_sync_at == NOW

    async def test_expired_cursor_is_not_kept_when_window_returns_none(
        self, engine, store, provider, two_calendars
    ):
        (calendar_1, account_1), _ = two_calendars
        store.calendars["cal-1"].sync_token = "stale"
        provider.expired_tokens.add("stale")
        provider.pages[_google_id(calendar_1)] = [EventPage(events=[], next_sync_token=None)]

        await engine.sync_calendar_changes(calendar_1, account_1)

        assert store.calendars["cal-1"].sync_token is None

    async def test_missing_cursor_runs_window_fetch(self, engine, provider, two_calendars):
        (calendar_1, account_1), _ = two_calendars

        result = await engine.sync_calendar_changes(calendar_1, account_1)

        assert result.full_resync is True
        assert provider.calls_to("list_events")[0].kwargs["time_min"] == NOW


class TestHandleNotification:
    async def test_sync_handshake_is_ignored(self, engine, provider):
        result = await engine.handle_notification(
            PushNotification(channel_id="chan-1", resource_state="sync")
        )

        assert result.ignored is True
        assert provider.calls == []

    async def test_missing_channel_is_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.handle_notification(PushNotification(resource_state="exists"))

    async def test_unknown_channel_raises(self, engine):
        with pytest.raises(UnknownChannelError):
            await engine.handle_notification(
                PushNotification(channel_id="nope", resource_state="exists")
            )

    async def test_inactive_calendar_is_ignored(self, engine, store, provider):
        store.add_account(make_account("acc-1"))
        store.add_calendar(
            make_calendar("cal-1", is_active=False, webhook_expires_at=NOW + timedelta(days=3))
        )

        result = await engine.handle_notification(
            PushNotification(channel_id="chan-cal-1", resource_state="exists")
        )

        assert result.ignored is True
        assert result.calendar_id == "cal-1"
        assert provider.calls == []

    async def test_change_notification_runs_incremental_pass(self, engine, store, provider):
        store.add_account(make_account("acc-1"))
        store.add_account(make_account("acc-2"))
        store.add_calendar(
            make_calendar(
                "cal-1", sync_token="cursor-1", webhook_expires_at=NOW + timedelta(days=3)
            )
        )
        store.add_calendar(make_calendar("cal-2", account_id="acc-2"))
        provider.pages["cal-1@group.calendar.google.com"] = [
            EventPage(events=[make_event("evt-A"), make_event("evt-B")], next_sync_token="c2")
        ]

        result = await engine.handle_notification(
            PushNotification(
                channel_id="chan-cal-1", resource_state="exists", resource_id="res-cal-1"
            )
        )

        assert result.ignored is False
        assert result.events_processed == 2
        assert len(provider.calls_to("create_event")) == 2
        assert store.calendars["cal-1"].sync_token == "c2"

    async def test_burst_of_notifications_advances_cursor(self, engine, store, provider):
        store.add_account(make_account("acc-1"))
        store.add_account(make_account("acc-2"))
        store.add_calendar(
            make_calendar(
                "cal-1", sync_token="cursor-1", webhook_expires_at=NOW + timedelta(days=3)
            )
        )
        store.add_calendar(make_calendar("cal-2", account_id="acc-2"))
        provider.pages["cal-1@group.calendar.google.com"] = [
            EventPage(events=[make_event("evt-A")], next_sync_token="cursor-2"),
            EventPage(events=[], next_sync_token="cursor-3"),
        ]
        provider.list_delay = 0.01
        notification = PushNotification(channel_id="chan-cal-1", resource_state="exists")

        await asyncio.gather(
            engine.handle_notification(notification),
            engine.handle_notification(notification),
        )

        cursors = [call.kwargs["sync_token"] for call in provider.calls_to("list_events")]
        assert cursors == ["cursor-1", "cursor-2"]
        assert store.calendars["cal-1"].sync_token == "cursor-3"
        assert len(provider.calls_to("create_event")) == 1


class TestAddMonths:
    def test_clamps_to_month_length(self):
        assert add_months(datetime(2026, 11, 30, tzinfo=UTC), 3) == datetime(
            2027, 2, 28, tzinfo=UTC
        )

    def test_crosses_year_boundary(self):
        assert add_months(datetime(2026, 12, 15, tzinfo=UTC), 1) == datetime(
            2027, 1, 15, tzinfo=UTC
        )


def test_rejects_non_positive_concurrency(store, provider):
    with pytest.raises(ValueError):
        SyncEngine(store, provider, fanout_concurrency=0)
