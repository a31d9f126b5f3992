"""Tests for calmirror.sync.marker: the loop-prevention marker."""

from __future__ import annotations

import pytest

from calmirror.models import ProviderEvent
from calmirror.sync.marker import (
    SYNC_MARKER_KEY,
    build_mirror_body,
    is_sync_produced,
    read_sync_marker,
)

pytestmark = pytest.mark.unit


def _event(private=None, **fields) -> ProviderEvent:
    payload = {"id": "evt-1", **fields}
    if private is not None:
        payload["extendedProperties"] = {"private": private}
    return ProviderEvent.model_validate(payload)


class TestReadSyncMarker:
    def test_marked_event(self):
        event = _event(
            {SYNC_MARKER_KEY: "true", "source_calendar_id": "cal-1", "source_event_id": "e1"}
        )

        marker = read_sync_marker(event)

        assert marker is not None
        assert marker.source_calendar_id == "cal-1"
        assert marker.source_event_id == "e1"

    def test_sentinel_alone_is_enough(self):
        assert is_sync_produced(_event({SYNC_MARKER_KEY: " TRUE "}))

    @pytest.mark.parametrize(
        "private",
        [None, {}, {SYNC_MARKER_KEY: "false"}, {SYNC_MARKER_KEY: True}, {"other": "true"}],
    )
    def test_unmarked_events(self, private):
        assert not is_sync_produced(_event(private))

    def test_malformed_extended_properties(self):
        assert read_sync_marker({"id": "x", "extendedProperties": "junk"}) is None
        assert read_sync_marker({"id": "x", "extendedProperties": {"private": ["a"]}}) is None
        assert read_sync_marker("not an event") is None

    def test_raw_dict_is_accepted(self):
        raw = {"id": "x", "extendedProperties": {"private": {SYNC_MARKER_KEY: "true"}}}

        assert is_sync_produced(raw)


class TestBuildMirrorBody:
    def test_copies_fields_and_marks(self):
        event = _event(
            summary="Standup",
            description="Daily",
            location="Room 1",
            start={"dateTime": "2026-03-02T09:00:00Z"},
            end={"dateTime": "2026-03-02T09:15:00Z"},
        )

        body = build_mirror_body(event, "cal-1")

        assert body["summary"] == "Standup"
        assert body["description"] == "Daily"
        assert body["location"] == "Room 1"
        assert body["start"] == {"dateTime": "2026-03-02T09:00:00Z"}
        assert body["extendedProperties"]["private"] == {
            SYNC_MARKER_KEY: "true",
            "source_calendar_id": "cal-1",
            "source_event_id": "evt-1",
        }
        assert is_sync_produced(body)

    def test_untitled_event_becomes_busy_and_omits_empty_fields(self):
        body = build_mirror_body(_event(), "cal-1")

        assert body["summary"] == "Busy"
        assert "description" not in body
        assert "location" not in body
