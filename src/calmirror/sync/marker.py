"""Loop-prevention marker stored in ``extendedProperties.private``.

Every mirror written by the engine carries the marker.  An incoming event
with the marker is a propagation artifact and is never propagated again.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from calmirror.models import ProviderEvent

SYNC_MARKER_KEY = "calmirror_synced"
SYNC_MARKER_VALUE = "true"
SOURCE_CALENDAR_KEY = "source_calendar_id"
SOURCE_EVENT_KEY = "source_event_id"


class SyncMarker(BaseModel):
    source_calendar_id: str
    source_event_id: str

    def to_private_properties(self) -> dict[str, str]:
        return {
            SYNC_MARKER_KEY: SYNC_MARKER_VALUE,
            SOURCE_CALENDAR_KEY: self.source_calendar_id,
            SOURCE_EVENT_KEY: self.source_event_id,
        }


def read_sync_marker(event: ProviderEvent | dict[str, Any]) -> SyncMarker | None:
    """Return the marker carried by *event*, or None.

    Missing or malformed metadata means the event was not produced by a sync.
    The source ids are optional on read; only the sentinel decides.
    """
    if isinstance(event, ProviderEvent):
        extended = event.extended_properties
    elif isinstance(event, dict):
        extended = event.get("extendedProperties")
    else:
        return None

    if not isinstance(extended, dict):
        return None
    private = extended.get("private")
    if not isinstance(private, dict):
        return None

    sentinel = private.get(SYNC_MARKER_KEY)
    if not isinstance(sentinel, str) or sentinel.strip().lower() != SYNC_MARKER_VALUE:
        return None

    source_calendar_id = private.get(SOURCE_CALENDAR_KEY)
    source_event_id = private.get(SOURCE_EVENT_KEY)
    return SyncMarker(
        source_calendar_id=source_calendar_id if isinstance(source_calendar_id, str) else "",
        source_event_id=source_event_id if isinstance(source_event_id, str) else "",
    )


def is_sync_produced(event: ProviderEvent | dict[str, Any]) -> bool:
    return read_sync_marker(event) is not None


def build_mirror_body(event: ProviderEvent, source_calendar_id: str) -> dict[str, Any]:
    """Request body for creating or patching the mirror of *event*."""
    marker = SyncMarker(source_calendar_id=source_calendar_id, source_event_id=event.id)
    body: dict[str, Any] = {
        "summary": event.title,
        "start": event.start,
        "end": event.end,
        "extendedProperties": {"private": marker.to_private_properties()},
    }
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    return body
