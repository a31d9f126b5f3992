"""Event propagation across a user's calendars."""

from calmirror.sync.engine import SyncEngine
from calmirror.sync.marker import SYNC_MARKER_KEY, SyncMarker, is_sync_produced, read_sync_marker

__all__ = ["SYNC_MARKER_KEY", "SyncEngine", "SyncMarker", "is_sync_produced", "read_sync_marker"]
