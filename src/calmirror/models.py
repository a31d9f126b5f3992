"""Domain records and result payloads.

Persistent records (``Account``, ``Calendar``, ``SyncEvent``, ``SyncLogEntry``)
mirror the database rows.  Provider payloads (``ProviderEvent``,
``ProviderCalendar``, ``EventPage``, ``ChannelInfo``) wrap the Google Calendar
JSON.  The remaining models are the structured summaries returned by the
batch jobs and the sync engine.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_EVENT_TITLE = "Busy"


class ChangeKind(StrEnum):
    """How a source event changed."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class SyncLogEventType(StrEnum):
    """``sync_logs.event_type`` values."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Persistent records
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """A linked Google account and its OAuth tokens."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    provider_account_id: str
    email: str
    name: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Account("
            f"id={self.id!r}, "
            f"user_id={self.user_id!r}, "
            f"email={self.email!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, "
            f"token_expires_at={self.token_expires_at!r})"
        )

    # str() must redact too; pydantic's default __str__ prints field values.
    __str__ = __repr__


class Calendar(BaseModel):
    """A calendar registered for mirroring."""

    model_config = ConfigDict(extra="forbid")

    id: str
    account_id: str
    calendar_id: str
    calendar_name: str | None = None
    is_active: bool = True
    sync_token: str | None = None
    last_sync_at: datetime | None = None
    webhook_channel_id: str | None = None
    webhook_resource_id: str | None = None
    webhook_expires_at: datetime | None = None

    @model_validator(mode="after")
    def _webhook_fields_all_or_nothing(self) -> Calendar:
        fields = (self.webhook_channel_id, self.webhook_resource_id, self.webhook_expires_at)
        if any(value is None for value in fields) and any(value is not None for value in fields):
            raise ValueError(
                "webhook_channel_id, webhook_resource_id and webhook_expires_at "
                "must be all set or all null"
            )
        return self

    @property
    def has_webhook(self) -> bool:
        return self.webhook_channel_id is not None

    @property
    def display_name(self) -> str:
        return self.calendar_name or self.calendar_id


class CalendarWithAccount(BaseModel):
    """A calendar joined with the account that owns it."""

    calendar: Calendar
    account: Account


class SyncEvent(BaseModel):
    """Ledger entry mapping a source event to its mirror on one target."""

    id: str | None = None
    source_calendar_id: str
    source_event_id: str
    target_calendar_id: str
    target_event_id: str
    event_title: str | None = None
    event_start: datetime | None = None
    event_end: datetime | None = None
    is_deleted: bool = False

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_calendar_id, self.source_event_id, self.target_calendar_id)


class SyncLogEntry(BaseModel):
    """Append-only audit record of one propagation attempt."""

    calendar_id: str
    event_type: SyncLogEventType
    event_id: str | None = None
    message: str
    error_details: dict[str, Any] | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------


def parse_event_boundary(value: dict[str, Any] | None) -> datetime | None:
    """Return the instant of a Google ``start``/``end`` object.

    Timed events carry ``dateTime``; all-day events carry ``date`` and map to
    midnight UTC.  Anything else yields None.
    """
    if not isinstance(value, dict):
        return None

    raw_datetime = value.get("dateTime")
    if isinstance(raw_datetime, str) and raw_datetime.strip():
        normalized = raw_datetime.strip()
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)

    raw_date = value.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        try:
            day = date.fromisoformat(raw_date.strip())
        except ValueError:
            return None
        return datetime.combine(day, time.min, tzinfo=UTC)

    return None


class ProviderEvent(BaseModel):
    """A Google Calendar event; unknown fields are kept verbatim."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    status: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: dict[str, Any] | None = None
    end: dict[str, Any] | None = None
    extended_properties: dict[str, Any] | None = Field(default=None, alias="extendedProperties")

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def title(self) -> str:
        return self.summary or DEFAULT_EVENT_TITLE

    @property
    def start_at(self) -> datetime | None:
        return parse_event_boundary(self.start)

    @property
    def end_at(self) -> datetime | None:
        return parse_event_boundary(self.end)


class ProviderCalendar(BaseModel):
    """One entry of the account's calendar list."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    summary: str | None = None
    primary: bool = False
    access_role: str | None = Field(default=None, alias="accessRole")


class EventPage(BaseModel):
    """All events returned by one (paginated) list call."""

    events: list[ProviderEvent] = Field(default_factory=list)
    next_sync_token: str | None = None


class ChannelInfo(BaseModel):
    """Identifiers of a push channel opened by the provider."""

    channel_id: str
    resource_id: str
    expiration: datetime | None = None


# ---------------------------------------------------------------------------
# Result payloads
# ---------------------------------------------------------------------------


class FailureDetail(BaseModel):
    """One failed item inside a batch job summary."""

    id: str
    error: str
    kind: str | None = None


class TokenRefreshSummary(BaseModel):
    total: int = 0
    refreshed: int = 0
    failed: list[FailureDetail] = Field(default_factory=list)


class WebhookChannel(BaseModel):
    channel_id: str
    resource_id: str
    expiration: datetime


class WebhookRefreshResult(BaseModel):
    total: int = 0
    refreshed: int = 0
    failed: list[FailureDetail] = Field(default_factory=list)


class WebhookStats(BaseModel):
    total: int = 0
    active: int = 0
    expiring: int = 0
    expired: int = 0


class InvalidWebhook(BaseModel):
    calendar_id: str
    reason: str


class WebhookValidation(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: list[InvalidWebhook] = Field(default_factory=list)


class TargetStatus(StrEnum):
    """Per-target outcome of one propagation."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


class TargetOutcome(BaseModel):
    target_calendar_id: str
    status: TargetStatus
    target_event_id: str | None = None
    error: dict[str, Any] | None = None


class SyncEventResult(BaseModel):
    """Outcome of ``SyncEngine.sync_event``."""

    source_event_id: str
    change: ChangeKind
    skipped_as_mirror: bool = False
    targets: list[TargetOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> list[TargetOutcome]:
        return [t for t in self.targets if t.status == TargetStatus.FAILED]


class ChangeBatchResult(BaseModel):
    """Outcome of one incremental fetch-and-propagate pass."""

    calendar_id: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    full_resync: bool = False


class PushNotification(BaseModel):
    """Headers of an inbound Google push notification."""

    channel_id: str | None = None
    resource_state: str | None = None
    resource_id: str | None = None


class NotificationResult(BaseModel):
    ignored: bool = False
    calendar_id: str | None = None
    events_processed: int = 0
