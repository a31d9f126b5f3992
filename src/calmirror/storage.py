"""Persistence interface for accounts, calendars, the sync ledger and sync logs.

``SyncStore`` is the contract the core depends on.  ``PostgresSyncStore``
implements it with raw SQL over the asyncpg pool owned by
:class:`calmirror.db.Database`.  The schema lives in the Alembic revision
under ``alembic/versions``.
"""

from __future__ import annotations

import abc
import json
import logging
from datetime import datetime
from typing import Any

import asyncpg

from calmirror.db import Database
from calmirror.errors import LedgerConflictError
from calmirror.models import Account, Calendar, CalendarWithAccount, SyncEvent, SyncLogEntry

logger = logging.getLogger(__name__)


class SyncStore(abc.ABC):
    """Storage operations used by the token, webhook and sync managers."""

    # -- accounts -----------------------------------------------------------

    @abc.abstractmethod
    async def get_account(self, account_id: str) -> Account | None: ...

    @abc.abstractmethod
    async def list_accounts_expiring_before(self, deadline: datetime) -> list[Account]:
        """Accounts whose access token expires before *deadline* (or has no expiry)."""

    @abc.abstractmethod
    async def update_account_tokens(
        self,
        account_id: str,
        *,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed token; an empty *refresh_token* keeps the stored one."""

    # -- calendars ----------------------------------------------------------

    @abc.abstractmethod
    async def get_calendar(self, calendar_id: str) -> CalendarWithAccount | None: ...

    @abc.abstractmethod
    async def get_calendar_by_channel(self, channel_id: str) -> CalendarWithAccount | None: ...

    @abc.abstractmethod
    async def find_calendar(
        self, account_id: str, provider_calendar_id: str
    ) -> Calendar | None: ...

    @abc.abstractmethod
    async def insert_calendar(
        self,
        *,
        account_id: str,
        provider_calendar_id: str,
        calendar_name: str | None,
    ) -> Calendar: ...

    @abc.abstractmethod
    async def set_calendar_active(self, calendar_id: str, is_active: bool) -> None: ...

    @abc.abstractmethod
    async def list_target_calendars(
        self, user_id: str, exclude_calendar_id: str
    ) -> list[CalendarWithAccount]:
        """Active calendars of every account of *user_id*, minus the excluded one."""

    @abc.abstractmethod
    async def list_active_calendars(self) -> list[CalendarWithAccount]: ...

    @abc.abstractmethod
    async def list_webhooks_expiring_before(self, deadline: datetime) -> list[CalendarWithAccount]:
        """Active calendars whose channel expires strictly before *deadline*."""

    @abc.abstractmethod
    async def update_sync_cursor(
        self, calendar_id: str, sync_token: str | None, last_sync_at: datetime
    ) -> None: ...

    @abc.abstractmethod
    async def set_webhook(
        self,
        calendar_id: str,
        *,
        channel_id: str,
        resource_id: str,
        expires_at: datetime,
    ) -> None: ...

    @abc.abstractmethod
    async def clear_webhook(self, calendar_id: str) -> None: ...

    # -- ledger -------------------------------------------------------------

    @abc.abstractmethod
    async def get_sync_event(
        self, source_calendar_id: str, source_event_id: str, target_calendar_id: str
    ) -> SyncEvent | None: ...

    @abc.abstractmethod
    async def has_live_sync_events(self, source_calendar_id: str, source_event_id: str) -> bool:
        """True when the source event has at least one non-deleted mirror."""

    @abc.abstractmethod
    async def insert_sync_event(self, entry: SyncEvent) -> SyncEvent:
        """Insert a ledger entry; raise LedgerConflictError when the key exists."""

    @abc.abstractmethod
    async def update_sync_event(
        self,
        entry_id: str,
        *,
        target_event_id: str,
        event_title: str | None,
        event_start: datetime | None,
        event_end: datetime | None,
        is_deleted: bool = False,
    ) -> None: ...

    @abc.abstractmethod
    async def mark_sync_event_deleted(self, entry_id: str) -> None: ...

    # -- sync logs ----------------------------------------------------------

    @abc.abstractmethod
    async def append_sync_log(self, entry: SyncLogEntry) -> None: ...

    @abc.abstractmethod
    async def list_sync_logs(self, calendar_id: str, *, limit: int = 50) -> list[SyncLogEntry]: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_ACCOUNT_COLUMNS = """
    a.id::text AS account_id,
    a.user_id AS account_user_id,
    a.provider_account_id AS account_provider_account_id,
    a.email AS account_email,
    a.name AS account_name,
    a.access_token AS account_access_token,
    a.refresh_token AS account_refresh_token,
    a.token_expires_at AS account_token_expires_at
"""

_CALENDAR_COLUMNS = """
    c.id::text AS id,
    c.account_id::text AS calendar_account_id,
    c.calendar_id,
    c.calendar_name,
    c.is_active,
    c.sync_token,
    c.last_sync_at,
    c.webhook_channel_id,
    c.webhook_resource_id,
    c.webhook_expires_at
"""

_CALENDAR_WITH_ACCOUNT_SELECT = f"""
    SELECT {_CALENDAR_COLUMNS}, {_ACCOUNT_COLUMNS}
    FROM calendars c
    JOIN accounts a ON a.id = c.account_id
"""

_SYNC_EVENT_COLUMNS = """
    id::text AS id,
    source_calendar_id::text AS source_calendar_id,
    source_event_id,
    target_calendar_id::text AS target_calendar_id,
    target_event_id,
    event_title,
    event_start,
    event_end,
    is_deleted
"""


def _account_from_row(row: Any) -> Account:
    return Account(
        id=row["account_id"],
        user_id=row["account_user_id"],
        provider_account_id=row["account_provider_account_id"],
        email=row["account_email"],
        name=row["account_name"],
        access_token=row["account_access_token"],
        refresh_token=row["account_refresh_token"],
        token_expires_at=row["account_token_expires_at"],
    )


def _calendar_from_row(row: Any) -> Calendar:
    return Calendar(
        id=row["id"],
        account_id=row["calendar_account_id"],
        calendar_id=row["calendar_id"],
        calendar_name=row["calendar_name"],
        is_active=row["is_active"],
        sync_token=row["sync_token"],
        last_sync_at=row["last_sync_at"],
        webhook_channel_id=row["webhook_channel_id"],
        webhook_resource_id=row["webhook_resource_id"],
        webhook_expires_at=row["webhook_expires_at"],
    )


def _calendar_with_account_from_row(row: Any) -> CalendarWithAccount:
    return CalendarWithAccount(calendar=_calendar_from_row(row), account=_account_from_row(row))


def _sync_event_from_row(row: Any) -> SyncEvent:
    return SyncEvent(**dict(row))


class PostgresSyncStore(SyncStore):
    """``SyncStore`` backed by PostgreSQL."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -- accounts -----------------------------------------------------------

    async def get_account(self, account_id: str) -> Account | None:
        row = await self._db.fetchrow(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts a WHERE a.id = $1::uuid",
            account_id,
        )
        return _account_from_row(row) if row is not None else None

    async def list_accounts_expiring_before(self, deadline: datetime) -> list[Account]:
        rows = await self._db.fetch(
            f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM accounts a
            WHERE a.token_expires_at IS NULL OR a.token_expires_at < $1
            ORDER BY a.token_expires_at NULLS FIRST
            """,
            deadline,
        )
        return [_account_from_row(row) for row in rows]

    async def update_account_tokens(
        self,
        account_id: str,
        *,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        await self._db.execute(
            """
            UPDATE accounts
            SET access_token = $2,
                token_expires_at = $3,
                refresh_token = COALESCE(NULLIF($4, ''), refresh_token),
                updated_at = now()
            WHERE id = $1::uuid
            """,
            account_id,
            access_token,
            token_expires_at,
            refresh_token,
        )

    # -- calendars ----------------------------------------------------------

    async def get_calendar(self, calendar_id: str) -> CalendarWithAccount | None:
        row = await self._db.fetchrow(
            f"{_CALENDAR_WITH_ACCOUNT_SELECT} WHERE c.id = $1::uuid",
            calendar_id,
        )
        return _calendar_with_account_from_row(row) if row is not None else None

    async def get_calendar_by_channel(self, channel_id: str) -> CalendarWithAccount | None:
        row = await self._db.fetchrow(
            f"{_CALENDAR_WITH_ACCOUNT_SELECT} WHERE c.webhook_channel_id = $1",
            channel_id,
        )
        return _calendar_with_account_from_row(row) if row is not None else None

    async def find_calendar(self, account_id: str, provider_calendar_id: str) -> Calendar | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_CALENDAR_COLUMNS}
            FROM calendars c
            WHERE c.account_id = $1::uuid AND c.calendar_id = $2
            """,
            account_id,
            provider_calendar_id,
        )
        return _calendar_from_row(row) if row is not None else None

    async def insert_calendar(
        self,
        *,
        account_id: str,
        provider_calendar_id: str,
        calendar_name: str | None,
    ) -> Calendar:
        row = await self._db.fetchrow(
            f"""
            WITH c AS (
                INSERT INTO calendars (account_id, calendar_id, calendar_name, is_active)
                VALUES ($1::uuid, $2, $3, true)
                RETURNING *
            )
            SELECT {_CALENDAR_COLUMNS} FROM c
            """,
            account_id,
            provider_calendar_id,
            calendar_name,
        )
        return _calendar_from_row(row)

    async def set_calendar_active(self, calendar_id: str, is_active: bool) -> None:
        await self._db.execute(
            "UPDATE calendars SET is_active = $2, updated_at = now() WHERE id = $1::uuid",
            calendar_id,
            is_active,
        )

    async def list_target_calendars(
        self, user_id: str, exclude_calendar_id: str
    ) -> list[CalendarWithAccount]:
        rows = await self._db.fetch(
            f"""
            {_CALENDAR_WITH_ACCOUNT_SELECT}
            WHERE a.user_id = $1
              AND c.is_active
              AND c.id <> $2::uuid
            ORDER BY c.created_at
            """,
            user_id,
            exclude_calendar_id,
        )
        return [_calendar_with_account_from_row(row) for row in rows]

    async def list_active_calendars(self) -> list[CalendarWithAccount]:
        rows = await self._db.fetch(
            f"{_CALENDAR_WITH_ACCOUNT_SELECT} WHERE c.is_active ORDER BY c.created_at"
        )
        return [_calendar_with_account_from_row(row) for row in rows]

    async def list_webhooks_expiring_before(self, deadline: datetime) -> list[CalendarWithAccount]:
        rows = await self._db.fetch(
            f"""
            {_CALENDAR_WITH_ACCOUNT_SELECT}
            WHERE c.is_active
              AND c.webhook_expires_at IS NOT NULL
              AND c.webhook_expires_at < $1
            ORDER BY c.webhook_expires_at
            """,
            deadline,
        )
        return [_calendar_with_account_from_row(row) for row in rows]

    async def update_sync_cursor(
        self, calendar_id: str, sync_token: str | None, last_sync_at: datetime
    ) -> None:
        await self._db.execute(
            """
            UPDATE calendars
            SET sync_token = $2, last_sync_at = $3, updated_at = now()
            WHERE id = $1::uuid
            """,
            calendar_id,
            sync_token,
            last_sync_at,
        )

    async def set_webhook(
        self,
        calendar_id: str,
        *,
        channel_id: str,
        resource_id: str,
        expires_at: datetime,
    ) -> None:
        await self._db.execute(
            """
            UPDATE calendars
            SET webhook_channel_id = $2,
                webhook_resource_id = $3,
                webhook_expires_at = $4,
                updated_at = now()
            WHERE id = $1::uuid
            """,
            calendar_id,
            channel_id,
            resource_id,
            expires_at,
        )

    async def clear_webhook(self, calendar_id: str) -> None:
        await self._db.execute(
            """
            UPDATE calendars
            SET webhook_channel_id = NULL,
                webhook_resource_id = NULL,
                webhook_expires_at = NULL,
                updated_at = now()
            WHERE id = $1::uuid
            """,
            calendar_id,
        )

    # -- ledger -------------------------------------------------------------

    async def get_sync_event(
        self, source_calendar_id: str, source_event_id: str, target_calendar_id: str
    ) -> SyncEvent | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_SYNC_EVENT_COLUMNS}
            FROM sync_events
            WHERE source_calendar_id = $1::uuid
              AND source_event_id = $2
              AND target_calendar_id = $3::uuid
            """,
            source_calendar_id,
            source_event_id,
            target_calendar_id,
        )
        return _sync_event_from_row(row) if row is not None else None

    async def has_live_sync_events(self, source_calendar_id: str, source_event_id: str) -> bool:
        found = await self._db.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM sync_events
                WHERE source_calendar_id = $1::uuid
                  AND source_event_id = $2
                  AND NOT is_deleted
            )
            """,
            source_calendar_id,
            source_event_id,
        )
        return bool(found)

    async def insert_sync_event(self, entry: SyncEvent) -> SyncEvent:
        try:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO sync_events (
                    source_calendar_id, source_event_id, target_calendar_id,
                    target_event_id, event_title, event_start, event_end, is_deleted
                )
                VALUES ($1::uuid, $2, $3::uuid, $4, $5, $6, $7, $8)
                RETURNING {_SYNC_EVENT_COLUMNS}
                """,
                entry.source_calendar_id,
                entry.source_event_id,
                entry.target_calendar_id,
                entry.target_event_id,
                entry.event_title,
                entry.event_start,
                entry.event_end,
                entry.is_deleted,
            )
        except asyncpg.UniqueViolationError as exc:
            raise LedgerConflictError(
                f"Ledger entry already exists for {entry.key!r}"
            ) from exc
        return _sync_event_from_row(row)

    async def update_sync_event(
        self,
        entry_id: str,
        *,
        target_event_id: str,
        event_title: str | None,
        event_start: datetime | None,
        event_end: datetime | None,
        is_deleted: bool = False,
    ) -> None:
        await self._db.execute(
            """
            UPDATE sync_events
            SET target_event_id = $2,
                event_title = $3,
                event_start = $4,
                event_end = $5,
                is_deleted = $6,
                updated_at = now()
            WHERE id = $1::uuid
            """,
            entry_id,
            target_event_id,
            event_title,
            event_start,
            event_end,
            is_deleted,
        )

    async def mark_sync_event_deleted(self, entry_id: str) -> None:
        await self._db.execute(
            "UPDATE sync_events SET is_deleted = true, updated_at = now() WHERE id = $1::uuid",
            entry_id,
        )

    # -- sync logs ----------------------------------------------------------

    async def append_sync_log(self, entry: SyncLogEntry) -> None:
        await self._db.execute(
            """
            INSERT INTO sync_logs (calendar_id, event_type, event_id, message, error_details)
            VALUES ($1::uuid, $2, $3, $4, $5::jsonb)
            """,
            entry.calendar_id,
            str(entry.event_type),
            entry.event_id,
            entry.message,
            json.dumps(entry.error_details) if entry.error_details is not None else None,
        )

    async def list_sync_logs(self, calendar_id: str, *, limit: int = 50) -> list[SyncLogEntry]:
        rows = await self._db.fetch(
            """
            SELECT calendar_id::text AS calendar_id, event_type, event_id, message,
                   error_details, created_at
            FROM sync_logs
            WHERE calendar_id = $1::uuid
            ORDER BY created_at DESC
            LIMIT $2
            """,
            calendar_id,
            limit,
        )
        entries: list[SyncLogEntry] = []
        for row in rows:
            details = row["error_details"]
            if isinstance(details, str):
                details = json.loads(details)
            entries.append(
                SyncLogEntry(
                    calendar_id=row["calendar_id"],
                    event_type=row["event_type"],
                    event_id=row["event_id"],
                    message=row["message"],
                    error_details=details,
                    created_at=row["created_at"],
                )
            )
        return entries


async def write_sync_log(store: SyncStore, entry: SyncLogEntry) -> None:
    """Append a sync log entry without ever failing the caller.

    Fire-and-forget: exceptions are logged and swallowed so that audit
    logging never breaks propagation.
    """
    try:
        await store.append_sync_log(entry)
    except Exception:
        logger.warning(
            "Failed to write sync log entry: calendar_id=%s event_type=%s event_id=%s",
            entry.calendar_id,
            entry.event_type,
            entry.event_id,
            exc_info=True,
        )
