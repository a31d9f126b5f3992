"""create_sync_tables

Revision ID: calmirror_001
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calmirror_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider_account_id TEXT NOT NULL,
            email TEXT NOT NULL,
            name TEXT,
            access_token TEXT,
            refresh_token TEXT,
            token_expires_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (provider_account_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts (user_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendars (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            account_id UUID NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            calendar_id TEXT NOT NULL,
            calendar_name TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            sync_token TEXT,
            last_sync_at TIMESTAMPTZ,
            webhook_channel_id TEXT,
            webhook_resource_id TEXT,
            webhook_expires_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (account_id, calendar_id),
            CONSTRAINT calendars_webhook_all_or_nothing CHECK (
                (webhook_channel_id IS NULL
                    AND webhook_resource_id IS NULL
                    AND webhook_expires_at IS NULL)
                OR (webhook_channel_id IS NOT NULL
                    AND webhook_resource_id IS NOT NULL
                    AND webhook_expires_at IS NOT NULL)
            )
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_calendars_webhook_channel
        ON calendars (webhook_channel_id)
        WHERE webhook_channel_id IS NOT NULL
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendars_webhook_expires_at
        ON calendars (webhook_expires_at)
        WHERE is_active
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            source_calendar_id UUID NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            source_event_id TEXT NOT NULL,
            target_calendar_id UUID NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            target_event_id TEXT NOT NULL,
            event_title TEXT,
            event_start TIMESTAMPTZ,
            event_end TIMESTAMPTZ,
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT sync_events_ledger_key
                UNIQUE (source_calendar_id, source_event_id, target_calendar_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            calendar_id UUID NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
            event_type TEXT NOT NULL,
            event_id TEXT,
            message TEXT NOT NULL,
            error_details JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_logs_calendar_created
        ON sync_logs (calendar_id, created_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS sync_logs")
    op.execute("DROP TABLE IF EXISTS sync_events")
    op.execute("DROP TABLE IF EXISTS calendars")
    op.execute("DROP TABLE IF EXISTS accounts")
