"""create calendar sync tables

Revision ID: core_001
Revises:
Create Date: 2025-06-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_date TIMESTAMPTZ NOT NULL,
            end_date TIMESTAMPTZ NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'Europe/Rome',
            client_ref BIGINT,
            property_ref BIGINT,
            confirmation_ref BIGINT,
            dedupe_key TEXT NOT NULL,
            sync_status TEXT NOT NULL DEFAULT 'pending',
            external_event_id TEXT,
            sync_error TEXT,
            last_sync_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_events_dedupe_key_key UNIQUE (dedupe_key),
            CONSTRAINT calendar_events_sync_status_check
                CHECK (sync_status IN ('pending', 'synced', 'failed', 'needs_auth')),
            CONSTRAINT calendar_events_end_after_start CHECK (end_date > start_date)
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_events_confirmation_ref
        ON calendar_events (confirmation_ref)
        WHERE confirmation_ref IS NOT NULL
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_start_date
        ON calendar_events (start_date)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_sync_status
        ON calendar_events (sync_status)
        WHERE sync_status <> 'synced'
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS oauth_tokens (
            service TEXT PRIMARY KEY,
            refresh_token TEXT NOT NULL,
            scope TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS oauth_tokens")
    op.execute("DROP INDEX IF EXISTS idx_calendar_events_sync_status")
    op.execute("DROP INDEX IF EXISTS idx_calendar_events_start_date")
    op.execute("DROP INDEX IF EXISTS uq_calendar_events_confirmation_ref")
    op.execute("DROP TABLE IF EXISTS calendar_events")
