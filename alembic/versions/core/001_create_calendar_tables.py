"""create_calendar_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # Owned by the CRM; created here only so a fresh database is usable.
    op.execute("""
        CREATE TABLE IF NOT EXISTS analysts (
            id TEXT PRIMARY KEY,
            first_name TEXT NOT NULL DEFAULT '',
            last_name TEXT NOT NULL DEFAULT '',
            email TEXT,
            company TEXT,
            company_domain TEXT,
            status TEXT NOT NULL DEFAULT 'ACTIVE',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_connections (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            account_email TEXT NOT NULL,
            external_account_id TEXT NOT NULL,
            access_token_encrypted TEXT NOT NULL,
            refresh_token_encrypted TEXT,
            token_expiry TIMESTAMPTZ,
            is_active BOOLEAN NOT NULL DEFAULT true,
            last_sync_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_calendar_connections_user_account
                UNIQUE (user_id, external_account_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_connections_active
        ON calendar_connections (is_active) WHERE is_active
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_meetings (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            connection_id UUID NOT NULL
                REFERENCES calendar_connections (id) ON DELETE CASCADE,
            external_event_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            attendees TEXT[] NOT NULL DEFAULT '{}',
            analyst_id TEXT,
            match_confidence DOUBLE PRECISION NOT NULL DEFAULT 0,
            tags TEXT[] NOT NULL DEFAULT '{}',
            source_updated_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_calendar_meetings_connection_event
                UNIQUE (connection_id, external_event_id)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_meetings_connection_start
        ON calendar_meetings (connection_id, start_time)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_progress (
            id BIGSERIAL PRIMARY KEY,
            connection_id UUID NOT NULL
                REFERENCES calendar_connections (id) ON DELETE CASCADE,
            run_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            state TEXT NOT NULL,
            month TEXT,
            message TEXT,
            events_scanned INTEGER NOT NULL DEFAULT 0,
            meetings_matched INTEGER NOT NULL DEFAULT 0,
            errors INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_sync_progress_connection
        ON calendar_sync_progress (connection_id, id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_progress")
    op.execute("DROP TABLE IF EXISTS calendar_meetings")
    op.execute("DROP TABLE IF EXISTS calendar_connections")
