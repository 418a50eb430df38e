"""sync records and event mirror tables

Revision ID: compass_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates:
- sync_records: one JSONB document per user holding the calendar-list
  sync token and one channel entry per watched calendar
- events: the local event mirror, with a partial unique index on
  (user_id, remote_id) so imports can upsert by remote id
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "compass_001"
down_revision = None
branch_labels = ("compass",)
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_records (
            user_id TEXT PRIMARY KEY,
            record JSONB NOT NULL DEFAULT '{"calendar_list": {}, "events": {}}'::jsonb,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL DEFAULT 'primary',
            remote_id TEXT,
            title TEXT NOT NULL DEFAULT 'untitled',
            description TEXT,
            start_time JSONB NOT NULL,
            end_time JSONB NOT NULL,
            starts_at TIMESTAMPTZ NOT NULL,
            ends_at TIMESTAMPTZ NOT NULL,
            all_day BOOLEAN NOT NULL DEFAULT false,
            is_someday BOOLEAN NOT NULL DEFAULT false,
            priority TEXT NOT NULL DEFAULT 'unassigned',
            origin TEXT NOT NULL DEFAULT 'compass',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT events_priority_check
                CHECK (priority IN ('unassigned', 'work', 'self', 'relations')),
            CONSTRAINT events_origin_check
                CHECK (origin IN ('compass', 'google', 'googleimport')),
            CONSTRAINT events_someday_local_only
                CHECK (NOT (is_someday AND remote_id IS NOT NULL))
        )
        """
    )
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_events_user_remote_id
        ON events (user_id, remote_id)
        WHERE remote_id IS NOT NULL
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_events_user_starts_at
        ON events (user_id, is_someday, starts_at)
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_events_user_calendar
        ON events (user_id, calendar_id)
        """
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_events_user_calendar")
    op.execute("DROP INDEX IF EXISTS ix_events_user_starts_at")
    op.execute("DROP INDEX IF EXISTS uq_events_user_remote_id")
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS sync_records")
