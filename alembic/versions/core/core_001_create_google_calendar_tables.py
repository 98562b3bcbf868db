"""create google calendar integration and event tables

Revision ID: core_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates:
- google_calendar_integrations: one JSONB integration document per user,
  plus the sync lease columns
- google_calendar_events: one JSONB event document per (user, eventUid)

Both tables enable row-level security keyed on the ``calsync.user_id``
session setting. The table owner (the server store) is not subject to the
policies; user-session roles only see their own rows.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None

_TABLES = ("google_calendar_integrations", "google_calendar_events")


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS google_calendar_integrations (
            user_id TEXT PRIMARY KEY,
            document JSONB NOT NULL DEFAULT '{}'::jsonb,
            sync_lease_owner TEXT,
            sync_lease_expires_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT google_calendar_integrations_user_id_nonempty
                CHECK (length(btrim(user_id)) > 0)
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS google_calendar_events (
            user_id TEXT NOT NULL,
            event_uid TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            start_timestamp BIGINT NOT NULL DEFAULT 0,
            document JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (user_id, event_uid)
        )
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_google_calendar_events_calendar
        ON google_calendar_events (user_id, calendar_id)
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_google_calendar_events_start
        ON google_calendar_events (user_id, start_timestamp)
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_google_calendar_events_day_keys
        ON google_calendar_events USING GIN ((document -> 'dayKeys'))
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_google_calendar_events_month_keys
        ON google_calendar_events USING GIN ((document -> 'monthKeys'))
        """
    )

    for table in _TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"DROP POLICY IF EXISTS {table}_owner ON {table}")
        op.execute(
            f"""
            CREATE POLICY {table}_owner ON {table}
            USING (user_id = current_setting('calsync.user_id', true))
            WITH CHECK (user_id = current_setting('calsync.user_id', true))
            """
        )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS google_calendar_events")
    op.execute("DROP TABLE IF EXISTS google_calendar_integrations")
