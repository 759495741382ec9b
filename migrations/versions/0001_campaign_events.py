"""Raw and normalized campaign event tables

Revision ID: 0001_campaign_events
Revises:
Create Date: 2026-10-17

Adds:
- raw_events: write-once copy of every received event, deduplicated by dedupe_key
- normalized_events: one metrics row per (campaign, platform, day), upserted
"""

from alembic import op

# revision identifiers, used by Alembic
revision = "0001_campaign_events"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE raw_events (
            id              BIGSERIAL PRIMARY KEY,
            dedupe_key      TEXT NOT NULL UNIQUE,
            source          TEXT NOT NULL,
            event_id        TEXT,
            payload         JSONB NOT NULL,
            event_timestamp TEXT,
            received_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            message_id      TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """
    )
    op.execute(
        """
        CREATE INDEX ix_raw_events_source_received_at
            ON raw_events (source, received_at DESC);
    """
    )

    op.execute(
        """
        CREATE TABLE normalized_events (
            unified_campaign_id TEXT NOT NULL,
            source_platform     TEXT NOT NULL,
            event_date          DATE NOT NULL,
            campaign_name       TEXT NOT NULL,
            impressions         BIGINT NOT NULL DEFAULT 0 CHECK (impressions >= 0),
            clicks              BIGINT NOT NULL DEFAULT 0 CHECK (clicks >= 0),
            spend               NUMERIC(18, 6) NOT NULL DEFAULT 0,
            conversions         BIGINT NOT NULL DEFAULT 0 CHECK (conversions >= 0),
            created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (unified_campaign_id, source_platform, event_date)
        );
    """
    )
    op.execute(
        """
        CREATE INDEX ix_normalized_events_date_platform
            ON normalized_events (event_date DESC, source_platform);
    """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS normalized_events CASCADE")
    op.execute("DROP TABLE IF EXISTS raw_events CASCADE")
