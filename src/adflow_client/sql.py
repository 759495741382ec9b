from __future__ import annotations

from typing import Sequence

from psycopg import sql as psql

# Canonical column sets + conflict/update specs (match migrations/versions/0001)
TABLE_PRESETS: dict[str, dict] = {
    "raw_events": {
        "cols": [
            "dedupe_key",
            "source",
            "event_id",
            "payload",
            "event_timestamp",
            "received_at",
            "message_id",
        ],
        "conflict": ["dedupe_key"],
        # raw rows are write-once; a redelivery must not touch the first copy
        "update": [],
    },
    "normalized_events": {
        "cols": [
            "unified_campaign_id",
            "source_platform",
            "event_date",
            "campaign_name",
            "impressions",
            "clicks",
            "spend",
            "conversions",
        ],
        "conflict": ["unified_campaign_id", "source_platform", "event_date"],
        "update": ["campaign_name", "impressions", "clicks", "spend", "conversions"],
    },
}


def upsert_statement(
    table: str,
    cols: Sequence[str],
    conflict_cols: Sequence[str],
    update_cols: Sequence[str],
) -> psql.Composed:
    """INSERT ... ON CONFLICT ... DO UPDATE (or DO NOTHING) with named parameters (%(name)s)."""
    ins_cols = psql.SQL(", ").join(psql.Identifier(c) for c in cols)
    ins_vals = psql.SQL(", ").join(psql.Placeholder(c) for c in cols)
    conflict = psql.SQL(", ").join(psql.Identifier(c) for c in conflict_cols)
    if not update_cols:
        return psql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO NOTHING").format(
            psql.Identifier(table), ins_cols, ins_vals, conflict
        )
    setlist = psql.SQL(", ").join(
        psql.SQL("{} = EXCLUDED.{}").format(psql.Identifier(c), psql.Identifier(c))
        for c in update_cols
    )
    return psql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO UPDATE SET {}").format(
        psql.Identifier(table), ins_cols, ins_vals, conflict, setlist
    )


def preset_upsert(table: str) -> psql.Composed:
    preset = TABLE_PRESETS[table]
    return upsert_statement(table, preset["cols"], preset["conflict"], preset["update"])
