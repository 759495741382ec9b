"""
Pydantic data models for campaign events.

Event -> RawRecord (durable raw copy) -> NormalizedEvent (canonical row).
All models are frozen; they are created once and never mutated.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """Marketing-platform event as accepted by the HTTP boundary."""

    model_config = ConfigDict(frozen=True)

    source: str
    payload: Dict[str, Any]
    timestamp: Optional[str] = None
    id: Optional[str] = None

    @field_validator("source")
    @classmethod
    def _non_empty_source(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("source must be a non-empty string")
        return v


class RawRecord(Event):
    """Event plus receipt metadata; written once before normalization."""

    received_at: datetime = Field(default_factory=utc_now)
    message_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: Event, *, message_id: str | None = None) -> "RawRecord":
        return cls(**event.model_dump(), message_id=message_id)

    @property
    def dedupe_key(self) -> str:
        """Idempotent upsert key, stable across queue redeliveries."""
        if self.id:
            return f"{self.source}:{self.id}"
        canonical = json.dumps(
            {"source": self.source, "payload": self.payload, "timestamp": self.timestamp},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return f"{self.source}:sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"


class NormalizedEvent(BaseModel):
    """Canonical cross-platform campaign metrics row."""

    model_config = ConfigDict(frozen=True)

    unified_campaign_id: str
    campaign_name: str
    source_platform: str
    event_date: str
    impressions: int = 0
    clicks: int = 0
    spend: Decimal = Decimal("0")
    conversions: int = 0

    @field_validator("event_date")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        # accepts full ISO timestamps, keeps the calendar date only
        return date.fromisoformat(v[:10]).isoformat()

    @field_validator("impressions", "clicks", "conversions")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("metric counts must be >= 0")
        return v
