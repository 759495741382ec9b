from __future__ import annotations

from ..errors import NormalizationError
from ..models import Event
from .base import (
    UNKNOWN_CAMPAIGN,
    NormalizeResult,
    as_mapping,
    build,
    fallback_date,
    metric_decimal,
    metric_int,
)


class MetaNormalizer:
    """Meta (Facebook) Ads insights.

    Payload contract (fields at the payload root)::

        {"campaign_id": "c1", "campaign_name": "Camp", "date_start": "2024-01-01",
         "insights": {"impressions": 100, "clicks": 10, "spend": 5.5, "conversions": 2}}

    ``spend`` is already a decimal currency amount.
    """

    source = "meta"

    def normalize(self, event: Event) -> NormalizeResult:
        payload = event.payload
        campaign_id = payload.get("campaign_id")
        if not campaign_id:
            return NormalizationError("Invalid Meta payload: missing campaign_id")
        try:
            insights = as_mapping(payload, "insights", "Meta")
            return build(
                self.source,
                unified_campaign_id=str(campaign_id),
                campaign_name=str(payload.get("campaign_name") or UNKNOWN_CAMPAIGN),
                event_date=payload.get("date_start") or fallback_date(event),
                impressions=metric_int(insights, "impressions"),
                clicks=metric_int(insights, "clicks"),
                spend=metric_decimal(insights, "spend"),
                conversions=metric_int(insights, "conversions"),
            )
        except NormalizationError as exc:
            return exc
