from __future__ import annotations

from decimal import Decimal

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

MICROS_PER_UNIT = Decimal(1_000_000)


class GoogleNormalizer:
    """Google Ads campaign report rows.

    Payload contract (nested ``campaign`` / ``metrics`` objects)::

        {"campaign": {"resource_name": "customers/1/campaigns/987", "name": "Brand"},
         "metrics": {"date": "2024-01-01", "impressions": 1000, "clicks": 50,
                     "cost_micros": 12500000, "conversions": 3}}

    The campaign id is the last segment of ``resource_name``; spend is reported
    in integer micros and divided by 1,000,000.
    """

    source = "google"

    def normalize(self, event: Event) -> NormalizeResult:
        try:
            campaign = as_mapping(event.payload, "campaign", "Google")
            metrics = as_mapping(event.payload, "metrics", "Google")

            resource_name = campaign.get("resource_name")
            if not resource_name or not isinstance(resource_name, str):
                return NormalizationError("Invalid Google payload: missing campaign.resource_name")
            campaign_id = resource_name.rstrip("/").split("/")[-1]
            if not campaign_id:
                return NormalizationError(
                    "Invalid Google payload: could not extract campaign ID from resource_name"
                )

            return build(
                self.source,
                unified_campaign_id=campaign_id,
                campaign_name=str(campaign.get("name") or UNKNOWN_CAMPAIGN),
                event_date=metrics.get("date") or fallback_date(event),
                impressions=metric_int(metrics, "impressions"),
                clicks=metric_int(metrics, "clicks"),
                spend=metric_decimal(metrics, "cost_micros") / MICROS_PER_UNIT,
                conversions=metric_int(metrics, "conversions"),
            )
        except NormalizationError as exc:
            return exc
