from datetime import datetime, timezone
from decimal import Decimal

from adflow.errors import NormalizationError
from adflow.models import Event, NormalizedEvent, RawRecord
from adflow.normalizers import MetaNormalizer

from tests.conftest import meta_event


def normalize(body):
    return MetaNormalizer().normalize(Event.model_validate(body))


def test_meta_scenario():
    result = normalize(meta_event())
    assert isinstance(result, NormalizedEvent)
    assert result.model_dump() == {
        "unified_campaign_id": "c1",
        "campaign_name": "Camp",
        "source_platform": "meta",
        "event_date": "2024-01-01",
        "impressions": 100,
        "clicks": 10,
        "spend": Decimal("5.5"),
        "conversions": 2,
    }


def test_missing_metrics_default_to_zero_and_name_to_unknown():
    body = {"source": "meta", "payload": {"campaign_id": 42, "date_start": "2024-03-01", "insights": {}}}
    result = normalize(body)
    assert isinstance(result, NormalizedEvent)
    assert result.unified_campaign_id == "42"
    assert result.campaign_name == "Unknown Campaign"
    assert (result.impressions, result.clicks, result.spend, result.conversions) == (0, 0, 0, 0)


def test_numeric_strings_are_accepted():
    body = meta_event()
    body["payload"]["insights"] = {"impressions": "1200", "spend": "19.99"}
    result = normalize(body)
    assert result.impressions == 1200
    assert result.spend == Decimal("19.99")


def test_non_numeric_metric_is_an_error():
    body = meta_event()
    body["payload"]["insights"]["clicks"] = "many"
    result = normalize(body)
    assert isinstance(result, NormalizationError)
    assert "clicks" in str(result)


def test_negative_counts_are_rejected():
    body = meta_event()
    body["payload"]["insights"]["impressions"] = -1
    assert isinstance(normalize(body), NormalizationError)


def test_missing_campaign_id_or_insights():
    no_id = meta_event()
    del no_id["payload"]["campaign_id"]
    assert isinstance(normalize(no_id), NormalizationError)

    no_insights = meta_event()
    no_insights["payload"]["insights"] = [1, 2]
    assert isinstance(normalize(no_insights), NormalizationError)


def test_date_falls_back_to_timestamp_then_receipt():
    body = meta_event(timestamp="2024-05-06T10:00:00Z")
    del body["payload"]["date_start"]
    assert normalize(body).event_date == "2024-05-06"

    del body["timestamp"]
    record = RawRecord(
        **Event.model_validate(body).model_dump(),
        received_at=datetime(2024, 7, 8, 23, 59, tzinfo=timezone.utc),
    )
    assert MetaNormalizer().normalize(record).event_date == "2024-07-08"

    # plain event without any date source
    assert isinstance(normalize(body), NormalizationError)
