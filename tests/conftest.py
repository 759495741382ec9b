"""
Pytest configuration and fixtures for adflow.

Provides cross-platform event loop configuration, in-memory adapters and
event payload builders.
"""

import asyncio
import json
import sys

import pytest

from adflow.coordinator import RetryPolicy
from adflow.normalizers import default_registry
from adflow.pipeline import DualSinkPipeline
from adflow_client import InMemoryNormalizedStore, InMemoryQueue, InMemoryRawStore

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def meta_event(campaign_id="c1", **overrides):
    event = {
        "source": "meta",
        "payload": {
            "campaign_id": campaign_id,
            "campaign_name": "Camp",
            "insights": {"impressions": 100, "clicks": 10, "spend": 5.5, "conversions": 2},
            "date_start": "2024-01-01",
        },
    }
    event.update(overrides)
    return event


def google_event(resource_name="customers/1/campaigns/987", **metrics):
    return {
        "source": "google",
        "payload": {
            "campaign": {"resource_name": resource_name, "name": "Brand"},
            "metrics": {
                "date": "2024-02-03",
                "impressions": 1000,
                "clicks": 50,
                "cost_micros": 12_500_000,
                "conversions": 3,
                **metrics,
            },
        },
    }


@pytest.fixture
def fast_retry():
    """Retry policy with millisecond backoffs."""
    return RetryPolicy(max_attempts=3, initial_backoff_ms=1, max_backoff_ms=5, jitter=False)


@pytest.fixture
def queue():
    return InMemoryQueue()


@pytest.fixture
def raw_store():
    return InMemoryRawStore()


@pytest.fixture
def normalized_store():
    return InMemoryNormalizedStore()


@pytest.fixture
def pipeline(queue, raw_store, normalized_store, fast_retry):
    return DualSinkPipeline(
        queue=queue,
        raw_store=raw_store,
        normalized_store=normalized_store,
        registry=default_registry(),
        retry_policy=fast_retry,
    )


@pytest.fixture
def publish_json(queue):
    """Publish a dict as a JSON body onto the in-memory queue."""

    async def _publish(obj):
        return await queue.publish(json.dumps(obj))

    return _publish
