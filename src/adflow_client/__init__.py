"""
Infrastructure adapters for adflow.

Usage:
    from adflow_client import SqsQueueClient, RawEventStore, NormalizedEventStore

    queue = SqsQueueClient("https://sqs.us-east-1.amazonaws.com/123/campaign-events")
    raw = RawEventStore({"dsn": "postgresql://..."})
    normalized = NormalizedEventStore({"dsn": "postgresql://..."})
"""

from .memory import InMemoryNormalizedStore, InMemoryQueue, InMemoryRawStore
from .sqs import SqsQueueClient, create_sqs_client
from .stores import NormalizedEventStore, RawEventStore, StoreConfig, normalized_key

__version__ = "0.1.0"
__all__ = [
    "SqsQueueClient",
    "create_sqs_client",
    "RawEventStore",
    "NormalizedEventStore",
    "StoreConfig",
    "normalized_key",
    "InMemoryQueue",
    "InMemoryRawStore",
    "InMemoryNormalizedStore",
]
