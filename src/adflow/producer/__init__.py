from .validation import EventValidator, validate_event
from .publisher import EventPublisher, PublishResult, PublisherStats

__all__ = [
    "EventValidator",
    "validate_event",
    "EventPublisher",
    "PublishResult",
    "PublisherStats",
]
