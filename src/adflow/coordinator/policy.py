from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from ..errors import PipelineError, RetryableStoreError, TransientQueueError

ErrorClassifier = Callable[[Exception], bool]

_TRANSIENT_HINTS = ("timeout", "temporar", "busy", "retry", "throttl", "unavailable")


def default_retry_classifier(exc: Exception) -> bool:
    """Transient queue/store failures and timeouts are retryable; everything else is not."""
    if isinstance(exc, (TransientQueueError, RetryableStoreError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, PipelineError):
        return False
    msg = str(exc).lower()
    return any(hint in msg for hint in _TRANSIENT_HINTS)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with optional jitter.

    ``next_backoff_ms(attempt)`` is 1-based: attempt 1 waits ``initial_backoff_ms``.
    With jitter the delay is drawn from 50-100% of the computed value.
    """

    max_attempts: int = 3
    initial_backoff_ms: int = 50
    max_backoff_ms: int = 2000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    classify_retryable: ErrorClassifier = field(default=default_retry_classifier)

    def next_backoff_ms(self, attempt: int) -> int:
        base = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        delay = min(int(base), self.max_backoff_ms)
        if self.jitter:
            delay = int(random.uniform(delay * 0.5, delay))
        return delay

    def should_retry(self, exc: Exception, attempt: int) -> bool:
        return attempt < self.max_attempts and self.classify_retryable(exc)
