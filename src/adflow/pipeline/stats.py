from __future__ import annotations

from dataclasses import dataclass
from time import monotonic
from types import MappingProxyType
from typing import Callable, Mapping

from .outcome import FailureStage, PipelineOutcome


@dataclass(frozen=True)
class StatsSnapshot:
    """Immutable view of pipeline counters at one point in time."""

    received: int
    acknowledged: int
    failed: int
    failures_by_stage: Mapping[str, int]
    reconciliation_needed: int
    uptime_seconds: float

    @property
    def error_count(self) -> int:
        return self.failed

    @property
    def success_rate(self) -> float:
        """Percentage of finished messages that were acknowledged."""
        total = self.acknowledged + self.failed
        return (self.acknowledged / total) * 100 if total > 0 else 0.0

    @property
    def events_per_second(self) -> float:
        return self.acknowledged / self.uptime_seconds if self.uptime_seconds > 0 else 0.0


class PipelineStats:
    """Counters owned by one pipeline instance; read through ``snapshot()``."""

    def __init__(self, clock: Callable[[], float] = monotonic):
        self._clock = clock
        self._started = clock()
        self._received = 0
        self._acknowledged = 0
        self._failures: dict[str, int] = {s.value: 0 for s in FailureStage}
        self._reconciliation = 0

    def record_received(self) -> None:
        self._received += 1

    def record(self, outcome: PipelineOutcome) -> None:
        if outcome.acknowledged:
            self._acknowledged += 1
            return
        if outcome.failed_stage is not None:
            self.record_failure(outcome.failed_stage)
        if outcome.needs_reconciliation:
            self._reconciliation += 1

    def record_failure(self, stage: FailureStage) -> None:
        self._failures[stage.value] += 1

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(
            received=self._received,
            acknowledged=self._acknowledged,
            failed=sum(self._failures.values()),
            failures_by_stage=MappingProxyType(dict(self._failures)),
            reconciliation_needed=self._reconciliation,
            uptime_seconds=self._clock() - self._started,
        )
