from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import PipelineError


class Stage(str, Enum):
    """Per-message states, in order."""

    RECEIVED = "received"
    PARSED = "parsed"
    RAW_PERSISTED = "raw_persisted"
    NORMALIZED = "normalized"
    NORMALIZED_PERSISTED = "normalized_persisted"
    ACKNOWLEDGED = "acknowledged"


class FailureStage(str, Enum):
    """Transition that failed (the ``Failed(stage)`` absorbing state)."""

    PARSE = "parse"
    RAW_WRITE = "raw_write"
    NORMALIZE = "normalize"
    NORMALIZED_WRITE = "normalized_write"
    ACK = "ack"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PipelineOutcome:
    """Result of running one queue message through the pipeline.

    Attributes:
        message_id: Queue message id
        stage: Last stage reached successfully
        failed_stage: Transition that failed, None on success
        error: Failure cause (one of the adflow error kinds)
        source: Event source tag once parsed
        duration_ms: Wall time spent in the pipeline
    """

    message_id: str
    stage: Stage
    failed_stage: Optional[FailureStage] = None
    error: Optional[PipelineError] = None
    source: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def acknowledged(self) -> bool:
        return self.stage is Stage.ACKNOWLEDGED

    @property
    def failed(self) -> bool:
        return self.failed_stage is not None

    @property
    def needs_reconciliation(self) -> bool:
        """Raw record persisted but normalized row missing."""
        return self.failed_stage is FailureStage.NORMALIZED_WRITE
