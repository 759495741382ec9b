from .outcome import FailureStage, PipelineOutcome, Stage
from .stats import PipelineStats, StatsSnapshot
from .buffered import BufferedWriter
from .item_pipeline import DualSinkPipeline, parse_event

__all__ = [
    "Stage",
    "FailureStage",
    "PipelineOutcome",
    "PipelineStats",
    "StatsSnapshot",
    "BufferedWriter",
    "DualSinkPipeline",
    "parse_event",
]
