"""Batch orchestration and the command line interface."""

from .config import ScalingConfig
from .scaling_pipeline import (
    HistoricalInput,
    HistoricalRecord,
    ScalingPipeline,
    ScalingRunResult,
    TargetOutcome,
    records_to_dataframe,
)

__all__ = [
    "HistoricalInput",
    "HistoricalRecord",
    "ScalingConfig",
    "ScalingPipeline",
    "ScalingRunResult",
    "TargetOutcome",
    "records_to_dataframe",
]
