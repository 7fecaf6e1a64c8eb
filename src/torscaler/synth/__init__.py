"""Synthetic consensus generation."""

from .identifiers import FingerprintGenerator, NicknameGenerator
from .synthesizer import SyntheticTarget, flag_counts, resolve_population, synthesize
from .vertical import (
    FlagGroupWeights,
    cutoff_lower_and_redistribute,
    scale_by_bandwidth_rank,
    scale_flag_groups,
)

__all__ = [
    "FingerprintGenerator",
    "FlagGroupWeights",
    "NicknameGenerator",
    "SyntheticTarget",
    "cutoff_lower_and_redistribute",
    "flag_counts",
    "resolve_population",
    "scale_by_bandwidth_rank",
    "scale_flag_groups",
    "synthesize",
]
