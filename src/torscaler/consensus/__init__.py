"""Consensus document model, parser and serializer."""

from .annotations import AnnotationTable, RelayAnnotation
from .bandwidth_weights import (
    compute_bandwidth_weights,
    recompute_bandwidth_weights,
    verify_bandwidth_weights,
)
from .document import (
    BANDWIDTH_WEIGHT_KEYS,
    PARAM_RANGES,
    ConsensusDocument,
    Flag,
    RouterEntry,
)
from .parser import ConsensusParser, parse, parse_file
from .writer import serialize, write_file

__all__ = [
    "AnnotationTable",
    "BANDWIDTH_WEIGHT_KEYS",
    "ConsensusDocument",
    "ConsensusParser",
    "Flag",
    "PARAM_RANGES",
    "RelayAnnotation",
    "RouterEntry",
    "compute_bandwidth_weights",
    "parse",
    "parse_file",
    "recompute_bandwidth_weights",
    "serialize",
    "verify_bandwidth_weights",
    "write_file",
]
