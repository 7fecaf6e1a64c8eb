"""Per-consensus feature extraction."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

import numpy as np

from torscaler.consensus.document import ConsensusDocument, Flag

DEFAULT_QUANTILE_POINTS = 21


def quantile_levels(points: int = DEFAULT_QUANTILE_POINTS) -> Tuple[float, ...]:
    """Evenly spaced quantile levels from 0 to 1 inclusive."""
    if points < 2:
        raise ValueError("At least two quantile points are required (0 and 1).")
    return tuple(float(level) for level in np.linspace(0.0, 1.0, int(points)))


def _histogram(group_sizes) -> Dict[int, int]:
    counts = Counter(group_sizes)
    return {size: counts[size] for size in sorted(counts)}


def _shares(histogram: Dict[int, int]) -> Dict[int, float]:
    total = sum(histogram.values())
    if total == 0:
        return {}
    return {size: count / total for size, count in histogram.items()}


@dataclass(frozen=True)
class FeatureSet:
    """Aggregates of one consensus, consumed by the growth-model fitter.

    ``family_sizes`` counts routers without a declared family as singleton
    groups. ``as_sizes`` only covers routers with a known AS; the share of
    those routers is ``as_coverage``. ``params`` and ``bandwidth_weights`` are
    copied from the document so the newest values can be carried forward.
    """

    valid_after: datetime
    population: int
    total_bandwidth: int
    flag_prevalence: Dict[Flag, float]
    family_sizes: Dict[int, int]
    as_coverage: float
    as_sizes: Dict[int, int]
    quantile_levels: Tuple[float, ...]
    bandwidth_quantiles: Tuple[float, ...]
    params: Dict[str, int] = field(default_factory=dict)
    bandwidth_weights: Dict[str, int] = field(default_factory=dict)

    @property
    def mean_bandwidth(self) -> float:
        return self.total_bandwidth / self.population if self.population else 0.0

    @property
    def family_share(self) -> float:
        """Share of routers belonging to a family of two or more relays."""
        if not self.population:
            return 0.0
        grouped = sum(size * count for size, count in self.family_sizes.items() if size > 1)
        return grouped / self.population

    def family_size_shares(self) -> Dict[int, float]:
        return _shares(self.family_sizes)

    def as_size_shares(self) -> Dict[int, float]:
        return _shares(self.as_sizes)

    def bandwidth_shape(self) -> np.ndarray:
        """Bandwidth quantiles relative to the mean bandwidth."""
        quantiles = np.asarray(self.bandwidth_quantiles, dtype=float)
        mean = self.mean_bandwidth
        if mean <= 0:
            return np.zeros_like(quantiles)
        return quantiles / mean


def extract(
    document: ConsensusDocument,
    levels: Optional[Tuple[float, ...]] = None,
) -> FeatureSet:
    """Compute the :class:`FeatureSet` of ``document`` (pure, deterministic)."""
    levels = tuple(levels) if levels is not None else quantile_levels()
    routers = document.routers
    population = len(routers)

    flag_counts = Counter(flag for router in routers for flag in router.flags)
    prevalence = {
        flag: (flag_counts[flag] / population if population else 0.0)
        for flag in Flag.vocabulary()
    }

    family_members = Counter(router.family for router in routers if router.family is not None)
    singletons = sum(1 for router in routers if router.family is None)
    family_sizes = _histogram(list(family_members.values()) + [1] * singletons)

    as_members = Counter(router.asn for router in routers if router.asn is not None)
    covered = sum(as_members.values())
    as_sizes = _histogram(as_members.values())

    bandwidths = np.fromiter((router.bandwidth for router in routers), dtype=float, count=population)
    if population:
        quantiles = np.quantile(bandwidths, levels)
    else:
        quantiles = np.zeros(len(levels))

    return FeatureSet(
        valid_after=document.valid_after,
        population=population,
        total_bandwidth=int(sum(router.bandwidth for router in routers)),
        flag_prevalence=prevalence,
        family_sizes=family_sizes,
        as_coverage=(covered / population) if population else 0.0,
        as_sizes=as_sizes,
        quantile_levels=levels,
        bandwidth_quantiles=tuple(float(value) for value in quantiles),
        params=dict(document.params),
        bandwidth_weights=dict(document.bandwidth_weights),
    )


__all__ = ["DEFAULT_QUANTILE_POINTS", "FeatureSet", "extract", "quantile_levels"]
