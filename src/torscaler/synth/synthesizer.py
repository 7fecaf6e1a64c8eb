"""Synthesize a consensus document from a fitted growth model.

Steps, in the order random numbers are consumed:

1. Router count ``N`` from the population curve at the target scale (or the
   explicit population of the target), rounded half up.
2. Aggregate bandwidth ``B`` at ``N``; ``N`` draws from the bandwidth shape at
   ``N`` by inverse-CDF sampling, rescaled and apportioned so the integers sum
   to ``round(B)`` exactly.
3. Family groups partitioning the ``N`` routers, then AS groups over
   ``round(coverage * N)`` routers.
4. For each flag, exactly ``round(prevalence * N)`` routers chosen uniformly
   without replacement, independently of the other flags.
5. Identifiers from counters keyed by the target.
6. Consensus parameters and bandwidth weights carried forward from the newest
   historical document, or weights recomputed from the synthetic routers.

Any model value that is non-finite or outside its allowed range raises
:class:`InvalidTargetError`; values are never clamped into range
(shares within 1e-9 of 0 or 1 are read as the bound).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.random import Generator

from torscaler.consensus.bandwidth_weights import DEFAULT_WEIGHT_SCALE, compute_bandwidth_weights
from torscaler.consensus.document import INT32_MAX, UINT32_MAX, ConsensusDocument, Flag, RouterEntry, as_utc
from torscaler.errors import InvalidTargetError
from torscaler.growth.growth_model import GrowthModel, ScaleKind, date_to_scale, scale_to_date

from .identifiers import FingerprintGenerator, NicknameGenerator, descriptor_digest, router_address

logger = logging.getLogger(__name__)

# Start of the private-use 32-bit AS number range (RFC 6996).
PRIVATE_ASN_BASE = 4200000000
PUBLISHED_OFFSET = timedelta(hours=1)
EXIT_POLICY_ACCEPT = "accept 1-65535"
EXIT_POLICY_REJECT = "reject 1-65535"
SHARE_TOLERANCE = 1e-9


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class SyntheticTarget:
    """What to synthesize: exactly one of population, date or scale."""

    population: Optional[int] = None
    date: Optional[datetime] = None
    scale: Optional[float] = None
    label: Optional[str] = None

    def __post_init__(self) -> None:
        given = [name for name in ("population", "date", "scale") if getattr(self, name) is not None]
        if len(given) != 1:
            raise ValueError("A target needs exactly one of population, date or scale")
        if self.date is not None:
            object.__setattr__(self, "date", as_utc(self.date))

    @classmethod
    def for_population(cls, population: int, label: Optional[str] = None) -> "SyntheticTarget":
        return cls(population=int(population), label=label)

    @classmethod
    def for_date(cls, date: datetime, label: Optional[str] = None) -> "SyntheticTarget":
        return cls(date=date, label=label)

    @classmethod
    def for_scale(cls, scale: float, label: Optional[str] = None) -> "SyntheticTarget":
        return cls(scale=float(scale), label=label)

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "SyntheticTarget":
        if not isinstance(data, Mapping):
            raise TypeError("Target entry must be a mapping")
        label = data.get("label")
        label = str(label) if label is not None else None
        if data.get("population") is not None:
            return cls.for_population(int(data["population"]), label)
        if data.get("date") is not None:
            raw = data["date"]
            date = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
            return cls.for_date(date, label)
        if data.get("scale") is not None:
            return cls.for_scale(float(data["scale"]), label)
        raise ValueError("Target entry needs one of 'population', 'date' or 'scale'")

    def to_mapping(self) -> Dict[str, object]:
        data: Dict[str, object] = {}
        if self.population is not None:
            data["population"] = self.population
        if self.date is not None:
            data["date"] = self.date.isoformat()
        if self.scale is not None:
            data["scale"] = self.scale
        if self.label is not None:
            data["label"] = self.label
        return data

    @property
    def key(self) -> str:
        if self.population is not None:
            return f"population={self.population}"
        if self.date is not None:
            return f"date={self.date.strftime('%Y-%m-%dT%H:%M:%S')}"
        return f"scale={self.scale:g}"

    @property
    def name(self) -> str:
        return self.label or self.key


# ---- model evaluation ----
def _require_finite(value: float, what: str, target: SyntheticTarget) -> float:
    if not math.isfinite(value):
        raise InvalidTargetError(f"{what} is not finite ({value}) for target {target.name}", target=target)
    return value


def _require_non_negative(value: float, what: str, target: SyntheticTarget) -> float:
    _require_finite(value, what, target)
    if value < 0:
        raise InvalidTargetError(f"{what} is negative ({value:.6g}) for target {target.name}", target=target)
    return value


def _require_share(value: float, what: str, target: SyntheticTarget) -> float:
    _require_finite(value, what, target)
    # Float noise around the bounds of a share.
    if -SHARE_TOLERANCE <= value < 0.0:
        return 0.0
    if 1.0 < value <= 1.0 + SHARE_TOLERANCE:
        return 1.0
    _require_non_negative(value, what, target)
    if value > 1.0:
        raise InvalidTargetError(f"{what} exceeds 1 ({value:.6g}) for target {target.name}", target=target)
    return value


def _target_scale(model: GrowthModel, target: SyntheticTarget) -> Optional[float]:
    if target.scale is not None:
        return target.scale
    if target.date is not None:
        if model.settings.scale_by is not ScaleKind.TIME:
            raise InvalidTargetError(
                f"Target {target.name} is a date but the model is scaled by {model.settings.scale_by.value}",
                target=target,
            )
        return date_to_scale(target.date)
    return None


def resolve_population(model: GrowthModel, target: SyntheticTarget) -> int:
    """Router count for ``target``."""
    if target.population is not None:
        return round_half_up(_require_non_negative(float(target.population), "Population", target))
    scale = _target_scale(model, target)
    estimate = model.population_at(scale)
    value = _require_non_negative(estimate.value, "Population model", target)
    if model.is_extrapolating(scale):
        logger.warning(
            "Target %s: scale %.6g is outside the observed range [%.6g, %.6g]; population %.1f is extrapolated",
            target.name,
            scale,
            model.scale_range[0],
            model.scale_range[1],
            value,
        )
    return round_half_up(value)


def _valid_after(model: GrowthModel, target: SyntheticTarget) -> datetime:
    if target.date is not None:
        return target.date
    if target.scale is not None and model.settings.scale_by is ScaleKind.TIME:
        return scale_to_date(target.scale)
    return model.latest.valid_after


# ---- sampling ----
def apportion(values: np.ndarray, total: int) -> List[int]:
    """Integers proportional to ``values`` summing exactly to ``total``."""
    count = len(values)
    if count == 0:
        return []
    weight = float(values.sum())
    if weight > 0:
        exact = values * (total / weight)
    else:
        exact = np.full(count, total / count, dtype=float)
    floors = np.floor(exact).astype(np.int64)
    remainder = int(total - floors.sum())
    if remainder > 0:
        order = np.argsort(-(exact - floors), kind="stable")
        floors[order[:remainder]] += 1
    return [int(value) for value in floors]


def _sample_bandwidths(
    model: GrowthModel, population: int, target: SyntheticTarget, rng: Generator
) -> List[int]:
    aggregate = _require_non_negative(model.aggregate_bandwidth_at(population).value, "Aggregate bandwidth", target)
    total = round_half_up(aggregate)
    if population == 0:
        if total != 0:
            raise InvalidTargetError(
                f"Aggregate bandwidth {total} cannot be carried by 0 routers for target {target.name}",
                target=target,
            )
        return []
    if total > UINT32_MAX * population:
        raise InvalidTargetError(
            f"Aggregate bandwidth {total} cannot be carried by {population} routers", target=target
        )
    shape = model.bandwidth_shape_at(population)
    if not np.all(np.isfinite(shape)):
        raise InvalidTargetError(f"Bandwidth shape is not finite for target {target.name}", target=target)
    if np.any(shape < 0):
        raise InvalidTargetError(f"Bandwidth shape is negative for target {target.name}", target=target)
    if np.any(np.diff(shape) < 0):
        logger.debug("Target %s: bandwidth shape not monotone, sorting quantiles", target.name)
        shape = np.sort(shape)
    draws = np.interp(rng.random(population), np.asarray(model.quantile_levels, dtype=float), shape)
    bandwidths = apportion(draws, total)
    largest = max(bandwidths)
    if largest > UINT32_MAX:
        raise InvalidTargetError(
            f"Bandwidth shape gives one router {largest} (above {UINT32_MAX}) for target {target.name}",
            target=target,
        )
    return bandwidths


def _normalised_shares(
    shares: Mapping[int, float], what: str, target: SyntheticTarget
) -> Tuple[np.ndarray, np.ndarray]:
    sizes: List[int] = []
    weights: List[float] = []
    for size, share in sorted(shares.items()):
        _require_non_negative(share, f"{what} share for size {size}", target)
        if size >= 1 and share > 0:
            sizes.append(int(size))
            weights.append(float(share))
    if not sizes:
        return np.array([1], dtype=np.int64), np.array([1.0])
    probabilities = np.asarray(weights, dtype=float)
    return np.asarray(sizes, dtype=np.int64), probabilities / probabilities.sum()


def partition(total: int, sizes: np.ndarray, probabilities: np.ndarray, rng: Generator) -> List[int]:
    """Group sizes drawn from ``sizes``; the last group absorbs the remainder."""
    if total <= 0:
        return []
    # Every group holds at least one member, so ``total`` draws always suffice.
    draws = rng.choice(sizes, size=total, p=probabilities)
    groups: List[int] = []
    remaining = total
    for size in draws:
        size = int(size)
        if size >= remaining:
            groups.append(remaining)
            break
        groups.append(size)
        remaining -= size
    return groups


def _assign_groups(
    groups: Sequence[int], members: np.ndarray
) -> List[Tuple[int, np.ndarray]]:
    assigned = []
    offset = 0
    for idx, size in enumerate(groups):
        assigned.append((idx, members[offset : offset + size]))
        offset += size
    return assigned


def _sample_families(
    model: GrowthModel, population: int, target: SyntheticTarget, rng: Generator
) -> Tuple[List[Optional[str]], List[int]]:
    sizes, probabilities = _normalised_shares(model.family_size_shares_at(population), "Family size", target)
    groups = partition(population, sizes, probabilities, rng)
    families: List[Optional[str]] = [None] * population
    counter = 0
    for _, members in _assign_groups(groups, rng.permutation(population)):
        if len(members) < 2:
            continue
        counter += 1
        for member in members:
            families[int(member)] = f"family{counter}"
    return families, groups


def _sample_asns(
    model: GrowthModel, population: int, target: SyntheticTarget, rng: Generator
) -> List[Optional[int]]:
    coverage = _require_share(model.as_coverage_at(population), "AS coverage", target)
    covered = min(round_half_up(coverage * population), population)
    sizes, probabilities = _normalised_shares(model.as_size_shares_at(population), "AS size", target)
    groups = partition(covered, sizes, probabilities, rng)
    asns: List[Optional[int]] = [None] * population
    members = rng.permutation(population)[:covered]
    for idx, group in _assign_groups(groups, members):
        for member in group:
            asns[int(member)] = PRIVATE_ASN_BASE + idx
    return asns


def flag_counts(model: GrowthModel, population: int, target: SyntheticTarget) -> Dict[Flag, int]:
    counts: Dict[Flag, int] = {}
    for flag, prevalence in model.flag_prevalence_at(population).items():
        share = _require_share(prevalence, f"{flag.value} prevalence", target)
        counts[flag] = min(round_half_up(share * population), population)
    return counts


def _sample_flags(
    model: GrowthModel, population: int, target: SyntheticTarget, rng: Generator
) -> List[set]:
    flags: List[set] = [set() for _ in range(population)]
    for flag, count in flag_counts(model, population, target).items():
        if count == 0:
            continue
        for member in rng.choice(population, size=count, replace=False):
            flags[int(member)].add(flag)
    return flags


def _recomputed_weights(
    routers: Sequence[RouterEntry], weight_scale: int, target: SyntheticTarget
) -> Dict[str, int]:
    weights = compute_bandwidth_weights(routers, weight_scale)
    out_of_range = [f"{key}={value}" for key, value in sorted(weights.items()) if not 0 <= value <= INT32_MAX]
    if out_of_range:
        raise InvalidTargetError(
            f"Recomputed bandwidth weights fail the range check for target {target.name}: "
            + ", ".join(out_of_range),
            target=target,
        )
    return weights


def synthesize(
    model: GrowthModel,
    target: SyntheticTarget,
    rng: Generator,
    *,
    recompute_bandwidth_weights: bool = False,
) -> ConsensusDocument:
    """Build a new :class:`ConsensusDocument` for ``target``."""
    population = resolve_population(model, target)
    scale = _target_scale(model, target)
    lo, hi = model.population_range
    if (scale is None or not model.is_extrapolating(scale)) and not lo <= population <= hi:
        logger.warning(
            "Target %s: %d routers is outside the observed population range [%d, %d]",
            target.name,
            population,
            lo,
            hi,
        )

    bandwidths = _sample_bandwidths(model, population, target, rng)
    families, family_groups = _sample_families(model, population, target, rng)
    asns = _sample_asns(model, population, target, rng)
    flags = _sample_flags(model, population, target, rng)

    valid_after = _valid_after(model, target)
    published = valid_after - PUBLISHED_OFFSET
    fingerprints = FingerprintGenerator(target.key)
    nicknames = NicknameGenerator()
    routers = []
    for idx in range(population):
        fingerprint = next(fingerprints)
        router_flags = flags[idx]
        exit_policy = EXIT_POLICY_ACCEPT if Flag.EXIT in router_flags else EXIT_POLICY_REJECT
        routers.append(
            RouterEntry(
                fingerprint=fingerprint,
                nickname=next(nicknames),
                bandwidth=bandwidths[idx],
                flags=frozenset(router_flags),
                family=families[idx],
                asn=asns[idx],
                digest=descriptor_digest(fingerprint),
                published=published,
                address=router_address(idx),
                exit_policy=exit_policy,
            )
        )

    params = dict(model.latest.params)
    weights = dict(model.latest.bandwidth_weights)
    # Parsed documents always list weights; only FeatureSets built by hand
    # (without extract) arrive here without them.
    if recompute_bandwidth_weights or not weights:
        weights = _recomputed_weights(routers, params.get("bwweightscale", DEFAULT_WEIGHT_SCALE), target)

    document = ConsensusDocument(
        valid_after=valid_after,
        routers=tuple(routers),
        params=params,
        bandwidth_weights=weights,
    )
    logger.info(
        "Synthesized %s: %d routers, %d bandwidth, %d family groups",
        target.name,
        document.population,
        document.total_bandwidth,
        sum(1 for size in family_groups if size > 1),
    )
    return document


__all__ = [
    "SyntheticTarget",
    "apportion",
    "flag_counts",
    "partition",
    "resolve_population",
    "round_half_up",
    "synthesize",
]
