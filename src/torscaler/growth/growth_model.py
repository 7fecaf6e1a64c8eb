"""Fit growth curves over a series of historical feature sets.

Population is modelled against the scale marker of each input (a date or an
explicit size). Every other quantity is modelled against the router count,
since role distribution and bandwidth follow network size more closely than
calendar time.

Curves
------
- ``population``: router count vs scale.
- ``aggregate_bandwidth``: total bandwidth vs population.
- ``flag_prevalence[<Flag>]``: share of routers carrying the flag vs population.
- ``bandwidth_shape[q<level>]``: bandwidth quantile divided by the mean
  bandwidth vs population, one curve per quantile level.
- ``family_size_share[<size>]``: share of family groups of that size vs
  population, over the union of observed sizes.
- ``as_coverage`` and ``as_size_share[<size>]``: same for AS groups.

Quantities that are not selected are carried forward from the newest
feature set as constant curves.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from torscaler.consensus.document import EPOCH, Flag
from torscaler.errors import InsufficientDataError
from torscaler.history.features import FeatureSet

from .regression import ExtrapolationMethod, FittedCurve, carry_forward, fit_curve

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


class Quantity(str, Enum):
    POPULATION = "population"
    BANDWIDTH = "bandwidth"
    FLAGS = "flags"
    FAMILIES = "families"
    AS = "as"

    @classmethod
    def parse(cls, value: object) -> "Quantity":
        if isinstance(value, cls):
            return value
        token = str(value).strip().lower()
        try:
            return cls(token)
        except ValueError as exc:
            choices = ", ".join(quantity.value for quantity in cls)
            raise ValueError(f"Unknown quantity {value!r} (choose from {choices})") from exc


class ScaleKind(str, Enum):
    """How the scale marker of a historical input is derived."""

    TIME = "time"
    POPULATION = "population"


DEFAULT_METHODS: Dict[Quantity, ExtrapolationMethod] = {
    Quantity.POPULATION: ExtrapolationMethod.LINEAR,
    Quantity.BANDWIDTH: ExtrapolationMethod.LINEAR,
    Quantity.FLAGS: ExtrapolationMethod.LINEAR,
    Quantity.FAMILIES: ExtrapolationMethod.CONSTANT,
    Quantity.AS: ExtrapolationMethod.CONSTANT,
}


def date_to_scale(moment: datetime) -> float:
    """Scale marker for a timestamp: days since the Unix epoch."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH).total_seconds() / SECONDS_PER_DAY


def scale_to_date(scale: float) -> datetime:
    return datetime.fromtimestamp(round(scale * SECONDS_PER_DAY), tz=timezone.utc)


@dataclass(frozen=True)
class GrowthSettings:
    """Which quantities to model and with which functional form."""

    quantities: FrozenSet[Quantity] = frozenset(Quantity)
    methods: Mapping[Quantity, ExtrapolationMethod] = field(default_factory=lambda: dict(DEFAULT_METHODS))
    shape_method: ExtrapolationMethod = ExtrapolationMethod.LINEAR
    scale_by: ScaleKind = ScaleKind.TIME

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantities", frozenset(Quantity.parse(q) for q in self.quantities))
        methods = dict(DEFAULT_METHODS)
        for key, value in dict(self.methods).items():
            methods[Quantity.parse(key)] = ExtrapolationMethod.parse(value)
        object.__setattr__(self, "methods", methods)
        object.__setattr__(self, "shape_method", ExtrapolationMethod.parse(self.shape_method))
        object.__setattr__(self, "scale_by", ScaleKind(self.scale_by))

    def method_for(self, quantity: Quantity) -> ExtrapolationMethod:
        return self.methods[quantity]

    def models(self, quantity: Quantity) -> bool:
        return quantity in self.quantities


@dataclass(frozen=True)
class Estimate:
    value: float
    lower: Optional[float] = None
    upper: Optional[float] = None
    extrapolated: bool = False


@dataclass(frozen=True)
class GrowthModel:
    population: FittedCurve
    aggregate_bandwidth: FittedCurve
    flag_prevalence: Dict[Flag, FittedCurve]
    quantile_levels: Tuple[float, ...]
    bandwidth_shape: Tuple[FittedCurve, ...]
    family_size_shares: Dict[int, FittedCurve]
    as_coverage: FittedCurve
    as_size_shares: Dict[int, FittedCurve]
    latest: FeatureSet
    scale_range: Tuple[float, float]
    population_range: Tuple[int, int]
    settings: GrowthSettings = field(default_factory=GrowthSettings)

    def curves(self) -> Iterator[FittedCurve]:
        yield self.population
        yield self.aggregate_bandwidth
        for flag in Flag.vocabulary():
            yield self.flag_prevalence[flag]
        yield from self.bandwidth_shape
        for size in sorted(self.family_size_shares):
            yield self.family_size_shares[size]
        yield self.as_coverage
        for size in sorted(self.as_size_shares):
            yield self.as_size_shares[size]

    def estimate(self, curve: FittedCurve, x: float) -> Estimate:
        value = curve.evaluate(x)
        bounds = curve.interval(x)
        extrapolated = curve.is_extrapolating(x)
        if extrapolated:
            logger.debug(
                "%s evaluated at %.6g outside observed range [%.6g, %.6g]",
                curve.name,
                x,
                curve.x_min,
                curve.x_max,
            )
        if bounds is None:
            return Estimate(value=value, extrapolated=extrapolated)
        return Estimate(value=value, lower=bounds[0], upper=bounds[1], extrapolated=extrapolated)

    def is_extrapolating(self, scale: float) -> bool:
        return scale < self.scale_range[0] or scale > self.scale_range[1]

    # ---- per-quantity evaluation ----
    def population_at(self, scale: float) -> Estimate:
        return self.estimate(self.population, scale)

    def aggregate_bandwidth_at(self, population: float) -> Estimate:
        return self.estimate(self.aggregate_bandwidth, population)

    def flag_prevalence_at(self, population: float) -> Dict[Flag, float]:
        return {flag: self.flag_prevalence[flag].evaluate(population) for flag in Flag.vocabulary()}

    def bandwidth_shape_at(self, population: float) -> np.ndarray:
        return np.array([curve.evaluate(population) for curve in self.bandwidth_shape], dtype=float)

    def family_size_shares_at(self, population: float) -> Dict[int, float]:
        return {size: curve.evaluate(population) for size, curve in sorted(self.family_size_shares.items())}

    def as_coverage_at(self, population: float) -> float:
        return self.as_coverage.evaluate(population)

    def as_size_shares_at(self, population: float) -> Dict[int, float]:
        return {size: curve.evaluate(population) for size, curve in sorted(self.as_size_shares.items())}


# ---- fitting helpers ----
def _check_scales(points: Sequence[Tuple[float, FeatureSet]]) -> None:
    distinct = {float(scale) for scale, _ in points}
    if len(distinct) < 2:
        raise InsufficientDataError(
            f"Fitting needs at least two distinct scale values, got {len(distinct)}",
            quantity=Quantity.POPULATION.value,
        )


def _latest(points: Sequence[Tuple[float, FeatureSet]]) -> FeatureSet:
    # Ties on valid_after resolve to the later input.
    best_idx = 0
    for idx, (_, features) in enumerate(points):
        if features.valid_after >= points[best_idx][1].valid_after:
            best_idx = idx
    return points[best_idx][1]


def _fit_or_carry(
    modelled: bool,
    xs: Sequence[float],
    ys: Sequence[float],
    method: ExtrapolationMethod,
    name: str,
    latest_x: float,
    latest_y: float,
) -> FittedCurve:
    if not modelled:
        return carry_forward(name, latest_y, latest_x)
    curve = fit_curve(xs, ys, method, name)
    logger.debug(
        "Fitted %s (%s): intercept=%.6g slope=%.6g n=%d",
        name,
        curve.method.value,
        curve.intercept,
        curve.slope,
        curve.n_points,
    )
    return curve


def _population_method(
    modelled: bool, varied: bool, method: ExtrapolationMethod, quantity: Quantity, population: float
) -> ExtrapolationMethod:
    """Fall back to a constant curve when the router count never changes."""
    if not modelled or varied or method is ExtrapolationMethod.CONSTANT:
        return method
    logger.warning(
        "Router count is %d in every input; fitting %s as constant instead of %s",
        int(population),
        quantity.value,
        method.value,
    )
    return ExtrapolationMethod.CONSTANT


def _share_curves(
    modelled: bool,
    populations: Sequence[float],
    shares: Sequence[Mapping[int, float]],
    latest_shares: Mapping[int, float],
    method: ExtrapolationMethod,
    prefix: str,
    latest_x: float,
) -> Dict[int, FittedCurve]:
    sizes: Iterable[int] = sorted({size for mapping in shares for size in mapping}) if modelled else sorted(latest_shares)
    curves: Dict[int, FittedCurve] = {}
    for size in sizes:
        ys = [mapping.get(size, 0.0) for mapping in shares]
        curves[size] = _fit_or_carry(
            modelled,
            populations,
            ys,
            method,
            f"{prefix}[{size}]",
            latest_x,
            latest_shares.get(size, 0.0),
        )
    return curves


def fit(
    points: Sequence[Tuple[float, FeatureSet]],
    settings: Optional[GrowthSettings] = None,
) -> GrowthModel:
    """Fit a :class:`GrowthModel` to ``(scale, FeatureSet)`` pairs.

    The input order is kept as given; identical input yields an identical
    model.
    """
    settings = settings or GrowthSettings()
    points = [(float(scale), features) for scale, features in points]
    _check_scales(points)

    levels = points[0][1].quantile_levels
    for _, features in points:
        if tuple(features.quantile_levels) != tuple(levels):
            raise ValueError("All feature sets must share the same quantile levels")

    latest = _latest(points)
    latest_pop = float(latest.population)
    scales = [scale for scale, _ in points]
    populations = [float(features.population) for _, features in points]
    latest_scale = next(scale for scale, features in points if features is latest)
    varied = len(set(populations)) >= 2

    population = _fit_or_carry(
        settings.models(Quantity.POPULATION),
        scales,
        populations,
        settings.method_for(Quantity.POPULATION),
        "population",
        latest_scale,
        latest_pop,
    )

    modelled_bw = settings.models(Quantity.BANDWIDTH)
    bw_method = _population_method(
        modelled_bw, varied, settings.method_for(Quantity.BANDWIDTH), Quantity.BANDWIDTH, latest_pop
    )
    shape_method = settings.shape_method if varied else ExtrapolationMethod.CONSTANT
    aggregate_bandwidth = _fit_or_carry(
        modelled_bw,
        populations,
        [float(features.total_bandwidth) for _, features in points],
        bw_method,
        "aggregate_bandwidth",
        latest_pop,
        float(latest.total_bandwidth),
    )
    shapes = [features.bandwidth_shape() for _, features in points]
    latest_shape = latest.bandwidth_shape()
    bandwidth_shape = tuple(
        _fit_or_carry(
            modelled_bw,
            populations,
            [float(shape[idx]) for shape in shapes],
            shape_method,
            f"bandwidth_shape[q{level:.2f}]",
            latest_pop,
            float(latest_shape[idx]),
        )
        for idx, level in enumerate(levels)
    )

    modelled_flags = settings.models(Quantity.FLAGS)
    flag_method = _population_method(
        modelled_flags, varied, settings.method_for(Quantity.FLAGS), Quantity.FLAGS, latest_pop
    )
    flag_prevalence = {
        flag: _fit_or_carry(
            modelled_flags,
            populations,
            [features.flag_prevalence.get(flag, 0.0) for _, features in points],
            flag_method,
            f"flag_prevalence[{flag.value}]",
            latest_pop,
            latest.flag_prevalence.get(flag, 0.0),
        )
        for flag in Flag.vocabulary()
    }

    modelled_families = settings.models(Quantity.FAMILIES)
    family_method = _population_method(
        modelled_families, varied, settings.method_for(Quantity.FAMILIES), Quantity.FAMILIES, latest_pop
    )
    family_size_shares = _share_curves(
        modelled_families,
        populations,
        [features.family_size_shares() for _, features in points],
        latest.family_size_shares(),
        family_method,
        "family_size_share",
        latest_pop,
    )

    modelled_as = settings.models(Quantity.AS)
    as_method = _population_method(modelled_as, varied, settings.method_for(Quantity.AS), Quantity.AS, latest_pop)
    as_coverage = _fit_or_carry(
        modelled_as,
        populations,
        [features.as_coverage for _, features in points],
        as_method,
        "as_coverage",
        latest_pop,
        latest.as_coverage,
    )
    as_size_shares = _share_curves(
        modelled_as,
        populations,
        [features.as_size_shares() for _, features in points],
        latest.as_size_shares(),
        as_method,
        "as_size_share",
        latest_pop,
    )

    model = GrowthModel(
        population=population,
        aggregate_bandwidth=aggregate_bandwidth,
        flag_prevalence=flag_prevalence,
        quantile_levels=tuple(levels),
        bandwidth_shape=bandwidth_shape,
        family_size_shares=family_size_shares,
        as_coverage=as_coverage,
        as_size_shares=as_size_shares,
        latest=latest,
        scale_range=(min(scales), max(scales)),
        population_range=(int(min(populations)), int(max(populations))),
        settings=settings,
    )
    logger.info(
        "Fitted growth model on %d feature sets (scale %.6g..%.6g, %d curves)",
        len(points),
        model.scale_range[0],
        model.scale_range[1],
        sum(1 for _ in model.curves()),
    )
    return model


def growth_model_to_dataframe(model: GrowthModel) -> pd.DataFrame:
    """One row per fitted curve, for reporting."""
    rows: List[Dict[str, object]] = []
    for curve in model.curves():
        rows.append(
            {
                "curve": curve.name,
                "method": curve.method.value,
                "intercept": curve.intercept,
                "slope": curve.slope,
                "x_min": curve.x_min,
                "x_max": curve.x_max,
                "n_points": curve.n_points,
                "residual_std": curve.residual_std if curve.residual_std is not None else math.nan,
            }
        )
    return pd.DataFrame(rows)


__all__ = [
    "DEFAULT_METHODS",
    "Estimate",
    "GrowthModel",
    "GrowthSettings",
    "Quantity",
    "ScaleKind",
    "date_to_scale",
    "fit",
    "growth_model_to_dataframe",
    "scale_to_date",
]
