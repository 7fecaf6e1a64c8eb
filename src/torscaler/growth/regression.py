"""Scalar regressions used to extrapolate consensus quantities."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

import numpy as np

from torscaler.errors import InsufficientDataError

logger = logging.getLogger(__name__)

# Two-sided 95 % normal quantile.
Z_95 = 1.959963984540054


class ExtrapolationMethod(str, Enum):
    """Functional forms a growth curve can take.

    All of them are fitted by least squares on (possibly log-transformed)
    axes:

    - ``linear``: y = a + b x
    - ``power_law``: y = a x^b (log y against log x)
    - ``exponential``: y = a e^(b x) (log y against x)
    - ``logarithmic``: y = a + b log x
    - ``constant``: y = a (the mean)
    """

    LINEAR = "linear"
    POWER_LAW = "power_law"
    EXPONENTIAL = "exponential"
    LOGARITHMIC = "logarithmic"
    CONSTANT = "constant"

    @classmethod
    def parse(cls, value: object) -> "ExtrapolationMethod":
        if isinstance(value, cls):
            return value
        token = str(value).strip().lower().replace("-", "_")
        try:
            return cls(token)
        except ValueError as exc:
            choices = ", ".join(method.value for method in cls)
            raise ValueError(f"Unknown extrapolation method {value!r} (choose from {choices})") from exc

    @property
    def log_x(self) -> bool:
        return self in (ExtrapolationMethod.POWER_LAW, ExtrapolationMethod.LOGARITHMIC)

    @property
    def log_y(self) -> bool:
        return self in (ExtrapolationMethod.POWER_LAW, ExtrapolationMethod.EXPONENTIAL)


@dataclass(frozen=True)
class FittedCurve:
    """A fitted y = f(x); coefficients live on the transformed axes."""

    name: str
    method: ExtrapolationMethod
    intercept: float
    slope: float
    x_min: float
    x_max: float
    n_points: int
    residual_std: Optional[float] = None
    x_mean: float = 0.0
    sxx: float = 0.0

    def _transform_x(self, x: float) -> float:
        if self.method.log_x:
            return math.log(x) if x > 0 else math.nan
        return float(x)

    def _untransform_y(self, value: float) -> float:
        if self.method.log_y:
            try:
                return math.exp(value)
            except OverflowError:
                return math.inf
        return value

    def _linear_predictor(self, x: float) -> float:
        return self.intercept + self.slope * self._transform_x(x)

    def evaluate(self, x: float) -> float:
        """Point estimate at ``x``; ``nan`` outside the method's domain."""
        return self._untransform_y(self._linear_predictor(x))

    def interval(self, x: float, z: float = Z_95) -> Optional[Tuple[float, float]]:
        """Approximate prediction interval, or ``None`` without residual dof."""
        if self.residual_std is None:
            return None
        tx = self._transform_x(x)
        if math.isnan(tx):
            return None
        spread = 1.0 + 1.0 / self.n_points
        if self.method is not ExtrapolationMethod.CONSTANT and self.sxx > 0:
            spread += (tx - self.x_mean) ** 2 / self.sxx
        half_width = z * self.residual_std * math.sqrt(spread)
        centre = self._linear_predictor(x)
        return self._untransform_y(centre - half_width), self._untransform_y(centre + half_width)

    def is_extrapolating(self, x: float) -> bool:
        return x < self.x_min or x > self.x_max


def _prepare(
    x: Sequence[float], y: Sequence[float], method: ExtrapolationMethod, name: str
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    if xs.shape != ys.shape or xs.ndim != 1:
        raise ValueError(f"{name}: x and y must be 1-D sequences of equal length")
    mask = np.isfinite(xs) & np.isfinite(ys)
    if method.log_x:
        mask &= xs > 0
    if method.log_y:
        mask &= ys > 0
    dropped = int(xs.size - mask.sum())
    if dropped:
        logger.debug("%s: %d points outside the %s domain ignored", name, dropped, method.value)
    xs, ys = xs[mask], ys[mask]
    tx = np.log(xs) if method.log_x else xs
    ty = np.log(ys) if method.log_y else ys
    return xs, tx, ty


def fit_curve(
    x: Sequence[float],
    y: Sequence[float],
    method: ExtrapolationMethod | str = ExtrapolationMethod.LINEAR,
    name: str = "curve",
) -> FittedCurve:
    """Least-squares fit of ``y`` against ``x``.

    Raises :class:`InsufficientDataError` when fewer than two distinct usable
    x values remain (one point is enough for ``constant``).
    """
    method = ExtrapolationMethod.parse(method)
    xs, tx, ty = _prepare(x, y, method, name)
    n = int(xs.size)

    if method is ExtrapolationMethod.CONSTANT:
        if n == 0:
            raise InsufficientDataError(f"{name}: no usable points to fit", quantity=name)
        mean = float(ty.mean())
        residual_std = float(ty.std(ddof=1)) if n > 1 else None
        return FittedCurve(
            name=name,
            method=method,
            intercept=mean,
            slope=0.0,
            x_min=float(xs.min()),
            x_max=float(xs.max()),
            n_points=n,
            residual_std=residual_std,
        )

    if np.unique(tx).size < 2:
        raise InsufficientDataError(
            f"{name}: need at least two distinct x values, got {np.unique(tx).size}",
            quantity=name,
        )
    x_mean = float(tx.mean())
    y_mean = float(ty.mean())
    dx = tx - x_mean
    sxx = float(np.dot(dx, dx))
    slope = float(np.dot(dx, ty - y_mean)) / sxx
    intercept = y_mean - slope * x_mean
    residuals = ty - (intercept + slope * tx)
    dof = n - 2
    residual_std = float(math.sqrt(np.dot(residuals, residuals) / dof)) if dof > 0 else None
    return FittedCurve(
        name=name,
        method=method,
        intercept=intercept,
        slope=slope,
        x_min=float(xs.min()),
        x_max=float(xs.max()),
        n_points=n,
        residual_std=residual_std,
        x_mean=x_mean,
        sxx=sxx,
    )


def carry_forward(name: str, value: float, x: float) -> FittedCurve:
    """Constant curve holding a single (most recent) observation."""
    return FittedCurve(
        name=name,
        method=ExtrapolationMethod.CONSTANT,
        intercept=float(value),
        slope=0.0,
        x_min=float(x),
        x_max=float(x),
        n_points=1,
    )


__all__ = ["ExtrapolationMethod", "FittedCurve", "carry_forward", "fit_curve"]
