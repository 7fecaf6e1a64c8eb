"""Growth curves fitted over historical feature sets."""

from .growth_model import (
    Estimate,
    GrowthModel,
    GrowthSettings,
    Quantity,
    ScaleKind,
    date_to_scale,
    fit,
    growth_model_to_dataframe,
    scale_to_date,
)
from .regression import ExtrapolationMethod, FittedCurve, carry_forward, fit_curve

__all__ = [
    "Estimate",
    "ExtrapolationMethod",
    "FittedCurve",
    "GrowthModel",
    "GrowthSettings",
    "Quantity",
    "ScaleKind",
    "carry_forward",
    "date_to_scale",
    "fit",
    "fit_curve",
    "growth_model_to_dataframe",
    "scale_to_date",
]
