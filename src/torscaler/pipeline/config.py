"""YAML configuration for a scaling run.

Example::

    quantities: [population, bandwidth, flags, families, as]
    methods:
      population: linear
      bandwidth: power_law
      flags: linear
    seed: 42
    scale_by: time
    max_workers: 4
    recompute_bandwidth_weights: false
    quantile_levels: 21
    shape_method: linear
    targets:
      - population: 10000
        label: double
      - date: 2030-01-01T00:00:00
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence

import yaml

from torscaler.growth.growth_model import DEFAULT_METHODS, GrowthSettings, Quantity, ScaleKind
from torscaler.growth.regression import ExtrapolationMethod
from torscaler.history.features import DEFAULT_QUANTILE_POINTS
from torscaler.synth.synthesizer import SyntheticTarget

logger = logging.getLogger(__name__)


@dataclass
class ScalingConfig:
    quantities: FrozenSet[Quantity] = frozenset(Quantity)
    methods: Dict[Quantity, ExtrapolationMethod] = field(default_factory=lambda: dict(DEFAULT_METHODS))
    seed: Optional[int] = None
    targets: List[SyntheticTarget] = field(default_factory=list)
    scale_by: ScaleKind = ScaleKind.TIME
    max_workers: int = 1
    recompute_bandwidth_weights: bool = False
    quantile_levels: int = DEFAULT_QUANTILE_POINTS
    shape_method: ExtrapolationMethod = ExtrapolationMethod.LINEAR

    def __post_init__(self) -> None:
        self.quantities = frozenset(Quantity.parse(q) for q in self.quantities)
        methods = dict(DEFAULT_METHODS)
        for key, value in dict(self.methods).items():
            methods[Quantity.parse(key)] = ExtrapolationMethod.parse(value)
        self.methods = methods
        self.scale_by = ScaleKind(self.scale_by)
        self.shape_method = ExtrapolationMethod.parse(self.shape_method)
        self._validate()

    def _validate(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.quantile_levels < 2:
            raise ValueError("quantile_levels must be at least 2")
        if self.seed is not None and self.seed < 0:
            raise ValueError("seed must be non-negative")

    def growth_settings(self) -> GrowthSettings:
        return GrowthSettings(
            quantities=self.quantities,
            methods=self.methods,
            shape_method=self.shape_method,
            scale_by=self.scale_by,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "ScalingConfig":
        if not isinstance(data, Mapping):
            raise TypeError("Scaling config must be a mapping at the top level")
        quantities = data.get("quantities")
        if quantities is None:
            quantities = list(Quantity)
        elif isinstance(quantities, str) or not isinstance(quantities, Sequence):
            raise TypeError("'quantities' must be a list")
        methods = data.get("methods") or {}
        if not isinstance(methods, Mapping):
            raise TypeError("'methods' must map quantities to extrapolation methods")
        raw_targets = data.get("targets") or []
        if not isinstance(raw_targets, list):
            raise TypeError("'targets' must be a list of mappings")
        seed = data.get("seed")
        return cls(
            quantities=frozenset(quantities),
            methods=dict(methods),
            seed=int(seed) if seed is not None else None,
            targets=[SyntheticTarget.from_mapping(entry) for entry in raw_targets],
            scale_by=ScaleKind(str(data.get("scale_by", ScaleKind.TIME.value))),
            max_workers=int(data.get("max_workers", 1)),
            recompute_bandwidth_weights=bool(data.get("recompute_bandwidth_weights", False)),
            quantile_levels=int(data.get("quantile_levels", DEFAULT_QUANTILE_POINTS)),
            shape_method=str(data.get("shape_method", ExtrapolationMethod.LINEAR.value)),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ScalingConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Scaling config YAML not found at {config_path}")
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        config = cls.from_mapping(data)
        logger.debug("Loaded scaling config from %s", config_path)
        return config

    def to_mapping(self) -> Dict[str, object]:
        return {
            "quantities": sorted(q.value for q in self.quantities),
            "methods": {q.value: m.value for q, m in sorted(self.methods.items(), key=lambda kv: kv[0].value)},
            "seed": self.seed,
            "targets": [target.to_mapping() for target in self.targets],
            "scale_by": self.scale_by.value,
            "max_workers": self.max_workers,
            "recompute_bandwidth_weights": self.recompute_bandwidth_weights,
            "quantile_levels": self.quantile_levels,
            "shape_method": self.shape_method.value,
        }

    def to_yaml(self, path: str | Path) -> None:
        dest = Path(path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        with dest.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self.to_mapping(), handle, sort_keys=True)


__all__ = ["ScalingConfig"]
