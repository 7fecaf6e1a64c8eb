"""Tabular export of feature sets for reporting and plotting tools."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from torscaler.consensus.document import Flag

from .features import FeatureSet


def feature_row(features: FeatureSet, scale: Optional[float] = None) -> Dict[str, object]:
    row: Dict[str, object] = {
        "valid_after": features.valid_after,
        "scale": scale,
        "num_relays": features.population,
        "total_bandwidth": features.total_bandwidth,
        "avg_bandwidth": features.mean_bandwidth,
        "family_share": features.family_share,
        "num_family_groups": sum(features.family_sizes.values()),
        "as_coverage": features.as_coverage,
        "num_as_groups": sum(features.as_sizes.values()),
    }
    for flag in Flag.vocabulary():
        row[f"prevalence_{flag.value}"] = features.flag_prevalence.get(flag, 0.0)
    for level, value in zip(features.quantile_levels, features.bandwidth_quantiles):
        row[f"bw_q{level:.2f}"] = value
    return row


def features_to_dataframe(
    feature_sets: Sequence[FeatureSet],
    scales: Optional[Sequence[float]] = None,
) -> pd.DataFrame:
    """One row per feature set, ordered as given."""
    if scales is not None and len(scales) != len(feature_sets):
        raise ValueError("scales must match feature_sets in length")
    rows: List[Dict[str, object]] = []
    for idx, features in enumerate(feature_sets):
        rows.append(feature_row(features, scales[idx] if scales is not None else None))
    return pd.DataFrame(rows)


def write_features_csv(
    path: str | Path,
    feature_sets: Sequence[FeatureSet],
    scales: Optional[Sequence[float]] = None,
) -> Path:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    features_to_dataframe(feature_sets, scales).to_csv(output_path, index=False)
    return output_path


__all__ = ["feature_row", "features_to_dataframe", "write_features_csv"]
