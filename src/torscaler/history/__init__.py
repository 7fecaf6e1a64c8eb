"""Historical consensus features."""

from .archive import ArchiveEntry, ConsensusArchive
from .feature_table import features_to_dataframe, write_features_csv
from .features import FeatureSet, extract, quantile_levels

__all__ = [
    "ArchiveEntry",
    "ConsensusArchive",
    "FeatureSet",
    "extract",
    "features_to_dataframe",
    "quantile_levels",
    "write_features_csv",
]
