from __future__ import annotations

from datetime import datetime, timezone

import numpy as np
import pytest

from torscaler.consensus.document import Flag
from torscaler.history.feature_table import features_to_dataframe, write_features_csv
from torscaler.history.features import extract, quantile_levels


def test_single_running_router(make_router, make_document):
    document = make_document([make_router(1, 500, ("Running",))])
    features = extract(document)
    assert features.population == 1
    assert features.flag_prevalence[Flag.RUNNING] == 1.0
    assert all(value == 0.0 for flag, value in features.flag_prevalence.items() if flag is not Flag.RUNNING)
    assert set(features.flag_prevalence) == set(Flag)
    assert features.family_sizes == {1: 1}
    assert features.total_bandwidth == 500


def test_empty_document_has_zero_prevalence(make_document):
    features = extract(make_document([]))
    assert features.population == 0
    assert all(value == 0.0 for value in features.flag_prevalence.values())
    assert features.bandwidth_quantiles == tuple(0.0 for _ in features.quantile_levels)
    assert features.mean_bandwidth == 0.0
    assert features.family_share == 0.0


def test_extraction_is_deterministic(sample_document):
    first = extract(sample_document)
    second = extract(sample_document)
    assert first == second
    for flag in Flag:
        assert first.flag_prevalence[flag] == pytest.approx(second.flag_prevalence[flag], abs=1e-9)


def test_sample_aggregates(sample_document):
    features = extract(sample_document)
    assert features.population == 5
    assert features.total_bandwidth == 10020
    assert features.flag_prevalence[Flag.EXIT] == pytest.approx(0.4)
    assert features.flag_prevalence[Flag.RUNNING] == pytest.approx(1.0)
    assert features.flag_prevalence[Flag.HSDIR] == pytest.approx(0.2)
    # opA holds two relays; the other three are singletons.
    assert features.family_sizes == {1: 3, 2: 1}
    assert features.family_share == pytest.approx(0.4)
    assert features.family_size_shares() == {1: pytest.approx(0.75), 2: pytest.approx(0.25)}
    assert features.as_coverage == pytest.approx(0.6)
    assert features.as_sizes == {1: 1, 2: 1}
    assert features.params["circwindow"] == 1000
    assert set(features.bandwidth_weights) == set(sample_document.bandwidth_weights)


def test_bandwidth_quantiles(sample_document):
    levels = quantile_levels(5)
    assert levels == (0.0, 0.25, 0.5, 0.75, 1.0)
    features = extract(sample_document, levels)
    assert features.bandwidth_quantiles == (20.0, 800.0, 1200.0, 3000.0, 5000.0)
    shape = features.bandwidth_shape()
    assert shape[-1] == pytest.approx(5000.0 / 2004.0)
    assert np.all(np.diff(shape) >= 0)


def test_quantile_levels_need_two_points():
    with pytest.raises(ValueError):
        quantile_levels(1)


def test_feature_table(tmp_path, sample_document, make_document, make_router):
    later = make_document(
        [make_router(10, 100, ("Running", "Fast"))],
        valid_after=datetime(2023, 6, 1, tzinfo=timezone.utc),
    )
    feature_sets = [extract(sample_document, quantile_levels(3)), extract(later, quantile_levels(3))]
    frame = features_to_dataframe(feature_sets, scales=[1.0, 2.0])
    assert list(frame["num_relays"]) == [5, 1]
    assert list(frame["scale"]) == [1.0, 2.0]
    assert frame.loc[1, "prevalence_Fast"] == pytest.approx(1.0)
    assert frame.loc[0, "avg_bandwidth"] == pytest.approx(2004.0)
    assert "bw_q0.50" in frame.columns
    assert "prevalence_HSDir" in frame.columns

    with pytest.raises(ValueError):
        features_to_dataframe(feature_sets, scales=[1.0])

    path = write_features_csv(tmp_path / "reports" / "history.csv", feature_sets, [1.0, 2.0])
    assert path.exists()
    assert path.read_text().splitlines()[0].startswith("valid_after,scale,num_relays")
