from __future__ import annotations

import pytest

from torscaler.consensus.bandwidth_weights import compute_bandwidth_weights
from torscaler.consensus.document import Flag
from torscaler.synth.vertical import (
    FlagGroupWeights,
    cutoff_lower_and_redistribute,
    scale_by_bandwidth_rank,
    scale_flag_groups,
)


def _bandwidths(document):
    return {router.nickname: router.bandwidth for router in document.routers}


def test_rank_groups(sample_document):
    scaled = scale_by_bandwidth_rank(sample_document, [0.5, 2.0])
    # Five routers, two groups of two; the leftover joins the last group.
    assert _bandwidths(scaled) == {
        "relay5": 10,
        "relay4": 400,
        "relay3": 2400,
        "relay2": 6000,
        "relay1": 10000,
    }
    assert scaled.population == sample_document.population
    assert scaled.bandwidth_weights == compute_bandwidth_weights(scaled.routers, 10000)
    assert scaled.params == sample_document.params


def test_rank_group_errors(sample_document):
    with pytest.raises(ValueError):
        scale_by_bandwidth_rank(sample_document, [])
    with pytest.raises(ValueError):
        scale_by_bandwidth_rank(sample_document, [1.0, -1.0])
    with pytest.raises(ValueError):
        scale_by_bandwidth_rank(sample_document, [1.0] * 6)


def test_flag_groups_scale_exit_capacity(sample_document):
    scaled = scale_flag_groups(sample_document, exit=2.0)
    exits = sum(router.bandwidth for router in scaled.routers if Flag.EXIT in router.flags)
    guards = sum(router.bandwidth for router in scaled.routers if Flag.GUARD in router.flags)
    assert abs(exits - 2 * 6200) <= 1
    assert guards == 8000
    assert _bandwidths(scaled)["relay4"] == 800


def test_flag_groups_scale_guard_capacity(sample_document):
    scaled = scale_flag_groups(sample_document, middle=0.5, guard=3.0)
    guards = sum(router.bandwidth for router in scaled.routers if Flag.GUARD in router.flags)
    exits = sum(router.bandwidth for router in scaled.routers if Flag.EXIT in router.flags)
    assert abs(guards - 3 * 8000) <= 1
    assert exits == 6200
    assert _bandwidths(scaled)["relay4"] == 400
    assert _bandwidths(scaled)["relay5"] == 10


def test_flag_group_weights_without_dual_relays():
    weights = FlagGroupWeights.from_totals(1.0, 2.0, 0.5, exit_total=100, guard_total=100, dual_total=0)
    assert weights.exit == pytest.approx(2.0)
    assert weights.guard == pytest.approx(0.5)
    assert weights.dual == pytest.approx(0.5)


def test_cutoff_redistributes_bandwidth(sample_document):
    trimmed = cutoff_lower_and_redistribute(sample_document, 0.4)
    assert trimmed.population == 3
    assert trimmed.total_bandwidth == sample_document.total_bandwidth
    assert _bandwidths(trimmed) == {"relay1": 5446, "relay2": 3267, "relay3": 1307}


def test_cutoff_edge_cases(sample_document):
    assert cutoff_lower_and_redistribute(sample_document, 0.1) is sample_document
    with pytest.raises(ValueError):
        cutoff_lower_and_redistribute(sample_document, 1.0)
    with pytest.raises(ValueError):
        cutoff_lower_and_redistribute(sample_document, -0.2)
