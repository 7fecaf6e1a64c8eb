from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence

import pytest

from torscaler.consensus.document import BANDWIDTH_WEIGHT_KEYS, ConsensusDocument, RouterEntry

VALID_AFTER = datetime(2023, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _fingerprint(index: int) -> str:
    return f"{index:040X}"


def _router(index: int, bandwidth: int = 1000, flags: Iterable[str] = ("Running", "Valid"), **kwargs) -> RouterEntry:
    return RouterEntry(
        fingerprint=_fingerprint(index),
        nickname=f"relay{index}",
        bandwidth=bandwidth,
        flags=frozenset(flags),
        **kwargs,
    )


def _weights(value: int = 10000) -> dict:
    return {key: value for key in BANDWIDTH_WEIGHT_KEYS}


def _document(
    routers: Sequence[RouterEntry],
    valid_after: datetime = VALID_AFTER,
    params: Optional[Mapping[str, int]] = None,
    weights: Optional[Mapping[str, int]] = None,
) -> ConsensusDocument:
    return ConsensusDocument(
        valid_after=valid_after,
        routers=tuple(routers),
        params=dict(params or {}),
        bandwidth_weights=dict(weights or _weights()),
    )


@pytest.fixture
def make_router():
    return _router


@pytest.fixture
def make_document():
    return _document


@pytest.fixture
def full_weights():
    return _weights()


@pytest.fixture
def sample_document() -> ConsensusDocument:
    routers = [
        _router(1, 5000, ("Exit", "Fast", "Guard", "Running", "Stable", "Valid"), family="opA", asn=3320),
        _router(2, 3000, ("Fast", "Guard", "Running", "Stable", "Valid"), family="opA", asn=3320),
        _router(3, 1200, ("Exit", "Fast", "Running", "Valid"), asn=24940, exit_policy="accept 80,443"),
        _router(4, 800, ("Fast", "HSDir", "Running", "V2Dir", "Valid"), version="Tor 0.4.8.12"),
        _router(5, 20, ("Running", "Valid"), unmeasured=True),
    ]
    return _document(routers, params={"circwindow": 1000, "bwweightscale": 10000, "UseOptimisticData": 1})
