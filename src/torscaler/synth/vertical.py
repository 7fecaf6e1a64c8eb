"""Vertical scaling: change relay bandwidths of an existing document.

Unlike :func:`torscaler.synth.synthesizer.synthesize`, these keep the router
population and only rescale bandwidth. Every function returns a new document
whose bandwidth weights are recomputed from the rescaled routers.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

import numpy as np

from torscaler.consensus.bandwidth_weights import recompute_bandwidth_weights
from torscaler.consensus.document import ConsensusDocument, Flag, RouterEntry

from .synthesizer import apportion

logger = logging.getLogger(__name__)


def _check_factor(name: str, value: float) -> float:
    value = float(value)
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a finite non-negative factor, got {value}")
    return value


def _rescaled(router: RouterEntry, factor: float) -> RouterEntry:
    # Truncate like the integer conversion of the consensus writer.
    return router.with_bandwidth(int(router.bandwidth * factor))


def scale_by_bandwidth_rank(document: ConsensusDocument, factors: Sequence[float]) -> ConsensusDocument:
    """Scale routers by bandwidth rank group.

    Routers are sorted by bandwidth and cut into ``len(factors)`` equal chunks;
    chunk ``i`` is scaled by ``factors[i]``. Routers left over by the integer
    division use the last factor.
    """
    factors = [_check_factor("factor", value) for value in factors]
    if not factors:
        raise ValueError("At least one scale factor is needed")
    count = document.population
    if count < len(factors):
        raise ValueError(f"Cannot form {len(factors)} bandwidth groups from {count} routers")

    chunk = count // len(factors)
    ranked = sorted(range(count), key=lambda idx: document.routers[idx].bandwidth)
    factor_of: Dict[int, float] = {}
    for rank, idx in enumerate(ranked):
        factor_of[idx] = factors[min(rank // chunk, len(factors) - 1)]

    routers = [_rescaled(router, factor_of[idx]) for idx, router in enumerate(document.routers)]
    logger.info("Scaled %d routers across %d bandwidth groups", count, len(factors))
    return recompute_bandwidth_weights(document.with_routers(routers))


@dataclass(frozen=True)
class FlagGroupWeights:
    """Per-position factors for exit-only, guard-only, dual and middle relays.

    The exit and guard factors apply to the whole exit (E + D) and guard
    (G + D) groups, so dual relays take the smaller of the two factors and the
    other single-role class is solved to compensate. That keeps every weight
    non-negative.
    """

    exit: float
    guard: float
    dual: float
    middle: float

    @classmethod
    def from_totals(
        cls,
        middle: float,
        exit: float,
        guard: float,
        exit_total: float,
        guard_total: float,
        dual_total: float,
    ) -> "FlagGroupWeights":
        if guard <= exit:
            weight_e = (exit * (exit_total + dual_total) - guard * dual_total) / exit_total if exit_total else exit
            return cls(exit=weight_e, guard=guard, dual=guard, middle=middle)
        weight_g = (guard * (guard_total + dual_total) - exit * dual_total) / guard_total if guard_total else guard
        return cls(exit=exit, guard=weight_g, dual=exit, middle=middle)

    @classmethod
    def from_bandwidth(
        cls, routers: Iterable[RouterEntry], middle: float, exit: float, guard: float
    ) -> "FlagGroupWeights":
        totals = {"exit": 0, "guard": 0, "dual": 0}
        for router in routers:
            position = _position(router)
            if position in totals:
                totals[position] += router.bandwidth
        return cls.from_totals(middle, exit, guard, totals["exit"], totals["guard"], totals["dual"])

    def weight_for(self, router: RouterEntry) -> float:
        return getattr(self, _position(router))


def _position(router: RouterEntry) -> str:
    is_exit = Flag.EXIT in router.flags
    is_guard = Flag.GUARD in router.flags
    if is_exit and is_guard:
        return "dual"
    if is_exit:
        return "exit"
    if is_guard:
        return "guard"
    return "middle"


def scale_flag_groups(
    document: ConsensusDocument,
    middle: float = 1.0,
    exit: float = 1.0,
    guard: float = 1.0,
) -> ConsensusDocument:
    """Scale the bandwidth of the middle, exit and guard groups."""
    middle = _check_factor("middle", middle)
    exit = _check_factor("exit", exit)
    guard = _check_factor("guard", guard)
    weights = FlagGroupWeights.from_bandwidth(document.routers, middle, exit, guard)
    logger.debug("Flag group weights: %s", weights)
    routers = [_rescaled(router, weights.weight_for(router)) for router in document.routers]
    return recompute_bandwidth_weights(document.with_routers(routers))


def cutoff_lower_and_redistribute(document: ConsensusDocument, share: float) -> ConsensusDocument:
    """Drop the slowest ``share`` of routers and hand their bandwidth to the rest.

    The freed bandwidth is split proportionally to the remaining routers'
    bandwidth, so the aggregate stays unchanged.
    """
    share = float(share)
    if not 0.0 <= share < 1.0:
        raise ValueError(f"share must be in [0, 1), got {share}")
    count = document.population
    removed = int(math.floor(share * count))
    if removed == 0:
        return document

    ranked = sorted(range(count), key=lambda idx: document.routers[idx].bandwidth)
    dropped = set(ranked[:removed])
    kept: List[RouterEntry] = [router for idx, router in enumerate(document.routers) if idx not in dropped]
    bandwidths = apportion(
        np.fromiter((router.bandwidth for router in kept), dtype=float, count=len(kept)),
        document.total_bandwidth,
    )
    routers = [router.with_bandwidth(bandwidth) for router, bandwidth in zip(kept, bandwidths)]
    logger.info("Removed %d of %d routers, redistributed their bandwidth", removed, count)
    return recompute_bandwidth_weights(document.with_routers(routers))


__all__ = [
    "FlagGroupWeights",
    "cutoff_lower_and_redistribute",
    "scale_by_bandwidth_rank",
    "scale_flag_groups",
]
