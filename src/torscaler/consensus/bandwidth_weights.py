"""Bandwidth-weight computation following dir-spec section 3.8.3 (method 10+)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional

from .document import ConsensusDocument, RouterEntry

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT_SCALE = 10000
CHECK_MARGIN = 10


class WeightCheck(str, Enum):
    SUM_D = "SumD"
    SUM_G = "SumG"
    SUM_E = "SumE"
    RANGE = "Range"
    BALANCE_EG = "BalanceEg"
    BALANCE_MID = "BalanceMid"


@dataclass(frozen=True)
class PositionTotals:
    """Bandwidth summed per position class: exit, guard, both (D) and middle."""

    exit: int
    guard: int
    dual: int
    middle: int

    @property
    def total(self) -> int:
        return self.exit + self.guard + self.dual + self.middle

    @classmethod
    def from_routers(cls, routers: Iterable[RouterEntry]) -> "PositionTotals":
        # Start at one so that empty classes never divide by zero.
        e = g = d = m = 1
        for router in routers:
            if router.is_exit and router.is_guard:
                d += router.bandwidth
            elif router.is_exit:
                e += router.bandwidth
            elif router.is_guard:
                g += router.bandwidth
            else:
                m += router.bandwidth
        return cls(exit=e, guard=g, dual=d, middle=m)


def _div(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero, like the C implementation."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _check_weights(
    w: Dict[str, int], scale: int, totals: PositionTotals, margin: int = CHECK_MARGIN
) -> Optional[WeightCheck]:
    G, M, E, D, T = totals.guard, totals.middle, totals.exit, totals.dual, totals.total
    if abs(w["Wed"] + w["Wmd"] + w["Wgd"] - scale) > margin:
        return WeightCheck.SUM_D
    if abs(w["Wmg"] + w["Wgg"] - scale) > margin:
        return WeightCheck.SUM_G
    if abs(w["Wme"] + w["Wee"] - scale) > margin:
        return WeightCheck.SUM_E
    for key in ("Wgg", "Wgd", "Wmg", "Wme", "Wmd", "Wed", "Wee"):
        if w[key] < 0 or w[key] > scale:
            return WeightCheck.RANGE
    balance_margin = _div(margin * T, 3)
    guard_side = w["Wgg"] * G + w["Wgd"] * D
    if abs(guard_side - (w["Wee"] * E + w["Wed"] * D)) > balance_margin:
        return WeightCheck.BALANCE_EG
    middle_side = M * scale + w["Wmd"] * D + w["Wme"] * E + w["Wmg"] * G
    if abs(guard_side - middle_side) > balance_margin:
        return WeightCheck.BALANCE_MID
    return None


def _solve(totals: PositionTotals, scale: int) -> Dict[str, int]:
    E, G, D, M, T = totals.exit, totals.guard, totals.dual, totals.middle, totals.total
    w: Dict[str, int] = {}
    if 3 * E >= T and 3 * G >= T:
        # Case 1: neither guards nor exits are scarce.
        w["Wmd"] = w["Wed"] = w["Wgd"] = _div(scale, 3)
        w["Wee"] = _div(scale * (E + G + M), 3 * E)
        w["Wme"] = scale - w["Wee"]
        w["Wmg"] = _div(scale * (2 * G - E - M), 3 * G)
        w["Wgg"] = scale - w["Wmg"]
    elif 3 * E < T and 3 * G < T:
        # Case 2: both are scarce.
        R, S = min(E, G), max(E, G)
        if R + D < S:
            w.update(Wgg=scale, Wee=scale, Wmd=0, Wme=0, Wmg=0)
            if E < G:
                w.update(Wed=scale, Wgd=0)
            else:
                w.update(Wed=0, Wgd=scale)
        else:
            w["Wee"] = _div(scale * (E - G + M), E)
            w["Wed"] = _div(scale * (D - 2 * E + 4 * G - 2 * M), 3 * D)
            w["Wme"] = _div(scale * (G - M), E)
            w["Wmg"] = 0
            w["Wgg"] = scale
            w["Wgd"] = w["Wmd"] = _div(scale - w["Wed"], 2)
            if _check_weights(w, scale, totals) is not None:
                # Case 2b2: fix Wgg and Wee, balance D across the positions.
                w.update(Wee=scale, Wgg=scale, Wmg=0, Wme=0)
                w["Wed"] = _div(scale * (D - 2 * E + G + M), 3 * D)
                w["Wmd"] = _div(scale * (D - 2 * M + G + E), 3 * D)
                if w["Wmd"] < 0:
                    # Case 2b3: too much bandwidth at the middle position.
                    w["Wmd"] = 0
                w["Wgd"] = scale - w["Wed"] - w["Wmd"]
    else:
        # Case 3: exactly one of guards and exits is scarce.
        S = min(E, G)
        if 3 * (S + D) < T:
            if G < E:
                w.update(Wgd=scale, Wgg=scale, Wmg=0, Wed=0, Wmd=0)
                w["Wme"] = 0 if E < M else _div(scale * (E - M), 2 * E)
                w["Wee"] = scale - w["Wme"]
            else:
                w.update(Wed=scale, Wee=scale, Wme=0, Wgd=0, Wmd=0)
                w["Wmg"] = 0 if G < M else _div(scale * (G - M), 2 * G)
                w["Wgg"] = scale - w["Wmg"]
        elif G < E:
            w["Wgg"] = scale
            w["Wgd"] = _div(scale * (D - 2 * G + E + M), 3 * D)
            w["Wmg"] = 0
            w["Wee"] = _div(scale * (E + M), 2 * E)
            w["Wme"] = scale - w["Wee"]
            w["Wed"] = w["Wmd"] = _div(scale - w["Wgd"], 2)
        else:
            w["Wee"] = scale
            w["Wed"] = _div(scale * (D - 2 * E + G + M), 3 * D)
            w["Wme"] = 0
            w["Wgg"] = _div(scale * (G + M), 2 * G)
            w["Wmg"] = scale - w["Wgg"]
            w["Wgd"] = w["Wmd"] = _div(scale - w["Wed"], 2)
    return w


def compute_bandwidth_weights(
    routers: Iterable[RouterEntry], weight_scale: int = DEFAULT_WEIGHT_SCALE
) -> Dict[str, int]:
    """Return the full ``bandwidth-weights`` mapping for a set of routers."""
    totals = PositionTotals.from_routers(routers)
    w = _solve(totals, weight_scale)
    problem = _check_weights(w, weight_scale, totals)
    if problem not in (None, WeightCheck.BALANCE_MID):
        logger.warning(
            "Bandwidth weights fail the %s check (E=%d G=%d D=%d M=%d)",
            problem.value,
            totals.exit,
            totals.guard,
            totals.dual,
            totals.middle,
        )
    scale = weight_scale
    return {
        "Wbd": w["Wmd"],
        "Wbe": w["Wme"],
        "Wbg": w["Wmg"],
        "Wbm": scale,
        "Wdb": scale,
        "Web": scale,
        "Wed": w["Wed"],
        "Wee": w["Wee"],
        "Weg": w["Wed"],
        "Wem": w["Wee"],
        "Wgb": scale,
        "Wgd": w["Wgd"],
        "Wgg": w["Wgg"],
        "Wgm": w["Wgg"],
        "Wmb": scale,
        "Wmd": w["Wmd"],
        "Wme": w["Wme"],
        "Wmg": w["Wmg"],
        "Wmm": scale,
    }


def recompute_bandwidth_weights(document: ConsensusDocument) -> ConsensusDocument:
    scale = document.params.get("bwweightscale", DEFAULT_WEIGHT_SCALE)
    return document.with_bandwidth_weights(compute_bandwidth_weights(document.routers, scale))


def verify_bandwidth_weights(document: ConsensusDocument) -> Dict[str, tuple]:
    """Return ``{key: (listed, recomputed)}`` for every weight that differs."""
    scale = document.params.get("bwweightscale", DEFAULT_WEIGHT_SCALE)
    expected = compute_bandwidth_weights(document.routers, scale)
    return {
        key: (document.bandwidth_weights[key], value)
        for key, value in expected.items()
        if document.bandwidth_weights.get(key) != value
    }


__all__ = [
    "PositionTotals",
    "compute_bandwidth_weights",
    "recompute_bandwidth_weights",
    "verify_bandwidth_weights",
]
