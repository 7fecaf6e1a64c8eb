from __future__ import annotations

import argparse
import logging
from typing import List, Optional

from torscaler.consensus import parse_file, verify_bandwidth_weights, write_file
from torscaler.consensus.document import ConsensusDocument, Flag
from torscaler.synth import cutoff_lower_and_redistribute, scale_by_bandwidth_rank, scale_flag_groups


def _parse_factors(token: Optional[str]) -> List[float]:
    if not token:
        return []
    return [float(part) for part in token.split(",") if part.strip()]


def _summary(title: str, document: ConsensusDocument) -> None:
    exits = sum(router.bandwidth for router in document.routers if Flag.EXIT in router.flags)
    guards = sum(router.bandwidth for router in document.routers if Flag.GUARD in router.flags)
    print(f"=== {title} ===")
    print(f"Routers: {document.population:,}")
    print(f"Total bandwidth: {document.total_bandwidth:,}")
    print(f"Exit bandwidth: {exits:,}  Guard bandwidth: {guards:,}")
    weights = document.bandwidth_weights
    print(f"Wgg={weights['Wgg']} Wee={weights['Wee']} Wed={weights['Wed']} Wmg={weights['Wmg']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Rescale relay bandwidth of one consensus without changing its size.")
    parser.add_argument("consensus", help="Consensus file to rescale")
    parser.add_argument("--output", default="output/vertical-consensus")
    parser.add_argument(
        "--rank-factors",
        help="Comma-separated factors for equal bandwidth-rank groups, slowest first (e.g. 0.5,1,2)",
    )
    parser.add_argument("--middle", type=float, default=1.0, help="Factor for middle-only relays")
    parser.add_argument("--exit", type=float, default=1.0, help="Factor for the exit group")
    parser.add_argument("--guard", type=float, default=1.0, help="Factor for the guard group")
    parser.add_argument(
        "--cutoff",
        type=float,
        default=0.0,
        help="Share of slowest relays to drop, their bandwidth goes to the rest",
    )
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    logging.info("Loading consensus from %s", args.consensus)
    document = parse_file(args.consensus)
    stale = verify_bandwidth_weights(document)
    if stale:
        logging.info("Listed bandwidth weights differ from recomputed ones for %d keys", len(stale))
    _summary("Input", document)

    factors = _parse_factors(args.rank_factors)
    if factors:
        document = scale_by_bandwidth_rank(document, factors)
    if (args.middle, args.exit, args.guard) != (1.0, 1.0, 1.0):
        document = scale_flag_groups(document, middle=args.middle, exit=args.exit, guard=args.guard)
    if args.cutoff:
        document = cutoff_lower_and_redistribute(document, args.cutoff)

    print("")
    _summary("Output", document)
    path = write_file(document, args.output)
    print(f"Wrote {path}")


if __name__ == "__main__":
    main()
