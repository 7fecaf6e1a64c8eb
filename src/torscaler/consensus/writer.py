"""Serialize a ConsensusDocument back to the consensus text format."""

from __future__ import annotations

import base64
from datetime import timedelta
from pathlib import Path
from typing import List

from .document import BANDWIDTH_WEIGHT_KEYS, ConsensusDocument, Flag, RouterEntry
from .parser import TIME_FORMAT

CONSENSUS_METHOD = 31
FRESH_INTERVAL = timedelta(hours=1)
VALID_INTERVAL = timedelta(hours=3)


def encode_identity(hex_digest: str) -> str:
    """Encode a 40-char hex digest as unpadded base64, as used on ``r`` lines."""
    return base64.b64encode(bytes.fromhex(hex_digest)).decode("ascii").rstrip("=")


def _router_lines(router: RouterEntry) -> List[str]:
    lines = [
        " ".join(
            [
                "r",
                router.nickname,
                encode_identity(router.fingerprint),
                encode_identity(router.digest),
                router.published.strftime(TIME_FORMAT),
                router.address,
                str(router.or_port),
                str(router.dir_port),
            ]
        ),
        " ".join(["s", *(flag.value for flag in router.sorted_flags())]),
    ]
    if router.version is not None:
        lines.append(f"v {router.version}".rstrip())
    if router.protocols is not None:
        lines.append(f"pr {router.protocols}".rstrip())
    weight_line = f"w Bandwidth={router.bandwidth}"
    if router.unmeasured:
        weight_line += " Unmeasured=1"
    lines.append(weight_line)
    lines.append(f"p {router.exit_policy}")
    if router.family is not None:
        lines.append(f"family {router.family}")
    if router.asn is not None:
        lines.append(f"asn {router.asn}")
    return lines


def serialize(document: ConsensusDocument) -> str:
    """Render ``document``; ``parse(serialize(doc)) == doc`` for every document."""
    valid_after = document.valid_after
    lines = [
        "network-status-version 3",
        "vote-status consensus",
        f"consensus-method {CONSENSUS_METHOD}",
        f"valid-after {valid_after.strftime(TIME_FORMAT)}",
        f"fresh-until {(valid_after + FRESH_INTERVAL).strftime(TIME_FORMAT)}",
        f"valid-until {(valid_after + VALID_INTERVAL).strftime(TIME_FORMAT)}",
        "voting-delay 300 300",
        "known-flags " + " ".join(flag.value for flag in Flag.vocabulary()),
    ]
    if document.params:
        lines.append(
            "params " + " ".join(f"{key}={document.params[key]}" for key in sorted(document.params))
        )
    for router in document.routers:
        lines.extend(_router_lines(router))
    lines.append("directory-footer")
    weights = document.bandwidth_weights
    lines.append(
        "bandwidth-weights " + " ".join(f"{key}={weights[key]}" for key in BANDWIDTH_WEIGHT_KEYS)
    )
    return "\n".join(lines) + "\n"


def write_file(document: ConsensusDocument, path: str | Path) -> Path:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(serialize(document), encoding="utf-8")
    return output_path


__all__ = ["encode_identity", "serialize", "write_file"]
