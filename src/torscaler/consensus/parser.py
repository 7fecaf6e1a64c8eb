"""Parse the network-status consensus text format into a ConsensusDocument."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from torscaler.errors import FormatError

from .document import ConsensusDocument, Flag, RouterEntry

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

HEADER_KEYWORDS = frozenset(
    {
        "network-status-version",
        "vote-status",
        "consensus-method",
        "valid-after",
        "fresh-until",
        "valid-until",
        "voting-delay",
        "client-versions",
        "server-versions",
        "known-flags",
        "params",
        "recommended-client-protocols",
        "recommended-relay-protocols",
        "required-client-protocols",
        "required-relay-protocols",
        "shared-rand-previous-value",
        "shared-rand-current-value",
        "dir-source",
        "contact",
        "vote-digest",
    }
)
ROUTER_KEYWORDS = frozenset({"r", "a", "s", "v", "pr", "w", "p", "m", "family", "asn"})
# Keywords that appear at most once per router entry.
_SINGLE_ROUTER_KEYWORDS = frozenset({"s", "v", "pr", "w", "p", "family", "asn"})

_POLICY_RE = re.compile(r"^(accept|reject) (\d+(-\d+)?)(,\d+(-\d+)?)*$")


def decode_identity(token: str) -> str:
    """Decode an unpadded base64 20-byte digest into upper-case hex."""
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FormatError(f"Invalid base64 digest {token!r}") from exc
    if len(raw) != 20:
        raise FormatError(f"Digest {token!r} decodes to {len(raw)} bytes, expected 20")
    return raw.hex().upper()


def parse_timestamp(text: str) -> datetime:
    try:
        return datetime.strptime(text.strip(), TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise FormatError(f"Invalid timestamp {text!r}") from exc


def _parse_int(token: str, label: str) -> int:
    try:
        return int(token)
    except ValueError as exc:
        raise FormatError(f"{label} must be an integer, got {token!r}") from exc


def _parse_key_values(arguments: str, label: str) -> Dict[str, int]:
    values: Dict[str, int] = {}
    for token in arguments.split():
        if "=" not in token:
            raise FormatError(f"Malformed {label} entry {token!r}")
        key, raw = token.split("=", 1)
        if not key:
            raise FormatError(f"Malformed {label} entry {token!r}")
        if key in values:
            raise FormatError(f"Duplicate {label} entry {key!r}")
        values[key] = _parse_int(raw, f"{label} {key}")
    return values


class _RouterBuilder:
    """Collects the lines of one router entry until the next one starts."""

    def __init__(self, line_number: int, arguments: str) -> None:
        self.line_number = line_number
        self.seen: set = set()
        self.fields: Dict[str, object] = {}
        self._parse_r_line(arguments)

    def _parse_r_line(self, arguments: str) -> None:
        parts = arguments.split()
        if len(parts) != 8:
            raise FormatError(
                f"Router line needs 8 arguments, found {len(parts)}",
                line_number=self.line_number,
            )
        nickname, identity, digest, day, clock, address, or_port, dir_port = parts
        self.fields.update(
            nickname=nickname,
            fingerprint=decode_identity(identity),
            digest=decode_identity(digest),
            published=parse_timestamp(f"{day} {clock}"),
            address=address,
            or_port=_parse_int(or_port, "ORPort"),
            dir_port=_parse_int(dir_port, "DirPort"),
        )

    def add(self, keyword: str, arguments: str) -> None:
        if keyword in _SINGLE_ROUTER_KEYWORDS:
            if keyword in self.seen:
                raise FormatError(f"Duplicate '{keyword}' line in router entry")
            self.seen.add(keyword)
        if keyword == "s":
            self.fields["flags"] = frozenset(Flag.parse(token) for token in arguments.split())
        elif keyword == "v":
            self.fields["version"] = arguments
        elif keyword == "pr":
            self.fields["protocols"] = arguments
        elif keyword == "w":
            self._parse_w_line(arguments)
        elif keyword == "p":
            policy = " ".join(arguments.split())
            if not _POLICY_RE.match(policy):
                raise FormatError(f"Malformed exit policy summary {arguments!r}")
            self.fields["exit_policy"] = policy
        elif keyword == "family":
            tokens = arguments.split()
            if len(tokens) != 1:
                raise FormatError("Family line needs exactly one identifier")
            self.fields["family"] = tokens[0]
        elif keyword == "asn":
            asn = _parse_int(arguments.strip(), "AS number")
            if asn < 0:
                raise FormatError(f"AS number {asn} cannot be negative")
            self.fields["asn"] = asn
        # "a" (IPv6 addresses) and "m" lines are accepted but not modelled.

    def _parse_w_line(self, arguments: str) -> None:
        values = _parse_key_values(arguments, "bandwidth")
        if "Bandwidth" not in values:
            raise FormatError("Router weight line lacks Bandwidth=")
        bandwidth = values["Bandwidth"]
        if bandwidth < 0:
            raise FormatError(f"Bandwidth {bandwidth} cannot be negative")
        self.fields["bandwidth"] = bandwidth
        self.fields["unmeasured"] = values.get("Unmeasured", 0) == 1

    def build(self) -> RouterEntry:
        for keyword in ("s", "w"):
            if keyword not in self.seen:
                raise FormatError(
                    f"Router entry is missing its '{keyword}' line",
                    line_number=self.line_number,
                )
        try:
            return RouterEntry(**self.fields)
        except FormatError as exc:
            if exc.line_number is None:
                exc.line_number = self.line_number
            raise


class ConsensusParser:
    """Line-oriented parser for the ``ns`` flavor of network-status-version 3.

    The document is read in three sections: header, router entries and
    footer. Keywords of one section appearing in another are structural
    errors; unknown keywords are ignored, as dir-spec requires.
    """

    def __init__(self, source: Optional[str] = None) -> None:
        self.source = source

    def parse(self, text: str) -> ConsensusDocument:
        try:
            return self._parse(text)
        except FormatError as exc:
            if exc.source is None:
                exc.source = self.source
            raise

    def _parse(self, text: str) -> ConsensusDocument:
        section = "start"
        valid_after: Optional[datetime] = None
        vote_status: Optional[str] = None
        params: Dict[str, int] = {}
        weights: Optional[Dict[str, int]] = None
        routers: List[RouterEntry] = []
        current: Optional[_RouterBuilder] = None
        in_object = False

        for line_number, keyword, arguments in self._iter_items(text):
            if in_object:
                if keyword.startswith("-----END"):
                    in_object = False
                continue
            if keyword.startswith("-----BEGIN"):
                in_object = True
                continue
            try:
                if section == "start":
                    if keyword != "network-status-version":
                        raise FormatError("Document must start with network-status-version")
                    self._check_version(arguments)
                    section = "header"
                elif section == "header":
                    if keyword == "r":
                        current = _RouterBuilder(line_number, arguments)
                        section = "routers"
                    elif keyword == "directory-footer":
                        section = "footer"
                    elif keyword in ROUTER_KEYWORDS:
                        raise FormatError(f"'{keyword}' line outside a router entry")
                    elif keyword == "network-status-version":
                        raise FormatError("Repeated network-status-version line")
                    elif keyword == "vote-status":
                        vote_status = arguments.strip()
                        if vote_status != "consensus":
                            raise FormatError(f"Not a consensus (vote-status {vote_status!r})")
                    elif keyword == "valid-after":
                        if valid_after is not None:
                            raise FormatError("Repeated valid-after line")
                        valid_after = parse_timestamp(arguments)
                    elif keyword == "params":
                        params = _parse_key_values(arguments, "params")
                    elif keyword == "bandwidth-weights":
                        raise FormatError("bandwidth-weights found before directory-footer")
                    elif keyword not in HEADER_KEYWORDS:
                        logger.debug("Ignoring unknown header keyword %r (line %d)", keyword, line_number)
                elif section == "routers":
                    if keyword == "r":
                        routers.append(current.build())
                        current = _RouterBuilder(line_number, arguments)
                    elif keyword == "directory-footer":
                        routers.append(current.build())
                        current = None
                        section = "footer"
                    elif keyword in ROUTER_KEYWORDS:
                        current.add(keyword, arguments)
                    elif keyword in HEADER_KEYWORDS or keyword == "bandwidth-weights":
                        raise FormatError(f"'{keyword}' line inside the router section")
                    else:
                        logger.debug("Ignoring unknown router keyword %r (line %d)", keyword, line_number)
                else:
                    if keyword in ROUTER_KEYWORDS or keyword in HEADER_KEYWORDS:
                        raise FormatError(f"'{keyword}' line after directory-footer")
                    if keyword == "bandwidth-weights":
                        if weights is not None:
                            raise FormatError("Repeated bandwidth-weights line")
                        weights = _parse_key_values(arguments, "bandwidth-weights")
            except FormatError as exc:
                if exc.line_number is None:
                    exc.line_number = line_number
                raise

        if section == "start":
            raise FormatError("Empty document: network-status-version missing")
        if section != "footer":
            raise FormatError("directory-footer missing")
        if vote_status is None:
            raise FormatError("vote-status missing")
        if valid_after is None:
            raise FormatError("valid-after missing")
        if weights is None:
            raise FormatError("bandwidth-weights missing")
        return ConsensusDocument(
            valid_after=valid_after,
            routers=tuple(routers),
            params=params,
            bandwidth_weights=weights,
        )

    @staticmethod
    def _check_version(arguments: str) -> None:
        parts = arguments.split()
        if not parts or parts[0] != "3":
            raise FormatError(f"Unsupported network-status-version {arguments!r}")
        if len(parts) > 1 and parts[1] != "ns":
            raise FormatError(f"Unsupported consensus flavor {parts[1]!r}")

    @staticmethod
    def _iter_items(text: str):
        started = False
        for line_number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line:
                continue
            if not started and line.startswith("@"):
                continue
            started = True
            keyword, _, arguments = line.partition(" ")
            yield line_number, keyword, arguments.strip()


def parse(text: str, source: Optional[str] = None) -> ConsensusDocument:
    """Parse consensus text; raises :class:`FormatError` on malformed input."""
    return ConsensusParser(source=source).parse(text)


def parse_file(path: str | Path) -> ConsensusDocument:
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Consensus not found at {file_path}")
    text = file_path.read_text(encoding="utf-8", errors="replace")
    return parse(text, source=str(file_path))


__all__ = ["ConsensusParser", "decode_identity", "parse", "parse_file", "parse_timestamp"]
