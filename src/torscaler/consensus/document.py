"""In-memory model of a Tor network-status consensus."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from torscaler.errors import FormatError

INT32_MAX = 2**31 - 1
INT32_MIN = -(2**31)
UINT32_MAX = 2**32 - 1

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_EXIT_POLICY = "reject 1-65535"

_NICKNAME_RE = re.compile(r"^[A-Za-z0-9]{1,19}$")
_HEX40_RE = re.compile(r"^[0-9A-F]{40}$")


class Flag(str, Enum):
    """Relay flags assigned by the directory authorities."""

    AUTHORITY = "Authority"
    BAD_EXIT = "BadExit"
    EXIT = "Exit"
    FAST = "Fast"
    GUARD = "Guard"
    HSDIR = "HSDir"
    MIDDLE_ONLY = "MiddleOnly"
    NO_ED_CONSENSUS = "NoEdConsensus"
    RUNNING = "Running"
    STABLE = "Stable"
    STALE_DESC = "StaleDesc"
    SYBIL = "Sybil"
    V2DIR = "V2Dir"
    VALID = "Valid"

    @classmethod
    def parse(cls, token: str) -> "Flag":
        try:
            return cls(token)
        except ValueError as exc:
            raise FormatError(f"Unknown relay flag {token!r}") from exc

    @classmethod
    def vocabulary(cls) -> Tuple["Flag", ...]:
        """All flags in the order Tor lists them in ``known-flags``."""
        return tuple(sorted(cls, key=lambda flag: flag.value))

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


# Sorted, as emitted on the ``bandwidth-weights`` line.
BANDWIDTH_WEIGHT_KEYS: Tuple[str, ...] = (
    "Wbd",
    "Wbe",
    "Wbg",
    "Wbm",
    "Wdb",
    "Web",
    "Wed",
    "Wee",
    "Weg",
    "Wem",
    "Wgb",
    "Wgd",
    "Wgg",
    "Wgm",
    "Wmb",
    "Wmd",
    "Wme",
    "Wmg",
    "Wmm",
)

# Inclusive bounds from Tor's param-spec.txt. Parameters not
# listed here only need to fit a signed 32-bit integer.
PARAM_RANGES: Dict[str, Tuple[int, int]] = {
    "AuthDirMaxServersPerAddr": (0, INT32_MAX),
    "CircuitPriorityHalflifeMsec": (-1, INT32_MAX),
    "ExtendByEd25519ID": (0, 1),
    "KISTSchedRunInterval": (0, 100),
    "KISTSockBufSizeFactor": (0, INT32_MAX),
    "NumDirectoryGuards": (0, 10),
    "NumEntryGuards": (1, 10),
    "NumNTorsPerTAP": (1, 100000),
    "UseNTorHandshake": (0, 1),
    "UseOptimisticData": (0, 1),
    "bwweightscale": (1, INT32_MAX),
    "cbtclosequantile": (0, 99),
    "cbtdisabled": (0, 1),
    "cbtinitialtimeout": (10, INT32_MAX),
    "cbtlearntimeout": (10, 60000),
    "cbtmaxopencircs": (0, 14),
    "cbtmaxtimeouts": (3, 10000),
    "cbtmincircs": (1, 10000),
    "cbtmintimeout": (10, INT32_MAX),
    "cbtnummodes": (1, 20),
    "cbtquantile": (10, 99),
    "cbtrecentcount": (3, 1000),
    "cbttestfreq": (1, INT32_MAX),
    "circwindow": (100, 1000),
    "guard-lifetime-days": (1, 3650),
    "hs_service_max_rdv_failures": (1, 10),
    "maxunmeasuredbw": (1, INT32_MAX),
    "min_paths_for_circs_pct": (25, 95),
    "refuseunknownexits": (0, 1),
    "sendme_accept_min_version": (0, 255),
    "sendme_emit_min_version": (0, 255),
}


def param_range(name: str) -> Tuple[int, int]:
    return PARAM_RANGES.get(name, (INT32_MIN, INT32_MAX))


def as_utc(moment: datetime) -> datetime:
    """Naive timestamps are read as UTC; aware ones are converted to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def validate_param(name: str, value: int) -> None:
    low, high = param_range(name)
    if not isinstance(value, int) or isinstance(value, bool):
        raise FormatError(f"Consensus parameter {name} must be an integer, got {value!r}")
    if value < low or value > high:
        raise FormatError(f"Consensus parameter {name}={value} outside [{low}, {high}]")


def validate_bandwidth_weights(weights: Mapping[str, int]) -> None:
    keys = set(weights)
    missing = [key for key in BANDWIDTH_WEIGHT_KEYS if key not in keys]
    if missing:
        raise FormatError(f"Bandwidth weights missing keys: {', '.join(missing)}")
    unknown = sorted(keys.difference(BANDWIDTH_WEIGHT_KEYS))
    if unknown:
        raise FormatError(f"Unknown bandwidth weight keys: {', '.join(unknown)}")
    for key, value in weights.items():
        if not isinstance(value, int) or isinstance(value, bool):
            raise FormatError(f"Bandwidth weight {key} must be an integer, got {value!r}")
        if value < 0 or value > INT32_MAX:
            raise FormatError(f"Bandwidth weight {key}={value} outside [0, {INT32_MAX}]")


def _coerce_flags(flags: Iterable[object]) -> FrozenSet[Flag]:
    result = set()
    for flag in flags:
        result.add(flag if isinstance(flag, Flag) else Flag.parse(str(flag)))
    return frozenset(result)


@dataclass(frozen=True)
class RouterEntry:
    """One router status entry of a consensus.

    Only ``fingerprint``, ``nickname``, ``bandwidth`` and ``flags`` matter to
    the scaling models. ``family`` and ``asn`` come from descriptors or an AS
    database and are optional; the remaining fields are kept so that real
    documents survive a parse/serialize round trip.
    """

    fingerprint: str
    nickname: str
    bandwidth: int
    flags: FrozenSet[Flag] = frozenset()
    family: Optional[str] = None
    asn: Optional[int] = None
    digest: str = "0" * 40
    published: datetime = EPOCH
    address: str = "0.0.0.0"
    or_port: int = 9001
    dir_port: int = 0
    version: Optional[str] = None
    protocols: Optional[str] = None
    exit_policy: str = DEFAULT_EXIT_POLICY
    unmeasured: bool = False

    def __post_init__(self) -> None:
        fingerprint = str(self.fingerprint).upper()
        if not _HEX40_RE.match(fingerprint):
            raise FormatError(f"Invalid relay fingerprint {self.fingerprint!r}")
        digest = str(self.digest).upper()
        if not _HEX40_RE.match(digest):
            raise FormatError(f"Invalid descriptor digest {self.digest!r}")
        if not _NICKNAME_RE.match(self.nickname or ""):
            raise FormatError(f"Invalid relay nickname {self.nickname!r}")
        if isinstance(self.bandwidth, bool) or not isinstance(self.bandwidth, int):
            raise FormatError(f"Bandwidth of {self.nickname} must be an integer")
        if self.bandwidth < 0 or self.bandwidth > UINT32_MAX:
            raise FormatError(f"Bandwidth {self.bandwidth} of {self.nickname} out of range")
        for label, port in (("ORPort", self.or_port), ("DirPort", self.dir_port)):
            if port < 0 or port > 65535:
                raise FormatError(f"{label} {port} of {self.nickname} out of range")
        try:
            ipaddress.IPv4Address(self.address)
        except ValueError as exc:
            raise FormatError(f"Invalid IPv4 address {self.address!r}") from exc
        if self.asn is not None and self.asn < 0:
            raise FormatError(f"AS number of {self.nickname} cannot be negative")
        if self.family is not None and (not self.family or any(c.isspace() for c in self.family)):
            raise FormatError(f"Invalid family identifier {self.family!r}")
        published = as_utc(self.published)
        # The wire format carries whole seconds only.
        published = published.replace(microsecond=0)
        object.__setattr__(self, "fingerprint", fingerprint)
        object.__setattr__(self, "digest", digest)
        object.__setattr__(self, "published", published)
        object.__setattr__(self, "flags", _coerce_flags(self.flags))

    def has_flag(self, flag: Flag) -> bool:
        return flag in self.flags

    @property
    def is_exit(self) -> bool:
        return Flag.EXIT in self.flags and Flag.BAD_EXIT not in self.flags

    @property
    def is_guard(self) -> bool:
        return Flag.GUARD in self.flags

    def sorted_flags(self) -> Tuple[Flag, ...]:
        return tuple(sorted(self.flags, key=lambda flag: flag.value))

    def with_bandwidth(self, bandwidth: int) -> "RouterEntry":
        return replace(self, bandwidth=int(bandwidth))


@dataclass(frozen=True)
class ConsensusDocument:
    """A consensus: ordered router entries plus network-wide values."""

    valid_after: datetime
    routers: Tuple[RouterEntry, ...] = ()
    params: Dict[str, int] = field(default_factory=dict)
    bandwidth_weights: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_after = as_utc(self.valid_after)
        valid_after = valid_after.replace(microsecond=0)
        routers = tuple(self.routers)
        seen = set()
        for router in routers:
            if router.fingerprint in seen:
                raise FormatError(f"Duplicate router fingerprint {router.fingerprint}")
            seen.add(router.fingerprint)
        params = {str(name): value for name, value in self.params.items()}
        for name, value in params.items():
            validate_param(name, value)
        weights = dict(self.bandwidth_weights)
        validate_bandwidth_weights(weights)
        object.__setattr__(self, "valid_after", valid_after)
        object.__setattr__(self, "routers", routers)
        object.__setattr__(self, "params", params)
        object.__setattr__(self, "bandwidth_weights", weights)

    # ---------------------------------------------------------------- queries
    @property
    def population(self) -> int:
        return len(self.routers)

    @property
    def total_bandwidth(self) -> int:
        return sum(router.bandwidth for router in self.routers)

    def router(self, fingerprint: str) -> RouterEntry:
        key = fingerprint.upper()
        for entry in self.routers:
            if entry.fingerprint == key:
                return entry
        raise KeyError(f"Unknown router fingerprint '{fingerprint}'")

    def count_flag(self, flag: Flag) -> int:
        return sum(1 for router in self.routers if flag in router.flags)

    # ---------------------------------------------------------------- copies
    def with_routers(self, routers: Sequence[RouterEntry]) -> "ConsensusDocument":
        return replace(self, routers=tuple(routers))

    def with_bandwidth_weights(self, weights: Mapping[str, int]) -> "ConsensusDocument":
        return replace(self, bandwidth_weights=dict(weights))
