"""Deterministic relay identifiers for synthetic documents."""

from __future__ import annotations

import hashlib
import ipaddress
import zlib

NICKNAME_PREFIX = "scaled"
# First address of the private 10.0.0.0/8 block.
BASE_ADDRESS = int(ipaddress.IPv4Address("10.0.0.0"))
COUNTER_DIGITS = 32


class FingerprintGenerator:
    """Incrementing fingerprints ``<8 hex prefix><32 hex counter>``.

    The prefix is the CRC32 of ``seed_key`` so documents synthesized for
    different targets do not share identities.
    """

    def __init__(self, seed_key: str, start: int = 1) -> None:
        if start < 0:
            raise ValueError("start must be non-negative")
        self.prefix = f"{zlib.crc32(seed_key.encode('utf-8')) & 0xFFFFFFFF:08X}"
        self._next = int(start)

    def __iter__(self) -> "FingerprintGenerator":
        return self

    def __next__(self) -> str:
        value = self._next
        if value >= 16 ** COUNTER_DIGITS:
            raise OverflowError("Fingerprint counter exhausted")
        self._next += 1
        return f"{self.prefix}{value:0{COUNTER_DIGITS}X}"


class NicknameGenerator:
    def __init__(self, start: int = 1) -> None:
        self._next = int(start)

    def __iter__(self) -> "NicknameGenerator":
        return self

    def __next__(self) -> str:
        value = self._next
        self._next += 1
        return f"{NICKNAME_PREFIX}{value}"


def descriptor_digest(fingerprint: str) -> str:
    return hashlib.sha1(fingerprint.encode("ascii")).hexdigest().upper()


def router_address(index: int) -> str:
    return str(ipaddress.IPv4Address((BASE_ADDRESS + index) & 0xFFFFFFFF))


__all__ = [
    "FingerprintGenerator",
    "NicknameGenerator",
    "descriptor_digest",
    "router_address",
]
