"""Discovery and explicit caching of historical consensus files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from torscaler.consensus.document import ConsensusDocument
from torscaler.consensus.parser import parse

logger = logging.getLogger(__name__)

# CollecTor layout: consensuses-YYYY-MM/DD/YYYY-MM-DD-HH-MM-SS-consensus
COLLECTOR_PATTERN = "consensuses-*/*/*-consensus"
FILENAME_TIME_FORMAT = "%Y-%m-%d-%H-%M-%S"


def valid_after_from_name(path: Path) -> Optional[datetime]:
    """Return the timestamp encoded in a CollecTor file name, if any."""
    stem = path.name[:19]
    try:
        return datetime.strptime(stem, FILENAME_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


@dataclass(frozen=True)
class ArchiveEntry:
    path: Path
    valid_after: Optional[datetime]

    @property
    def label(self) -> str:
        return str(self.path)


class ConsensusArchive:
    """Consensus files below ``root``, filtered to ``[start, end)``.

    Parsed documents are cached per entry label and only dropped through
    :meth:`invalidate` or :meth:`clear`.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        step: int = 1,
    ) -> None:
        self.root = Path(root)
        if not self.root.exists():
            raise FileNotFoundError(f"Consensus directory not found at {self.root}")
        if step <= 0:
            raise ValueError("step must be positive")
        self.start = _as_utc(start)
        self.end = _as_utc(end)
        self.step = int(step)
        self._cache: Dict[str, ConsensusDocument] = {}
        self._entries: Optional[List[ArchiveEntry]] = None

    # ------------------------------------------------------------- discovery
    def entries(self) -> List[ArchiveEntry]:
        if self._entries is None:
            self._entries = self._discover()
        return list(self._entries)

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return iter(self.entries())

    def __len__(self) -> int:
        return len(self.entries())

    def _discover(self) -> List[ArchiveEntry]:
        if self.root.is_file():
            paths = [self.root]
        else:
            paths = sorted(self.root.glob(COLLECTOR_PATTERN))
            if not paths:
                paths = sorted(p for p in self.root.rglob("*consensus*") if p.is_file())
        entries: List[ArchiveEntry] = []
        for path in paths:
            valid_after = valid_after_from_name(path)
            if valid_after is not None:
                if self.start is not None and valid_after < self.start:
                    continue
                if self.end is not None and valid_after >= self.end:
                    continue
            entries.append(ArchiveEntry(path=path, valid_after=valid_after))
        entries.sort(key=lambda e: (e.valid_after is None, e.valid_after or datetime.min, str(e.path)))
        entries = entries[:: self.step]
        logger.info("Found %d consensus files below %s", len(entries), self.root)
        return entries

    # ----------------------------------------------------------------- cache
    def read_text(self, entry: ArchiveEntry) -> str:
        return entry.path.read_text(encoding="utf-8", errors="replace")

    def get(self, entry: ArchiveEntry) -> ConsensusDocument:
        cached = self._cache.get(entry.label)
        if cached is not None:
            return cached
        document = parse(self.read_text(entry), source=entry.label)
        self._cache[entry.label] = document
        return document

    def invalidate(self, entry: ArchiveEntry) -> None:
        self._cache.pop(entry.label, None)

    def clear(self) -> None:
        self._cache.clear()
        self._entries = None

    @property
    def cached_labels(self) -> List[str]:
        return sorted(self._cache)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


__all__ = ["ArchiveEntry", "ConsensusArchive", "valid_after_from_name"]
