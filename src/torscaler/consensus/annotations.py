"""Attach family and AS membership to parsed consensus entries.

Consensus documents do not list relay families or autonomous systems; the
scaling tool historically derived them from server descriptors and an
IP-to-AS database. This module reads the result of that join from a CSV
with the columns ``fingerprint``, ``family`` and ``asn`` (the latter two
may be empty) and applies it to documents.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from .document import ConsensusDocument

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("fingerprint",)
OPTIONAL_COLUMNS = ("family", "asn")


@dataclass(frozen=True)
class RelayAnnotation:
    family: Optional[str] = None
    asn: Optional[int] = None


@dataclass
class AnnotationTable:
    """Fingerprint-keyed family/AS lookup."""

    by_fingerprint: Dict[str, RelayAnnotation] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.by_fingerprint)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "AnnotationTable":
        missing = [column for column in REQUIRED_COLUMNS if column not in df.columns]
        if missing:
            raise ValueError(f"Annotation table missing columns: {', '.join(missing)}")
        table: Dict[str, RelayAnnotation] = {}
        has_family = "family" in df.columns
        has_asn = "asn" in df.columns
        for row in df.itertuples(index=False):
            fingerprint = str(row.fingerprint).strip().upper().lstrip("$")
            family = None
            if has_family and not pd.isna(row.family) and str(row.family).strip():
                family = str(row.family).strip()
            asn = None
            if has_asn and not pd.isna(row.asn):
                asn = int(row.asn)
            table[fingerprint] = RelayAnnotation(family=family, asn=asn)
        return cls(by_fingerprint=table)

    @classmethod
    def from_csv(cls, path: str | Path) -> "AnnotationTable":
        csv_path = Path(path)
        if not csv_path.exists():
            raise FileNotFoundError(f"Annotation CSV not found at {csv_path}")
        df = pd.read_csv(csv_path, dtype={"fingerprint": str, "family": str})
        return cls.from_dataframe(df)

    def apply(self, document: ConsensusDocument) -> ConsensusDocument:
        """Return a copy of ``document`` with known family/AS fields filled in."""
        matched = 0
        routers = []
        for router in document.routers:
            note = self.by_fingerprint.get(router.fingerprint)
            if note is None:
                routers.append(router)
                continue
            matched += 1
            routers.append(
                replace(
                    router,
                    family=note.family if note.family is not None else router.family,
                    asn=note.asn if note.asn is not None else router.asn,
                )
            )
        logger.debug("Annotated %d of %d routers", matched, len(document.routers))
        return document.with_routers(routers)


__all__ = ["AnnotationTable", "RelayAnnotation"]
