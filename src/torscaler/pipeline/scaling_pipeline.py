"""End-to-end scaling run: parse, extract, fit, synthesize.

This module provides :class:`ScalingPipeline`, which turns a batch of
historical consensus texts into synthetic consensus documents for one or more
targets.

Inputs
------
1. **HistoricalInput**: consensus text plus an optional scale marker and a
   label used in error messages. Without an explicit scale the marker comes
   from the parsed document, either its valid-after time (days since the
   epoch) or its router count, depending on ``ScalingConfig.scale_by``.
2. **ScalingConfig**: modelled quantities, extrapolation methods, seed,
   targets and worker count.

Outputs
-------
:class:`ScalingRunResult` holding:

1. **records**: one :class:`HistoricalRecord` per input, in input order.
2. **model**: the fitted :class:`GrowthModel`.
3. **outcomes**: one :class:`TargetOutcome` per target, carrying either the
   synthetic document and its text or the :class:`InvalidTargetError`.
4. **seed**: the seed actually used, so a run without a configured seed can
   be reproduced.

Failure policy
--------------
A :class:`FormatError` in any historical input aborts the run, with the input
label attached as ``exc.source``. Fitting errors abort the run.
An :class:`InvalidTargetError` only fails its own target.

Example Usage
-------------
.. code-block:: python

    from torscaler.pipeline import HistoricalInput, ScalingConfig, ScalingPipeline
    from torscaler.synth import SyntheticTarget

    config = ScalingConfig(seed=7, max_workers=4)
    inputs = [HistoricalInput(text=path.read_text(), label=str(path)) for path in paths]
    result = ScalingPipeline(config).run(inputs, [SyntheticTarget.for_population(12000)])
    for outcome in result.outcomes:
        if outcome.ok:
            print(outcome.text)
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.random import SeedSequence, default_rng

from torscaler.consensus.annotations import AnnotationTable
from torscaler.consensus.document import ConsensusDocument
from torscaler.consensus.parser import parse
from torscaler.consensus.writer import serialize
from torscaler.errors import FormatError, InvalidTargetError
from torscaler.growth.growth_model import GrowthModel, ScaleKind, date_to_scale, fit, growth_model_to_dataframe
from torscaler.history.feature_table import features_to_dataframe
from torscaler.history.features import FeatureSet, extract, quantile_levels
from torscaler.synth.synthesizer import SyntheticTarget, synthesize

from .config import ScalingConfig

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[], None]


@dataclass(frozen=True)
class HistoricalInput:
    text: str
    scale: Optional[float] = None
    label: Optional[str] = None


@dataclass(frozen=True)
class HistoricalRecord:
    label: str
    scale: float
    features: FeatureSet


@dataclass
class TargetOutcome:
    target: SyntheticTarget
    document: Optional[ConsensusDocument] = None
    text: Optional[str] = None
    error: Optional[InvalidTargetError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ScalingRunResult:
    seed: int
    records: List[HistoricalRecord]
    model: GrowthModel
    outcomes: List[TargetOutcome] = field(default_factory=list)

    @property
    def failed(self) -> List[TargetOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def features_frame(self) -> pd.DataFrame:
        return records_to_dataframe(self.records)

    def model_frame(self) -> pd.DataFrame:
        return growth_model_to_dataframe(self.model)

    def write_documents(self, directory: str | Path) -> List[Path]:
        """Write each successful document to ``<directory>/<target>-consensus``."""
        output_dir = Path(directory)
        output_dir.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []
        for outcome in self.outcomes:
            if not outcome.ok or outcome.text is None:
                continue
            path = output_dir / f"{_file_stem(outcome.target.name)}-consensus"
            path.write_text(outcome.text, encoding="utf-8")
            written.append(path)
        return written


def records_to_dataframe(records: Sequence[HistoricalRecord]) -> pd.DataFrame:
    frame = features_to_dataframe(
        [record.features for record in records],
        [record.scale for record in records],
    )
    frame.insert(0, "label", [record.label for record in records])
    return frame


def _file_stem(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("_") or "target"


def _map_ordered(function, items: Sequence, max_workers: int) -> List:
    if max_workers <= 1 or len(items) <= 1:
        return [function(item) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(function, items))


class ScalingPipeline:
    def __init__(
        self,
        config: Optional[ScalingConfig] = None,
        annotations: Optional[AnnotationTable] = None,
    ) -> None:
        self.config = config or ScalingConfig()
        self.annotations = annotations
        self._levels = quantile_levels(self.config.quantile_levels)

    # ---- historical stage ----
    def _scale_marker(self, item: HistoricalInput, features: FeatureSet) -> float:
        if item.scale is not None:
            return float(item.scale)
        if self.config.scale_by is ScaleKind.POPULATION:
            return float(features.population)
        return date_to_scale(features.valid_after)

    def _analyse_one(self, indexed: Tuple[int, HistoricalInput]) -> HistoricalRecord:
        idx, item = indexed
        label = item.label or f"input[{idx}]"
        try:
            document = parse(item.text, source=label)
        except FormatError as exc:
            if exc.source is None:
                exc.source = label
            raise
        if self.annotations is not None:
            document = self.annotations.apply(document)
        features = extract(document, self._levels)
        logger.debug("Extracted %s: %d routers", label, features.population)
        return HistoricalRecord(label=label, scale=self._scale_marker(item, features), features=features)

    def analyse(
        self,
        inputs: Iterable[HistoricalInput],
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[HistoricalRecord]:
        """Parse and extract every input, keeping input order."""
        items = list(enumerate(inputs))

        def work(indexed: Tuple[int, HistoricalInput]) -> HistoricalRecord:
            record = self._analyse_one(indexed)
            if on_progress is not None:
                on_progress()
            return record

        records = _map_ordered(work, items, self.config.max_workers)
        logger.info("Extracted features from %d historical documents", len(records))
        return records

    def fit(self, records: Sequence[HistoricalRecord]) -> GrowthModel:
        return fit(
            [(record.scale, record.features) for record in records],
            self.config.growth_settings(),
        )

    # ---- synthesis stage ----
    def resolve_seed(self) -> int:
        if self.config.seed is not None:
            return int(self.config.seed)
        seed = int(SeedSequence().entropy)
        logger.info("No seed configured, using %d", seed)
        return seed

    def _synthesize_one(self, model: GrowthModel, target: SyntheticTarget, rng: np.random.Generator) -> TargetOutcome:
        try:
            document = synthesize(
                model,
                target,
                rng,
                recompute_bandwidth_weights=self.config.recompute_bandwidth_weights,
            )
        except InvalidTargetError as exc:
            logger.warning("Target %s failed: %s", target.name, exc)
            return TargetOutcome(target=target, error=exc)
        return TargetOutcome(target=target, document=document, text=serialize(document))

    def synthesize(
        self,
        model: GrowthModel,
        targets: Sequence[SyntheticTarget],
        seed: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[TargetOutcome]:
        # One child stream per target keeps results independent of scheduling.
        children = SeedSequence(seed).spawn(len(targets))
        jobs = [(target, default_rng(child)) for target, child in zip(targets, children)]

        def work(job: Tuple[SyntheticTarget, np.random.Generator]) -> TargetOutcome:
            outcome = self._synthesize_one(model, *job)
            if on_progress is not None:
                on_progress()
            return outcome

        return _map_ordered(work, jobs, self.config.max_workers)

    def run(
        self,
        inputs: Iterable[HistoricalInput],
        targets: Optional[Sequence[SyntheticTarget]] = None,
        *,
        on_document: Optional[ProgressCallback] = None,
        on_target: Optional[ProgressCallback] = None,
    ) -> ScalingRunResult:
        targets = list(targets) if targets is not None else list(self.config.targets)
        records = self.analyse(inputs, on_progress=on_document)
        model = self.fit(records)
        seed = self.resolve_seed()
        outcomes = self.synthesize(model, targets, seed, on_progress=on_target)
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info("Synthesized %d of %d targets", len(outcomes) - failed, len(outcomes))
        return ScalingRunResult(seed=seed, records=records, model=model, outcomes=outcomes)


__all__ = [
    "HistoricalInput",
    "HistoricalRecord",
    "ScalingPipeline",
    "ScalingRunResult",
    "TargetOutcome",
    "records_to_dataframe",
]
