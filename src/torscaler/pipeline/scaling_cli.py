"""Command line entry point: scale consensus archives or export their features."""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from torscaler.consensus.annotations import AnnotationTable
from torscaler.errors import TorScalerError
from torscaler.growth.growth_model import Quantity, ScaleKind
from torscaler.growth.regression import ExtrapolationMethod
from torscaler.history.archive import ConsensusArchive
from torscaler.synth.synthesizer import SyntheticTarget

from .config import ScalingConfig
from .scaling_pipeline import HistoricalInput, ScalingPipeline, records_to_dataframe

logger = logging.getLogger(__name__)


def _add_input_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "inputs",
        nargs="+",
        help="Consensus files or directories (CollecTor layout or any *consensus* file).",
    )
    parser.add_argument("--start", default=None, help="Only use consensuses valid after this ISO date.")
    parser.add_argument("--end", default=None, help="Only use consensuses valid before this ISO date.")
    parser.add_argument("--step", type=int, default=1, help="Use every n-th consensus of each directory.")
    parser.add_argument(
        "--annotations",
        default=None,
        help="CSV with fingerprint,family,asn columns to attach family and AS data.",
    )
    parser.add_argument("--max-workers", type=int, default=None, help="Worker threads for parsing.")
    parser.add_argument(
        "--scale-by",
        default=None,
        choices=[kind.value for kind in ScaleKind],
        help="Scale marker of each historical consensus.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="torscaler", description=__doc__)
    commands = parser.add_subparsers(dest="command", required=True)

    scale = commands.add_parser("scale", help="Synthesize consensuses at target scales.")
    _add_input_arguments(scale)
    scale.add_argument("--config", default=None, help="Scaling config YAML.")
    scale.add_argument("--population", type=int, action="append", default=[], help="Target router count.")
    scale.add_argument("--date", action="append", default=[], help="Target ISO date.")
    scale.add_argument("--scale", type=float, action="append", default=[], help="Target scale marker.")
    scale.add_argument("--seed", type=int, default=None, help="Random seed (overrides the config).")
    scale.add_argument(
        "--quantities",
        default=None,
        help=f"Comma-separated quantities to model ({', '.join(q.value for q in Quantity)}).",
    )
    scale.add_argument(
        "--method",
        action="append",
        default=[],
        metavar="QUANTITY=METHOD",
        help="Extrapolation method for one quantity, e.g. bandwidth=power_law.",
    )
    scale.add_argument(
        "--shape-method",
        default=None,
        choices=[method.value for method in ExtrapolationMethod],
        help="Extrapolation method for the bandwidth-shape curves.",
    )
    scale.add_argument(
        "--recompute-bandwidth-weights",
        action="store_true",
        help="Recompute bandwidth weights from the synthetic routers.",
    )
    scale.add_argument("--output-dir", default="output/consensuses", help="Directory for synthetic consensuses.")
    scale.add_argument("--features-csv", default=None, help="Optional CSV of historical features.")
    scale.add_argument("--model-csv", default=None, help="Optional CSV summarising the fitted curves.")

    history = commands.add_parser("history", help="Export per-consensus features as CSV.")
    _add_input_arguments(history)
    history.add_argument("--output-csv", default="output/history.csv", help="Destination CSV.")
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _parse_date(token: Optional[str]) -> Optional[datetime]:
    if token is None:
        return None
    moment = datetime.fromisoformat(token)
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def collect_inputs(
    paths: Sequence[str],
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    step: int = 1,
) -> List[HistoricalInput]:
    inputs: List[HistoricalInput] = []
    for path in paths:
        archive = ConsensusArchive(path, start=start, end=end, step=step)
        for entry in archive:
            inputs.append(HistoricalInput(text=archive.read_text(entry), label=entry.label))
    return inputs


def build_config(args: argparse.Namespace) -> ScalingConfig:
    """Config file values overridden by command line flags."""
    config = ScalingConfig.from_yaml(args.config) if getattr(args, "config", None) else ScalingConfig()
    overrides: Dict[str, object] = {}
    if args.max_workers is not None:
        overrides["max_workers"] = int(args.max_workers)
    if args.scale_by is not None:
        overrides["scale_by"] = ScaleKind(args.scale_by)
    if getattr(args, "seed", None) is not None:
        overrides["seed"] = int(args.seed)
    if getattr(args, "quantities", None):
        overrides["quantities"] = frozenset(token for token in args.quantities.split(",") if token.strip())
    methods = dict(config.methods)
    for option in getattr(args, "method", None) or []:
        if "=" not in option:
            raise ValueError(f"--method expects QUANTITY=METHOD, got {option!r}")
        quantity, method = option.split("=", 1)
        methods[Quantity.parse(quantity)] = method
    overrides["methods"] = methods
    if getattr(args, "shape_method", None):
        overrides["shape_method"] = args.shape_method
    if getattr(args, "recompute_bandwidth_weights", False):
        overrides["recompute_bandwidth_weights"] = True
    targets = [SyntheticTarget.for_population(value) for value in getattr(args, "population", None) or []]
    targets += [SyntheticTarget.for_date(_parse_date(value)) for value in getattr(args, "date", None) or []]
    targets += [SyntheticTarget.for_scale(value) for value in getattr(args, "scale", None) or []]
    if targets:
        overrides["targets"] = targets
    return replace(config, **overrides)


def _progress() -> Progress:
    console = Console(stderr=True)
    return Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(bar_width=None),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
        disable=not console.is_terminal,
    )


def _write_csv(path: str | Path, frame) -> Path:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(output_path, index=False)
    return output_path


def run_scale(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
    except (TypeError, ValueError) as exc:
        raise SystemExit(str(exc)) from exc
    if not config.targets:
        raise SystemExit("No targets given; use --population, --date, --scale or a config file.")
    annotations = AnnotationTable.from_csv(args.annotations) if args.annotations else None
    inputs = collect_inputs(args.inputs, start=_parse_date(args.start), end=_parse_date(args.end), step=args.step)
    pipeline = ScalingPipeline(config, annotations=annotations)

    with _progress() as progress:
        documents_task = progress.add_task(f"Consensuses ({len(inputs):,})", total=len(inputs))
        targets_task = progress.add_task(f"Targets ({len(config.targets):,})", total=len(config.targets))
        try:
            result = pipeline.run(
                inputs,
                config.targets,
                on_document=lambda: progress.advance(documents_task),
                on_target=lambda: progress.advance(targets_task),
            )
        except TorScalerError as exc:
            raise SystemExit(str(exc)) from exc

    written = result.write_documents(args.output_dir)
    logger.info("Wrote %d synthetic consensuses to %s (seed %d)", len(written), args.output_dir, result.seed)
    if args.features_csv:
        _write_csv(args.features_csv, result.features_frame())
        logger.info("Wrote historical features to %s", args.features_csv)
    if args.model_csv:
        _write_csv(args.model_csv, result.model_frame())
        logger.info("Wrote growth model summary to %s", args.model_csv)
    for outcome in result.failed:
        logger.error("Target %s failed: %s", outcome.target.name, outcome.error)
    return 1 if result.failed else 0


def run_history(args: argparse.Namespace) -> int:
    config = build_config(args)
    annotations = AnnotationTable.from_csv(args.annotations) if args.annotations else None
    inputs = collect_inputs(args.inputs, start=_parse_date(args.start), end=_parse_date(args.end), step=args.step)
    pipeline = ScalingPipeline(config, annotations=annotations)
    with _progress() as progress:
        task = progress.add_task(f"Consensuses ({len(inputs):,})", total=len(inputs))
        try:
            records = pipeline.analyse(inputs, on_progress=lambda: progress.advance(task))
        except TorScalerError as exc:
            raise SystemExit(str(exc)) from exc
    path = _write_csv(args.output_csv, records_to_dataframe(records))
    logger.info("Wrote features of %d consensuses to %s", len(records), path)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    if args.command == "history":
        return run_history(args)
    return run_scale(args)


if __name__ == "__main__":
    raise SystemExit(main())
