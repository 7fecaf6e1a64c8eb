from __future__ import annotations

import textwrap
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from torscaler.consensus.parser import parse, parse_file
from torscaler.consensus.writer import serialize, write_file
from torscaler.errors import FormatError, InvalidTargetError
from torscaler.growth.growth_model import Quantity, ScaleKind
from torscaler.growth.regression import ExtrapolationMethod
from torscaler.pipeline import HistoricalInput, ScalingConfig, ScalingPipeline
from torscaler.pipeline.scaling_cli import build_config, main, parse_args
from torscaler.synth.synthesizer import SyntheticTarget

START = datetime(2023, 5, 1, tzinfo=timezone.utc)


def _history(make_document, make_router):
    """Three consensuses of 10, 20 and 30 routers at 100 bandwidth each."""
    documents = []
    for step, count in enumerate((10, 20, 30)):
        routers = [
            make_router(
                idx,
                bandwidth=100,
                flags=("Guard", "Running", "Valid") if idx % 5 == 0 else ("Running", "Valid"),
            )
            for idx in range(1, count + 1)
        ]
        documents.append(make_document(routers, valid_after=START + timedelta(hours=step)))
    return documents


@pytest.fixture
def history_inputs(make_document, make_router):
    return [
        HistoricalInput(text=serialize(document), label=f"doc{idx}")
        for idx, document in enumerate(_history(make_document, make_router))
    ]


@pytest.fixture
def collector_dir(tmp_path, make_document, make_router):
    root = tmp_path / "archive"
    for document in _history(make_document, make_router):
        name = document.valid_after.strftime("%Y-%m-%d-%H-%M-%S-consensus")
        write_file(document, root / "consensuses-2023-05" / "01" / name)
    return root


def test_pipeline_end_to_end(history_inputs):
    config = ScalingConfig(seed=7, scale_by=ScaleKind.POPULATION)
    result = ScalingPipeline(config).run(history_inputs, [SyntheticTarget.for_population(40)])

    assert [record.label for record in result.records] == ["doc0", "doc1", "doc2"]
    assert [record.scale for record in result.records] == [10.0, 20.0, 30.0]
    assert result.seed == 7
    (outcome,) = result.outcomes
    assert outcome.ok
    assert outcome.document.population == 40
    assert outcome.document.total_bandwidth == 4000
    assert parse(outcome.text) == outcome.document


def test_failed_target_does_not_abort_others(history_inputs):
    config = ScalingConfig(seed=1, scale_by=ScaleKind.POPULATION)
    targets = [
        SyntheticTarget.for_population(15),
        SyntheticTarget.for_date(datetime(2030, 1, 1)),
        SyntheticTarget.for_population(50),
    ]
    result = ScalingPipeline(config).run(history_inputs, targets)
    assert [outcome.ok for outcome in result.outcomes] == [True, False, True]
    assert isinstance(result.failed[0].error, InvalidTargetError)
    assert result.outcomes[2].document.population == 50


def test_threads_do_not_change_results(history_inputs):
    targets = [SyntheticTarget.for_population(n) for n in (12, 25, 40)]
    sequential = ScalingPipeline(ScalingConfig(seed=5, scale_by="population")).run(history_inputs, targets)
    threaded = ScalingPipeline(ScalingConfig(seed=5, scale_by="population", max_workers=3)).run(
        history_inputs, targets
    )
    assert [o.text for o in sequential.outcomes] == [o.text for o in threaded.outcomes]
    assert sequential.model == threaded.model


def test_unseeded_run_reports_its_seed(history_inputs):
    pipeline = ScalingPipeline(ScalingConfig(scale_by="population"))
    result = pipeline.run(history_inputs, [SyntheticTarget.for_population(20)])
    replay = ScalingPipeline(ScalingConfig(seed=result.seed, scale_by="population")).run(
        history_inputs, [SyntheticTarget.for_population(20)]
    )
    assert replay.outcomes[0].text == result.outcomes[0].text


def test_format_error_names_its_input(history_inputs):
    broken = HistoricalInput(text="network-status-version 3\nvote-status vote\n", label="broken-consensus")
    with pytest.raises(FormatError) as excinfo:
        ScalingPipeline(ScalingConfig(seed=1)).run([*history_inputs, broken], [SyntheticTarget.for_population(5)])
    assert excinfo.value.source == "broken-consensus"
    assert str(excinfo.value).startswith("broken-consensus:")


def test_run_result_frames_and_files(history_inputs, tmp_path):
    config = ScalingConfig(seed=2, scale_by=ScaleKind.POPULATION)
    result = ScalingPipeline(config).run(history_inputs, [SyntheticTarget.for_population(40, label="x4/growth")])
    features = result.features_frame()
    assert list(features["label"]) == ["doc0", "doc1", "doc2"]
    assert list(features["num_relays"]) == [10, 20, 30]
    assert features.loc[0, "prevalence_Guard"] == pytest.approx(0.2)
    assert "population" in set(result.model_frame()["curve"])
    (path,) = result.write_documents(tmp_path / "out")
    assert path.name == "x4_growth-consensus"
    assert parse_file(path).population == 40


def test_config_yaml_round_trip(tmp_path):
    path = tmp_path / "scaling.yaml"
    path.write_text(
        textwrap.dedent(
            """
            quantities: [population, bandwidth, flags]
            methods:
              bandwidth: power_law
            seed: 42
            scale_by: population
            shape_method: logarithmic
            max_workers: 2
            targets:
              - population: 10000
                label: double
              - scale: 12.5
            """
        ),
        encoding="utf-8",
    )
    config = ScalingConfig.from_yaml(path)
    assert config.quantities == {Quantity.POPULATION, Quantity.BANDWIDTH, Quantity.FLAGS}
    assert config.methods[Quantity.BANDWIDTH] is ExtrapolationMethod.POWER_LAW
    assert config.methods[Quantity.FAMILIES] is ExtrapolationMethod.CONSTANT
    assert config.scale_by is ScaleKind.POPULATION
    assert config.shape_method is ExtrapolationMethod.LOGARITHMIC
    assert config.growth_settings().shape_method is ExtrapolationMethod.LOGARITHMIC
    assert config.to_mapping()["shape_method"] == "logarithmic"
    assert config.targets == [SyntheticTarget.for_population(10000, "double"), SyntheticTarget.for_scale(12.5)]

    copy_path = tmp_path / "nested" / "copy.yaml"
    config.to_yaml(copy_path)
    assert ScalingConfig.from_yaml(copy_path) == config


def test_config_rejects_bad_values(tmp_path):
    with pytest.raises(FileNotFoundError):
        ScalingConfig.from_yaml(tmp_path / "missing.yaml")
    with pytest.raises(TypeError):
        ScalingConfig.from_mapping(["population"])
    with pytest.raises(TypeError):
        ScalingConfig.from_mapping({"quantities": "population"})
    with pytest.raises(ValueError):
        ScalingConfig.from_mapping({"methods": {"bandwidth": "cubic"}})
    with pytest.raises(ValueError):
        ScalingConfig(max_workers=0)


def test_cli_flags_override_shape_method(tmp_path):
    path = tmp_path / "scaling.yaml"
    path.write_text("shape_method: power_law\nseed: 5\n", encoding="utf-8")
    config = build_config(parse_args(["scale", str(tmp_path), "--config", str(path)]))
    assert config.shape_method is ExtrapolationMethod.POWER_LAW
    assert config.seed == 5
    config = build_config(parse_args(["scale", str(tmp_path), "--config", str(path), "--shape-method", "constant"]))
    assert config.shape_method is ExtrapolationMethod.CONSTANT
    assert ScalingConfig().shape_method is ExtrapolationMethod.LINEAR


def test_cli_history(collector_dir, tmp_path):
    output = tmp_path / "history.csv"
    assert main(["history", str(collector_dir), "--output-csv", str(output), "--scale-by", "population"]) == 0
    frame = pd.read_csv(output)
    assert list(frame["num_relays"]) == [10, 20, 30]
    assert list(frame["scale"]) == [10.0, 20.0, 30.0]


def test_cli_scale_writes_outputs(collector_dir, tmp_path):
    out_dir = tmp_path / "synthetic"
    model_csv = tmp_path / "model.csv"
    code = main(
        [
            "scale",
            str(collector_dir),
            "--scale-by",
            "population",
            "--population",
            "40",
            "--seed",
            "3",
            "--method",
            "bandwidth=linear",
            "--output-dir",
            str(out_dir),
            "--model-csv",
            str(model_csv),
        ]
    )
    assert code == 0
    document = parse_file(out_dir / "population_40-consensus")
    assert document.population == 40
    assert document.total_bandwidth == 4000
    assert "aggregate_bandwidth" in set(pd.read_csv(model_csv)["curve"])


def test_cli_scale_reports_failed_targets(collector_dir, tmp_path):
    code = main(
        [
            "scale",
            str(collector_dir),
            "--scale-by",
            "population",
            "--date",
            "2030-01-01",
            "--population",
            "35",
            "--seed",
            "3",
            "--output-dir",
            str(tmp_path / "out"),
        ]
    )
    assert code == 1
    assert (tmp_path / "out" / "population_35-consensus").exists()


def test_cli_scale_needs_targets(collector_dir):
    with pytest.raises(SystemExit):
        main(["scale", str(collector_dir)])
