from __future__ import annotations

import textwrap

import pandas as pd
import pytest

from torscaler.consensus.annotations import AnnotationTable, RelayAnnotation


def test_annotations_from_csv_apply(tmp_path, make_router, make_document):
    csv_path = tmp_path / "relays.csv"
    csv_path.write_text(
        textwrap.dedent(
            f"""
            fingerprint,family,asn
            ${1:040X},operatorA,3320
            {2:040x},operatorA,
            {3:040X},,24940
            """
        ).lstrip()
    )
    table = AnnotationTable.from_csv(csv_path)
    assert len(table) == 3
    assert table.by_fingerprint[f"{2:040X}"] == RelayAnnotation(family="operatorA", asn=None)

    document = make_document([make_router(1), make_router(2), make_router(3), make_router(4, asn=7)])
    annotated = table.apply(document)
    assert [r.family for r in annotated.routers] == ["operatorA", "operatorA", None, None]
    assert [r.asn for r in annotated.routers] == [3320, None, 24940, 7]
    assert document.routers[0].family is None


def test_annotations_need_fingerprint_column():
    with pytest.raises(ValueError, match="fingerprint"):
        AnnotationTable.from_dataframe(pd.DataFrame({"family": ["x"]}))


def test_annotations_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        AnnotationTable.from_csv(tmp_path / "nope.csv")
