from __future__ import annotations

from datetime import datetime, timezone

import pytest

from torscaler.consensus.writer import write_file
from torscaler.history.archive import ConsensusArchive, valid_after_from_name


def _collector_tree(root, make_document, make_router):
    """Four hourly consensuses laid out like a CollecTor tarball."""
    for hour in range(4):
        valid_after = datetime(2023, 5, 1, hour, tzinfo=timezone.utc)
        name = valid_after.strftime("%Y-%m-%d-%H-%M-%S-consensus")
        document = make_document([make_router(i) for i in range(1, hour + 2)], valid_after=valid_after)
        write_file(document, root / "consensuses-2023-05" / "01" / name)


def test_valid_after_from_name(tmp_path):
    assert valid_after_from_name(tmp_path / "2023-05-01-03-00-00-consensus") == datetime(
        2023, 5, 1, 3, tzinfo=timezone.utc
    )
    assert valid_after_from_name(tmp_path / "notes.txt") is None


def test_archive_discovery_filters_and_steps(tmp_path, make_document, make_router):
    _collector_tree(tmp_path, make_document, make_router)
    archive = ConsensusArchive(tmp_path)
    assert len(archive) == 4
    assert [entry.valid_after.hour for entry in archive] == [0, 1, 2, 3]

    window = ConsensusArchive(
        tmp_path,
        start=datetime(2023, 5, 1, 1),
        end=datetime(2023, 5, 1, 3, tzinfo=timezone.utc),
    )
    assert [entry.valid_after.hour for entry in window] == [1, 2]

    stepped = ConsensusArchive(tmp_path, step=2)
    assert [entry.valid_after.hour for entry in stepped] == [0, 2]


def test_archive_cache_is_explicit(tmp_path, make_document, make_router):
    _collector_tree(tmp_path, make_document, make_router)
    archive = ConsensusArchive(tmp_path)
    first = archive.entries()[0]
    document = archive.get(first)
    assert document.population == 1
    assert archive.get(first) is document
    assert archive.cached_labels == [first.label]

    archive.invalidate(first)
    assert archive.cached_labels == []
    assert archive.get(first) is not document

    archive.clear()
    assert archive.cached_labels == []


def test_archive_single_file_and_errors(tmp_path, make_document, make_router):
    path = write_file(make_document([make_router(1)]), tmp_path / "some-consensus")
    archive = ConsensusArchive(path)
    assert len(archive) == 1
    assert archive.get(archive.entries()[0]).population == 1

    with pytest.raises(FileNotFoundError):
        ConsensusArchive(tmp_path / "missing")
    with pytest.raises(ValueError):
        ConsensusArchive(tmp_path, step=0)
