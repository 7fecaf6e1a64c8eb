from __future__ import annotations

import textwrap
from datetime import datetime, timedelta, timezone

import pytest

from torscaler.consensus.document import ConsensusDocument, Flag
from torscaler.consensus.parser import decode_identity, parse, parse_file
from torscaler.consensus.writer import encode_identity, serialize, write_file
from torscaler.errors import FormatError

FINGERPRINT = "A0B1C2D3E4F5061728394A5B6C7D8E9FA0B1C2D3"
DIGEST = "00112233445566778899AABBCCDDEEFF00112233"
WEIGHTS_LINE = (
    "bandwidth-weights Wbd=0 Wbe=0 Wbg=4194 Wbm=10000 Wdb=10000 Web=10000 Wed=10000 "
    "Wee=10000 Weg=10000 Wem=10000 Wgb=10000 Wgd=0 Wgg=5806 Wgm=5806 Wmb=10000 Wmd=0 "
    "Wme=0 Wmg=4194 Wmm=10000"
)


def _real_looking_text() -> str:
    return textwrap.dedent(
        f"""
        @type network-status-consensus-3 1.0
        network-status-version 3
        vote-status consensus
        consensus-method 33
        valid-after 2023-05-01 12:00:00
        fresh-until 2023-05-01 13:00:00
        valid-until 2023-05-01 15:00:00
        voting-delay 300 300
        client-versions 0.4.8.12
        known-flags Authority BadExit Exit Fast Guard HSDir MiddleOnly NoEdConsensus Running Stable StaleDesc Sybil V2Dir Valid
        shared-rand-current-value 9 AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=
        params CircuitPriorityHalflifeMsec=30000 circwindow=1000 bwweightscale=10000
        dir-source moria1 D586D18309DED4CD6D57C18FDB97EFA96D330566 128.31.0.34 128.31.0.34 9131 9101
        contact 1024D/EB5A896A28988BF5 arma mit edu
        vote-digest 0123456789ABCDEF0123456789ABCDEF01234567
        r exampleRelay {encode_identity(FINGERPRINT)} {encode_identity(DIGEST)} 2023-05-01 11:12:13 198.51.100.7 9001 0
        a [2001:db8::1]:9001
        s Exit Fast Guard Running Stable Valid
        v Tor 0.4.8.12
        pr Cons=1-2 Desc=1-2 Link=1-5
        w Bandwidth=12000
        p accept 80,443,8000-8999
        m 13,14,15 sha256=AAAA
        directory-footer
        {WEIGHTS_LINE}
        directory-signature sha256 D586D18309DED4CD6D57C18FDB97EFA96D330566 0000000000000000000000000000000000000000
        -----BEGIN SIGNATURE-----
        c2lnbmF0dXJl
        -----END SIGNATURE-----
        """
    ).lstrip()


def test_identity_encoding_matches_hex():
    encoded = encode_identity(FINGERPRINT)
    assert len(encoded) == 27
    assert decode_identity(encoded) == FINGERPRINT


def test_parse_real_looking_consensus():
    document = parse(_real_looking_text())
    assert document.valid_after == datetime(2023, 5, 1, 12, tzinfo=timezone.utc)
    assert document.params == {"CircuitPriorityHalflifeMsec": 30000, "circwindow": 1000, "bwweightscale": 10000}
    assert document.bandwidth_weights["Wgg"] == 5806
    assert document.population == 1
    router = document.routers[0]
    assert router.fingerprint == FINGERPRINT
    assert router.digest == DIGEST
    assert router.nickname == "exampleRelay"
    assert router.bandwidth == 12000
    assert router.flags == {Flag.EXIT, Flag.FAST, Flag.GUARD, Flag.RUNNING, Flag.STABLE, Flag.VALID}
    assert router.version == "Tor 0.4.8.12"
    assert router.protocols == "Cons=1-2 Desc=1-2 Link=1-5"
    assert router.exit_policy == "accept 80,443,8000-8999"
    assert router.published == datetime(2023, 5, 1, 11, 12, 13, tzinfo=timezone.utc)
    assert router.family is None and router.asn is None


def test_round_trip_preserves_document(sample_document):
    text = serialize(sample_document)
    reparsed = parse(text)
    assert reparsed == sample_document
    assert [r.fingerprint for r in reparsed.routers] == [r.fingerprint for r in sample_document.routers]
    assert serialize(reparsed) == text


def test_round_trip_of_empty_document(make_document):
    document = make_document([])
    assert parse(serialize(document)) == document


def test_timestamps_are_stored_in_utc(make_document, make_router):
    summer = timezone(timedelta(hours=2))
    router = make_router(1, published=datetime(2023, 5, 1, 13, 12, 13, tzinfo=summer))
    document = make_document([router], valid_after=datetime(2023, 5, 1, 12, tzinfo=summer))
    assert document.valid_after == datetime(2023, 5, 1, 10, tzinfo=timezone.utc)
    assert document.valid_after.utcoffset() == timedelta(0)
    assert document.routers[0].published == datetime(2023, 5, 1, 11, 12, 13, tzinfo=timezone.utc)
    text = serialize(document)
    assert "valid-after 2023-05-01 10:00:00" in text
    assert "2023-05-01 11:12:13" in text
    assert parse(text) == document


def test_serialized_extension_lines(sample_document):
    text = serialize(sample_document)
    assert "family opA" in text
    assert "asn 24940" in text
    assert "w Bandwidth=20 Unmeasured=1" in text
    assert text.endswith("Wmm=10000\n")


def test_file_helpers(tmp_path, sample_document):
    path = write_file(sample_document, tmp_path / "out" / "2023-05-01-12-00-00-consensus")
    assert parse_file(path) == sample_document
    with pytest.raises(FileNotFoundError):
        parse_file(tmp_path / "missing")


def _replace_line(text: str, prefix: str, replacement: str | None) -> str:
    lines = []
    for line in text.splitlines():
        if line.startswith(prefix):
            if replacement is not None:
                lines.append(replacement)
            continue
        lines.append(line)
    return "\n".join(lines) + "\n"


@pytest.mark.parametrize(
    "prefix, replacement, message",
    [
        ("directory-footer", None, "line inside the router section"),
        ("bandwidth-weights", None, "bandwidth-weights missing"),
        ("valid-after", None, "valid-after missing"),
        ("vote-status", "vote-status vote", "Not a consensus"),
        ("network-status-version", "network-status-version 3 microdesc", "Unsupported consensus flavor"),
        ("s ", "s Exit Fast Teleporter", "Unknown relay flag"),
        ("w ", "w Unmeasured=1", "lacks Bandwidth="),
        ("w ", None, "missing its 'w' line"),
        ("params", "params circwindow=5", "circwindow=5 outside"),
        ("p ", "p allow 80", "Malformed exit policy"),
    ],
)
def test_format_errors(prefix, replacement, message, make_document, make_router):
    text = serialize(make_document([make_router(1)], params={"circwindow": 1000}))
    broken = _replace_line(text, prefix, replacement)
    with pytest.raises(FormatError, match=message):
        parse(broken)


def test_error_names_line_and_source(make_document, make_router):
    text = serialize(make_document([make_router(1)]))
    broken = text.replace("w Bandwidth=1000", "w Bandwidth=lots")
    with pytest.raises(FormatError) as excinfo:
        parse(broken, source="broken-consensus")
    expected_line = broken.splitlines().index("w Bandwidth=lots") + 1
    assert excinfo.value.line_number == expected_line
    assert excinfo.value.source == "broken-consensus"
    assert str(excinfo.value).startswith(f"broken-consensus:{expected_line}:")


def test_router_line_outside_router_block(make_document, make_router):
    text = serialize(make_document([make_router(1)]))
    broken = text.replace("known-flags", "s Running\nknown-flags", 1)
    with pytest.raises(FormatError, match="outside a router entry"):
        parse(broken)


def test_header_keyword_after_routers(make_document, make_router):
    text = serialize(make_document([make_router(1)]))
    broken = text.replace("directory-footer", "params circwindow=1000\ndirectory-footer")
    with pytest.raises(FormatError, match="inside the router section"):
        parse(broken)


def test_incomplete_bandwidth_weights(make_document, make_router):
    text = serialize(make_document([make_router(1)]))
    broken = text.replace(" Wmm=10000", "")
    with pytest.raises(FormatError, match="missing keys: Wmm"):
        parse(broken)


def test_duplicate_fingerprints_rejected(make_router, full_weights):
    with pytest.raises(FormatError, match="Duplicate router fingerprint"):
        ConsensusDocument(
            valid_after=datetime(2023, 1, 1, tzinfo=timezone.utc),
            routers=(make_router(1), make_router(1)),
            bandwidth_weights=full_weights,
        )


def test_unknown_keywords_are_ignored(make_document, make_router):
    document = make_document([make_router(1)])
    text = serialize(document)
    extended = text.replace("known-flags", "future-keyword something\nknown-flags", 1)
    extended = extended.replace("w Bandwidth", "future-router-line 1\nw Bandwidth", 1)
    assert parse(extended) == document


def test_truncated_document(make_document, make_router):
    text = serialize(make_document([make_router(1)]))
    truncated = text.split("directory-footer")[0]
    with pytest.raises(FormatError, match="directory-footer missing"):
        parse(truncated)
    with pytest.raises(FormatError, match="network-status-version missing"):
        parse("\n\n")
