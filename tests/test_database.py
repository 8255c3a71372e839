"""
Tests for the database facade — idbkit/database.py.

End to end: ContainerWriter frames builder-made ID0/ID1/NAM sections,
parse_bytes/parse_file read them back.
"""

from __future__ import annotations

import pytest

from idbkit._format.spec import (
    COMPRESSION_ZLIB, COMPRESSION_ZSTD, ID0, ID1, MAGIC_IDA2, NAM, TIL,
)
from idbkit._format.writer import ContainerWriter, Id0Builder, build_id1, build_nam
from idbkit.config import ParserConfig
from idbkit.database import is_idb, is_idb_bytes, parse_bytes, parse_file
from idbkit.diagnostics import (
    CYCLE_DETECTED, DANGLING_PAGE_REFERENCE, REASON_ORPHAN_PAGE, REASON_TRAILING, TRAILING_DATA,
)
from idbkit.errors import DiagnosticError, IDBFormatError

PS = 256
CONFIG = ParserConfig(id1_page_size=PS)
KEYS = [b"$ MAX NODE", b"N$ fileregions", b"NRoot Node", b"Nsegs"]


def _id0(orphan: bool = False, dangling: bool = False) -> bytes:
    """Index root over two leaves; "NRoot Node" is the separator."""
    b = Id0Builder(page_size=PS)
    if orphan:
        b.leaf([(b"stale", b"x")])
    left = b.leaf([(b"$ MAX NODE", b"\x10"), (b"N$ fileregions", b"\x02")])
    if dangling:
        b.index(left, [(b"NRoot Node", b"\xff\x00", 99)])
        return b.build()
    right = b.leaf([(b"Nsegs", b"\x01")])
    b.index(left, [(b"NRoot Node", b"\xff\x00", right)])
    if orphan:
        return b.build(record_count=4, page_count=3)
    return b.build()


def _container(sections=None, **kwargs) -> bytes:
    if sections is None:
        sections = {
            ID0: _id0(),
            ID1: build_id1([(0x401000, [0x655, 0x690])], 32, page_size=PS),
            NAM: build_nam([0x401000], 32, page_size=PS),
            TIL: b"opaque type library",
        }
    return ContainerWriter(sections, **kwargs).serialize()


# ---------------------------------------------------------------------------
# TestParseBytes
# ---------------------------------------------------------------------------

class TestParseBytes:

    def test_all_sections_recovered(self):
        db = parse_bytes(_container(), CONFIG)
        assert db.bitness == 32
        assert not db.is_64
        assert [e.key for e in db.id0] == KEYS
        assert db.id0.get(b"NRoot Node") == b"\xff\x00"
        assert [r.value for r in db.id1()] == [0x55, 0x90]
        assert list(db.nam()) == [0x401000]
        assert bytes(db.sections[TIL].content()) == b"opaque type library"
        assert db.diagnostics == []
        assert db.unparsed_regions == []

    def test_64_bit_container(self):
        sections = {
            ID0: _id0(),
            NAM: build_nam([0x140001000, 0x140002000], 64, page_size=PS),
        }
        db = parse_bytes(_container(sections, magic=MAGIC_IDA2), CONFIG)
        assert db.is_64
        assert list(db.nam()) == [0x140001000, 0x140002000]
        assert db.id1() is None

    def test_missing_id0(self):
        db = parse_bytes(_container({TIL: b"t"}), CONFIG)
        assert db.id0 is None
        assert db.nam() is None
        assert db.summary()["id0"] is None

    @pytest.mark.parametrize("compression", [COMPRESSION_ZLIB, COMPRESSION_ZSTD])
    def test_compressed_sections(self, compression):
        db = parse_bytes(_container(compression=compression), CONFIG)
        assert len(db.id0) == 4
        assert list(db.nam()) == [0x401000]

    @pytest.mark.parametrize("compression", [0, COMPRESSION_ZLIB, COMPRESSION_ZSTD])
    def test_inline_container(self, compression):
        data = _container(magic=MAGIC_IDA2, version=910, compression=compression)
        db = parse_bytes(data, CONFIG)
        assert db.header.version == 910
        assert len(db.id0) == 4

    def test_size_limit(self):
        with pytest.raises(ValueError, match="max_file_size"):
            parse_bytes(_container(), ParserConfig(max_file_size=100))

    def test_container_errors_raise(self):
        data = bytearray(_container())
        data[:4] = b"JUNK"
        with pytest.raises(IDBFormatError):
            parse_bytes(bytes(data))

    def test_idempotent(self):
        data = _container(trailing=b"tail")
        assert parse_bytes(data, CONFIG).summary() == parse_bytes(data, CONFIG).summary()


# ---------------------------------------------------------------------------
# TestAccounting
# ---------------------------------------------------------------------------

class TestAccounting:

    def test_trailing_data_diagnostic(self):
        data = _container(trailing=b"\x00" * 5)
        db = parse_bytes(data, CONFIG)
        assert [d.kind for d in db.diagnostics] == [TRAILING_DATA]
        assert db.unparsed_regions[-1].reason == REASON_TRAILING
        assert db.unparsed_regions[-1].end == len(data)

    @pytest.mark.parametrize("compression", [COMPRESSION_ZLIB, COMPRESSION_ZSTD])
    def test_bytes_after_compressed_stream(self, compression):
        data = _container(magic=MAGIC_IDA2, version=910, compression=compression)
        db = parse_bytes(data + b"\xcc" * 6, CONFIG)
        assert [d.kind for d in db.diagnostics] == [TRAILING_DATA]
        assert "in the file" in db.diagnostics[0].message
        assert db.summary()["trailing_data"] == 6
        assert db.unparsed_regions[-1].offset == len(data)
        assert len(db.id0) == 4

    def test_id0_regions_as_file_offsets(self):
        data = _container({ID0: _id0(orphan=True)})
        db = parse_bytes(data, CONFIG)
        id0_offset = db.sections[ID0].offset
        (region,) = db.unparsed_regions
        assert region.reason == REASON_ORPHAN_PAGE
        assert region.offset == id0_offset + PS
        assert region.stale_entries == 1
        assert bytes(data[region.offset:region.end]) == _id0(orphan=True)[PS:2 * PS]

    def test_compressed_id0_regions_stay_relative(self):
        db = parse_bytes(_container({ID0: _id0(orphan=True)}, compression=COMPRESSION_ZLIB))
        assert db.unparsed_regions == []
        assert db.id0.unparsed[0].offset == PS

    def test_id0_diagnostics_surface(self):
        db = parse_bytes(_container({ID0: _id0(dangling=True)}))
        assert [d.kind for d in db.diagnostics] == [DANGLING_PAGE_REFERENCE]


# ---------------------------------------------------------------------------
# TestReporting
# ---------------------------------------------------------------------------

class TestReporting:

    def test_raise_for_diagnostics(self):
        db = parse_bytes(_container({ID0: _id0(dangling=True)}))
        with pytest.raises(DiagnosticError) as exc:
            db.raise_for_diagnostics()
        assert exc.value.diagnostics[0].kind == DANGLING_PAGE_REFERENCE

    def test_raise_for_selected_kinds(self):
        db = parse_bytes(_container({ID0: _id0(dangling=True)}))
        db.raise_for_diagnostics(kinds=[CYCLE_DETECTED])
        with pytest.raises(DiagnosticError, match=DANGLING_PAGE_REFERENCE):
            db.raise_for_diagnostics(kinds=[DANGLING_PAGE_REFERENCE])

    def test_clean_parse_does_not_raise(self):
        parse_bytes(_container(), CONFIG).raise_for_diagnostics()

    def test_summary(self):
        summary = parse_bytes(_container(compression=COMPRESSION_ZLIB), CONFIG).summary()
        assert summary["magic"] == "IDA1"
        assert summary["version"] == 6
        assert summary["layout"] == "separated"
        assert [s["kind"] for s in summary["sections"]] == [ID0, ID1, NAM, TIL]
        assert summary["sections"][0]["compression"] == "zlib"
        assert summary["id0"]["entries"] == 4
        assert summary["trailing_data"] == 0

    def test_repr(self):
        assert "IDA1" in repr(parse_bytes(_container(), CONFIG))


# ---------------------------------------------------------------------------
# TestFiles
# ---------------------------------------------------------------------------

class TestFiles:

    def test_parse_file(self, tmp_path):
        path = tmp_path / "sample.idb"
        written = ContainerWriter({ID0: _id0()}).write(str(path))
        assert written == path.stat().st_size
        db = parse_file(path)
        assert len(db.id0) == 4

    def test_write_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "sample.i64"
        ContainerWriter({ID0: _id0()}, magic=MAGIC_IDA2).write(str(path))
        assert [p.name for p in tmp_path.iterdir()] == ["sample.i64"]

    def test_parse_file_size_limit(self, tmp_path):
        path = tmp_path / "big.idb"
        path.write_bytes(_container())
        with pytest.raises(ValueError, match="max_file_size"):
            parse_file(path, ParserConfig(max_file_size=64))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            parse_file(tmp_path / "absent.idb")

    def test_is_idb(self, tmp_path):
        good = tmp_path / "good.idb"
        good.write_bytes(_container())
        bad = tmp_path / "bad.bin"
        bad.write_bytes(b"MZ\x90\x00")
        assert is_idb(good)
        assert not is_idb(bad)
        assert is_idb_bytes(_container(magic=MAGIC_IDA2))
        assert not is_idb_bytes(b"ID")
