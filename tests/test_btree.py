"""
Tests for the ID0 B-tree reader — idbkit/_format/btree.py and idbkit/id0.py.

Trees are assembled page by page with Id0Builder (256-byte pages keep the
fixtures small), then patched where a test needs a broken page.
"""

from __future__ import annotations

import logging
import struct

import pytest

from idbkit._format.btree import LEAF, INDEX, decode_page, read_id0
from idbkit._format.fragments import StrictFragments, TruncatingFragments, strategy_for
from idbkit._format.spec import BTREE_V15, BTREE_V16, BTREE_V20, PAGE_LAYOUTS
from idbkit._format.writer import Id0Builder
from idbkit.config import ParserConfig
from idbkit.diagnostics import (
    BTREE_ORDER_VIOLATION, CYCLE_DETECTED, DANGLING_PAGE_REFERENCE, LIMIT_EXCEEDED,
    MALFORMED_ID0_HEADER, MALFORMED_PAGE, MULTI_FRAGMENT_VALUE, PAGE_COUNT_MISMATCH,
    PARTIAL_PAGE, REASON_BAD_HEADER, REASON_MALFORMED_PAGE, REASON_ORPHAN_PAGE,
    REASON_HEADER_RESIDUE, REASON_OVER_LIMIT, REASON_PARTIAL_PAGE, RECORD_COUNT_MISMATCH,
    UnparsedRegion,
)
from idbkit.id0 import Id0Entry

PS = 256


def _builder(version=BTREE_V20) -> Id0Builder:
    return Id0Builder(version=version, page_size=PS)


def _kinds(section) -> list[str]:
    return [d.kind for d in section.diagnostics]


def _pairs(section) -> list[tuple[bytes, bytes]]:
    return [(e.key, e.value) for e in section]


def _assert_partition(section) -> None:
    """metadata + reachable + unparsed tile [0, size) with no overlap."""
    coverage = section.coverage()
    ranges = sorted(r for part in coverage.values() for r in part)
    pos = 0
    for start, end in ranges:
        assert start == pos, f"gap or overlap at {pos:#x}: {ranges}"
        pos = end
    assert pos == section.size


@pytest.fixture
def two_leaf_tree() -> bytes:
    """Index root over ["A".."M") and ("M".."Z"], separator "M" itself a record."""
    b = _builder()
    left = b.leaf([(b"A", b"1"), (b"B", b"2"), (b"C", b"3")])
    right = b.leaf([(b"N", b"4"), (b"O", b"5"), (b"Z", b"6")])
    b.index(left, [(b"M", b"sep", right)])
    return b.build()


# ---------------------------------------------------------------------------
# TestScenarios
# ---------------------------------------------------------------------------

class TestScenarios:

    def test_single_leaf(self):
        b = _builder()
        b.leaf([(b"A", b"1"), (b"B", b"2")])
        section = read_id0(b.build())
        assert list(section) == [Id0Entry(b"A", b"1"), Id0Entry(b"B", b"2")]
        assert section.diagnostics == ()
        assert section.unparsed == ()
        assert not section.degraded
        _assert_partition(section)

    def test_index_merges_leaves_in_order(self, two_leaf_tree):
        section = read_id0(two_leaf_tree)
        assert [e.key for e in section] == [b"A", b"B", b"C", b"M", b"N", b"O", b"Z"]
        assert section.get(b"M") == b"sep"
        assert section.diagnostics == ()
        assert sorted(section.reachable_pages) == [1, 2, 3]
        _assert_partition(section)

    def test_dangling_child(self):
        b = _builder()
        left = b.leaf([(b"A", b"1"), (b"B", b"2")])
        root = b.index(left, [(b"M", b"sep", 99)])
        section = read_id0(b.build())
        assert _kinds(section) == [DANGLING_PAGE_REFERENCE]
        assert section.diagnostics[0].page == root
        assert [e.key for e in section] == [b"A", b"B", b"M"]
        _assert_partition(section)

    def test_dangling_sibling_does_not_stop_traversal(self):
        b = _builder()
        left = b.leaf([(b"A", b"1")])
        right = b.leaf([(b"Y", b"2")])
        b.index(left, [(b"K", b"k", 77), (b"X", b"x", right)])
        section = read_id0(b.build(record_count=4))
        assert _kinds(section) == [DANGLING_PAGE_REFERENCE]
        assert [e.key for e in section] == [b"A", b"K", b"X", b"Y"]

    def test_cycle_detected(self):
        b = _builder()
        left = b.leaf([(b"A", b"1"), (b"B", b"2")])
        root = b.next_page
        b.index(left, [(b"M", b"sep", root)])
        section = read_id0(b.build())
        assert _kinds(section) == [CYCLE_DETECTED]
        assert section.diagnostics[0].page == root
        assert [e.key for e in section] == [b"A", b"B", b"M"]

    def test_child_page_zero_is_empty_subtree(self):
        b = _builder()
        left = b.leaf([(b"A", b"1")])
        b.index(left, [(b"M", b"sep", 0)])
        section = read_id0(b.build())
        assert section.diagnostics == ()
        assert [e.key for e in section] == [b"A", b"M"]


# ---------------------------------------------------------------------------
# TestVersions
# ---------------------------------------------------------------------------

class TestVersions:

    @pytest.mark.parametrize("version, name", [
        (BTREE_V15, "1.5"), (BTREE_V16, "1.6"), (BTREE_V20, "2.0"),
    ])
    def test_every_page_layout(self, version, name):
        b = _builder(version)
        left = b.leaf([(b"alpha", b"1"), (b"alphabet", b"2")])
        right = b.leaf([(b"omega", b"3")])
        b.index(left, [(b"beta", b"x", right)])
        section = read_id0(b.build())
        assert section.version == name
        assert [e.key for e in section] == [b"alpha", b"alphabet", b"beta", b"omega"]
        assert section.diagnostics == ()

    def test_prefix_compressed_keys(self):
        keys = [b"N$ entry points", b"N$ fileregions", b"N$ funcs", b"N$ segs"]
        b = _builder()
        b.leaf([(k, k[-1:]) for k in keys], compress_keys=True)
        section = read_id0(b.build())
        assert [e.key for e in section] == keys

    def test_header_page_size_used(self):
        b = Id0Builder(page_size=512)
        b.leaf([(b"A", b"1")])
        section = read_id0(b.build())
        assert section.page_size == 512
        assert len(section) == 1


# ---------------------------------------------------------------------------
# TestEdgeCases
# ---------------------------------------------------------------------------

class TestEdgeCases:

    def test_empty_section(self):
        section = read_id0(b"")
        assert len(section) == 0
        assert section.diagnostics == ()
        assert section.coverage() == {"metadata": [], "reachable": [], "unparsed": []}

    def test_root_page_zero(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        section = read_id0(b.build(root=0, record_count=0, page_count=0))
        assert len(section) == 0
        assert section.diagnostics == ()
        assert section.unparsed == (
            UnparsedRegion(PS, PS, REASON_ORPHAN_PAGE, page=1, stale_entries=1),
        )
        _assert_partition(section)

    def test_zero_entry_page(self):
        b = _builder()
        b.leaf([])
        section = read_id0(b.build())
        assert len(section) == 0
        assert section.diagnostics == ()

    def test_header_only(self):
        b = _builder()
        section = read_id0(b.build(root=0))
        assert len(section) == 0
        assert section.diagnostics == ()
        _assert_partition(section)

    def test_unknown_btree_version(self):
        section = read_id0(bytes(100))
        assert _kinds(section) == [MALFORMED_ID0_HEADER]
        assert len(section) == 0
        assert section.unparsed == (UnparsedRegion(0, 100, REASON_BAD_HEADER, page=0),)
        assert section.header is None
        _assert_partition(section)

    def test_header_too_short(self):
        section = read_id0(b"\x01\x02\x03")
        assert _kinds(section) == [MALFORMED_ID0_HEADER]

    def test_header_page_residue(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        data = bytearray(b.build())
        data[0x40] = 0x5a
        data[0x47:0x49] = b"\x01\x02"
        section = read_id0(bytes(data))
        assert _kinds(section) == [MALFORMED_ID0_HEADER]
        assert section.diagnostics[0].page == 0
        assert section.unparsed == (UnparsedRegion(0x40, 9, REASON_HEADER_RESIDUE, page=0),)
        assert not section.degraded
        assert _pairs(section) == [(b"A", b"1")]
        assert section.coverage()["metadata"] == [(0, 0x40), (0x49, PS)]
        _assert_partition(section)

    def test_clean_header_page_has_no_residue(self, two_leaf_tree):
        section = read_id0(two_leaf_tree)
        assert section.coverage()["metadata"] == [(0, PS)]

    def test_unusable_header_page_size_falls_back(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        section = read_id0(b.build(header_page_size=0), ParserConfig(default_page_size=PS))
        assert _kinds(section) == [MALFORMED_ID0_HEADER]
        assert section.page_size == PS
        assert _pairs(section) == [(b"A", b"1")]

    def test_forced_page_size(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        data = b.build(header_page_size=512)
        assert DANGLING_PAGE_REFERENCE in _kinds(read_id0(data))
        section = read_id0(data, ParserConfig(page_size=PS))
        assert _pairs(section) == [(b"A", b"1")]
        assert section.diagnostics == ()

    def test_partial_trailing_page(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        data = b.build() + b"\x01" * 10
        section = read_id0(data)
        assert _kinds(section) == [PARTIAL_PAGE]
        assert section.unparsed == (UnparsedRegion(2 * PS, 10, REASON_PARTIAL_PAGE),)
        assert len(section) == 1
        _assert_partition(section)

    def test_deleted_slots_skipped(self):
        b = _builder()
        b.leaf([(b"A", b"1"), (b"B", b"2")], deleted=2)
        data = b.build()
        page = decode_page(memoryview(data)[PS:2 * PS], 1, PAGE_LAYOUTS[BTREE_V20], StrictFragments())
        assert page.kind == LEAF
        assert page.deleted_slots == 2
        assert len(page.entries) == 2
        assert _pairs(read_id0(data)) == [(b"A", b"1"), (b"B", b"2")]

    def test_index_page_decode(self, two_leaf_tree):
        page = decode_page(
            memoryview(two_leaf_tree)[3 * PS:4 * PS], 3, PAGE_LAYOUTS[BTREE_V20], StrictFragments(),
        )
        assert page.kind == INDEX
        assert page.preceding == 1
        assert page.entries[0].child == 2
        assert page.freeptr < PS


# ---------------------------------------------------------------------------
# TestCorruption
# ---------------------------------------------------------------------------

class TestCorruption:

    def test_order_violation_within_leaf(self):
        b = _builder()
        b.leaf([(b"B", b"2"), (b"A", b"1"), (b"C", b"3")], compress_keys=False)
        section = read_id0(b.build())
        assert BTREE_ORDER_VIOLATION in _kinds(section)
        violation = section.diagnostics_of(BTREE_ORDER_VIOLATION)[0]
        assert violation.position == 1
        assert _pairs(section) == [(b"B", b"2")]
        assert section.degraded

    def test_order_violation_across_pages(self):
        b = _builder()
        left = b.leaf([(b"Z", b"z")])
        b.index(left, [(b"M", b"m", 0)])
        section = read_id0(b.build())
        assert section.diagnostics_of(BTREE_ORDER_VIOLATION)
        assert [e.key for e in section] == [b"Z"]
        assert section.degraded

    def test_duplicate_keys_reported(self):
        b = _builder()
        b.leaf([(b"A", b"first"), (b"A", b"second")])
        section = read_id0(b.build())
        assert BTREE_ORDER_VIOLATION in _kinds(section)
        assert _pairs(section) == [(b"A", b"first")]

    def test_malformed_directory(self):
        b = _builder()
        b.raw(struct.pack("<IH", 0, 0xFFFF))
        section = read_id0(b.build(record_count=0, page_count=0))
        assert _kinds(section) == [MALFORMED_PAGE]
        assert section.unparsed == (UnparsedRegion(PS, PS, REASON_MALFORMED_PAGE, page=1),)
        _assert_partition(section)

    def test_record_offset_inside_directory(self):
        b = _builder()
        # one leaf slot pointing at offset 2, inside the directory
        b.raw(struct.pack("<IH", 0, 1) + struct.pack("<HHH", 0, 0, 2))
        section = read_id0(b.build(record_count=0, page_count=0))
        assert _kinds(section) == [MALFORMED_PAGE]
        assert "record offset" in section.diagnostics[0].message

    def test_key_indent_past_previous_key(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        data = bytearray(b.build())
        struct.pack_into("<H", data, PS + 6, 5)
        section = read_id0(bytes(data))
        assert MALFORMED_PAGE in _kinds(section)
        assert len(section) == 0

    def test_malformed_page_does_not_stop_siblings(self):
        b = _builder()
        good = b.leaf([(b"A", b"1")])
        bad = b.raw(struct.pack("<IH", 0, 0xFFFF))
        b.index(good, [(b"M", b"m", bad)])
        section = read_id0(b.build(record_count=2, page_count=2))
        assert _kinds(section) == [MALFORMED_PAGE]
        assert [e.key for e in section] == [b"A", b"M"]

    def test_record_count_mismatch(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        section = read_id0(b.build(record_count=5))
        assert _kinds(section) == [RECORD_COUNT_MISMATCH]

    def test_page_count_mismatch(self):
        b = _builder()
        b.leaf([(b"A", b"1")])
        section = read_id0(b.build(page_count=3))
        assert _kinds(section) == [PAGE_COUNT_MISMATCH]


# ---------------------------------------------------------------------------
# TestOrphans
# ---------------------------------------------------------------------------

class TestOrphans:

    def test_orphan_page_reported_with_stale_entries(self):
        b = _builder()
        b.leaf([(b"old1", b"x"), (b"old2", b"y")])
        root = b.leaf([(b"A", b"1")])
        section = read_id0(b.build(root=root, record_count=1, page_count=1))
        assert section.diagnostics == ()
        assert section.unparsed == (
            UnparsedRegion(PS, PS, REASON_ORPHAN_PAGE, page=1, stale_entries=2),
        )
        _assert_partition(section)

    def test_empty_orphan(self):
        b = _builder()
        b.leaf([])
        root = b.leaf([(b"A", b"1")])
        section = read_id0(b.build(root=root, record_count=1, page_count=1))
        assert section.unparsed[0].stale_entries == 0


# ---------------------------------------------------------------------------
# TestFragments
# ---------------------------------------------------------------------------

def _overrunning_value() -> bytes:
    b = _builder()
    b.leaf([(b"K", b"xyz")])
    data = bytearray(b.build())
    # record "K" -> "xyz" is the last 8 bytes of page 1; stretch its value length
    struct.pack_into("<H", data, 2 * PS - 3 - 2, 10)
    return bytes(data)


class TestFragments:

    def test_strict_drops_value(self):
        section = read_id0(_overrunning_value())
        assert MULTI_FRAGMENT_VALUE in _kinds(section)
        assert len(section) == 0

    def test_truncate_keeps_prefix(self):
        section = read_id0(_overrunning_value(), ParserConfig(fragment_strategy="truncate"))
        assert MULTI_FRAGMENT_VALUE in _kinds(section)
        assert _pairs(section) == [(b"K", b"xyz")]

    def test_strategy_factory(self):
        assert isinstance(strategy_for("strict"), StrictFragments)
        assert isinstance(strategy_for("truncate"), TruncatingFragments)
        with pytest.raises(ValueError):
            strategy_for("reassemble")


# ---------------------------------------------------------------------------
# TestLimits
# ---------------------------------------------------------------------------

class TestLimits:

    def test_max_pages(self):
        b = _builder()
        root = b.leaf([(b"A", b"1")])
        b.leaf([(b"B", b"2")])
        b.leaf([(b"C", b"3")])
        section = read_id0(b.build(root=root, record_count=1, page_count=1),
                           ParserConfig(max_pages=1))
        assert _kinds(section) == [LIMIT_EXCEEDED]
        assert UnparsedRegion(2 * PS, 2 * PS, REASON_OVER_LIMIT) in section.unparsed
        assert _pairs(section) == [(b"A", b"1")]
        _assert_partition(section)

    def test_max_entries(self):
        b = _builder()
        b.leaf([(bytes([k]), b"v") for k in b"abcde"])
        section = read_id0(b.build(), ParserConfig(max_entries=3))
        assert LIMIT_EXCEEDED in _kinds(section)
        assert RECORD_COUNT_MISMATCH in _kinds(section)
        assert len(section) == 3
        assert section.degraded


# ---------------------------------------------------------------------------
# TestLookups
# ---------------------------------------------------------------------------

class TestLookups:

    @pytest.fixture
    def section(self):
        b = _builder()
        b.leaf([
            (b".\x00\x01S\x00", b"s0"),
            (b".\x00\x01S\x01", b"s1"),
            (b".\x00\x02S\x00", b"t0"),
            (b".\x00\x03", b"u"),
            (b"N$ funcs", b"\x00\x01"),
            (b"N$ segs", b"\x00\x02"),
        ])
        return read_id0(b.build())

    def test_get(self, section):
        assert section.get(b"N$ segs") == b"\x00\x02"
        assert section.get(b"N$ seg") is None
        assert section.get(b"zzz") is None

    def test_sub_values(self, section):
        assert [e.value for e in section.sub_values(b".\x00\x01S")] == [b"s0", b"s1"]
        assert section.sub_values(b"missing") == []

    def test_inclusive_range(self, section):
        found = section.get_inclusive_range(b".\x00\x01", b".\x00\x02")
        assert [e.value for e in found] == [b"s0", b"s1", b"t0"]

    def test_range_to_all_ff_prefix(self, section):
        assert len(section.get_inclusive_range(b"", b"\xff")) == len(section)

    def test_len_and_index(self, section):
        assert len(section) == 6
        assert section[0].key == b".\x00\x01S\x00"


# ---------------------------------------------------------------------------
# TestProperties
# ---------------------------------------------------------------------------

class TestProperties:

    def test_idempotent(self, two_leaf_tree):
        assert read_id0(two_leaf_tree) == read_id0(two_leaf_tree)

    def test_output_strictly_sorted(self, two_leaf_tree):
        keys = [e.key for e in read_id0(two_leaf_tree)]
        assert all(a < b for a, b in zip(keys, keys[1:]))

    def test_summary_is_plain_data(self, two_leaf_tree):
        summary = read_id0(two_leaf_tree).summary()
        assert summary["entries"] == 7
        assert summary["version"] == "2.0"
        assert summary["degraded"] is False

    def test_diagnostics_are_logged(self, caplog):
        b = _builder()
        left = b.leaf([(b"A", b"1")])
        b.index(left, [(b"M", b"sep", 42)])
        with caplog.at_level(logging.WARNING, logger="idbkit"):
            read_id0(b.build())
        assert any(DANGLING_PAGE_REFERENCE in r.getMessage() for r in caplog.records)
