"""
Container layout constants.

File header (little endian):
    0   magic           b"IDA0" | b"IDA1" | b"IDA2"
    4   u16             always zero
    6   20 bytes        section offsets, layout depends on version
    26  u32 signature   0xAABBCCDD (absent in IDA0 files)
    30  u16 version     1 | 3 | 4 | 5 | 6 | 910

Separated layouts (everything before 910) point at per-section headers:
    u8 compression, u32|u64 length, <length bytes of data>
Inline layouts (910) pack sections back to back after data_start.

ID0 header page:
    u32 next_free_offset, u16 page_size, u32 root_page, u32 record_count,
    u32 page_count, u8 unknown, NUL-terminated B-tree version string
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

# --- File magic ---------------------------------------------------------

MAGIC_IDA0 = b"IDA0"
MAGIC_IDA1 = b"IDA1"
MAGIC_IDA2 = b"IDA2"

# magic -> bitness
MAGIC_BITNESS = {
    MAGIC_IDA0: 32,
    MAGIC_IDA1: 32,
    MAGIC_IDA2: 64,
}

SIGNATURE = 0xAABBCCDD

# --- Header versions ----------------------------------------------------

NARROW_VERSIONS = frozenset({1, 3, 4})   # u32 offsets, 5-byte section headers
WIDE_VERSIONS = frozenset({5, 6})        # u64 offsets, 9-byte section headers
INLINE_VERSIONS = frozenset({910})       # sections inline after data_start
SUPPORTED_VERSIONS = NARROW_VERSIONS | WIDE_VERSIONS | INLINE_VERSIONS

LAYOUT_SEPARATED = "separated"
LAYOUT_INLINE = "inline"

# --- Section kinds ------------------------------------------------------

ID0 = "ID0"
ID1 = "ID1"
ID2 = "ID2"
NAM = "NAM"
TIL = "TIL"
SEG = "SEG"

SECTION_KINDS = (ID0, ID1, ID2, NAM, TIL, SEG)

SECTION_DESCRIPTIONS = {
    ID0: "B-tree key/value store",
    ID1: "Per-byte flags",
    ID2: "Sparse flags (opaque)",
    NAM: "Named addresses",
    TIL: "Type library (opaque)",
    SEG: "Segments (opaque)",
}

# order of the offset slots in separated headers
SEPARATED_SLOT_ORDER = (ID0, ID1, NAM, SEG, TIL, ID2)
# order of the size fields (and of the data) in inline headers
INLINE_SLOT_ORDER = (ID0, ID1, NAM, ID2, TIL, SEG)

# --- Compression --------------------------------------------------------

COMPRESSION_NONE = 0
COMPRESSION_ZLIB = 2
COMPRESSION_ZSTD = 3

COMPRESSION_NAMES = {
    COMPRESSION_NONE: "none",
    COMPRESSION_ZLIB: "zlib",
    COMPRESSION_ZSTD: "zstd",
}

# --- Header structs -----------------------------------------------------

IDA0_HEADER_STRUCT = struct.Struct("<4sH5I")           # magic, pad, 5 offsets
FILE_PREFIX_STRUCT = struct.Struct("<4sH20sIH")        # magic, pad, offsets, signature, version
NARROW_TAIL_STRUCT = struct.Struct("<I5I")             # id2 offset, 5 checksums
WIDE_TAIL_STRUCT = struct.Struct("<QQQ5IQI")           # nam, seg, til, 5 checksums, id2, unknown
INLINE_TAIL_STRUCT = struct.Struct("<B6QQI16s")        # compression, 6 sizes, unk, unk, md5

NARROW_SECTION_HEADER = struct.Struct("<BI")
WIDE_SECTION_HEADER = struct.Struct("<BQ")

TAIL_OFFSET = FILE_PREFIX_STRUCT.size  # 32

# --- ID0 ----------------------------------------------------------------

ID0_HEADER_STRUCT = struct.Struct("<IHIIIB")
ID0_HEADER_SIZE = 64

BTREE_V15 = b"B-tree v 1.5 (C) Pol 1990"
BTREE_V16 = b"B-tree v 1.6 (C) Pol 1990"
BTREE_V20 = b"B-tree v2"


@dataclass(frozen=True)
class PageLayout:
    """Binary layout of one B-tree page version.

    The directory starts at the page start: one page-header slot, then one
    slot per entry, then a trailer holding the free pointer. Records are
    addressed by page-relative offsets.
    """

    name: str
    slot_size: int
    page_header: struct.Struct      # preceding, count
    index_slot: struct.Struct       # child page, record offset
    leaf_slot: struct.Struct        # indent, ..., record offset
    record_prefix: int              # unknown bytes before klen
    trailer: struct.Struct          # ..., freeptr

    def directory_end(self, count: int) -> int:
        """First byte available to records for a page with `count` entries."""
        return self.slot_size * (count + 2)

    def slot_offset(self, i: int) -> int:
        return self.slot_size * (i + 1)

    def trailer_offset(self, count: int) -> int:
        return self.slot_size * (count + 1)


PAGE_LAYOUTS = {
    BTREE_V15: PageLayout(
        name="1.5",
        slot_size=4,
        page_header=struct.Struct("<HH"),
        index_slot=struct.Struct("<HH"),
        leaf_slot=struct.Struct("<BBH"),
        record_prefix=1,
        trailer=struct.Struct("<HH"),
    ),
    BTREE_V16: PageLayout(
        name="1.6",
        slot_size=6,
        page_header=struct.Struct("<IH"),
        index_slot=struct.Struct("<IH"),
        leaf_slot=struct.Struct("<BBHH"),
        record_prefix=1,
        trailer=struct.Struct("<HH"),
    ),
    BTREE_V20: PageLayout(
        name="2.0",
        slot_size=6,
        page_header=struct.Struct("<IH"),
        index_slot=struct.Struct("<IH"),
        leaf_slot=struct.Struct("<HHH"),
        record_prefix=0,
        trailer=struct.Struct("<IH"),
    ),
}

RECORD_LEN_STRUCT = struct.Struct("<H")

# --- ID1 / NAM ----------------------------------------------------------

VA_MAGICS = {
    b"Va0\x00": 0,
    b"Va1\x00": 1,
    b"Va2\x00": 2,
    b"Va3\x00": 3,
    b"Va4\x00": 4,
    b"VA*\x00": None,  # "VaX", 6.5 and later
}

VAX_UNKNOWN_3 = 3
VAX_UNKNOWN_2048 = 2048
ID1_RECORD_STRUCT = struct.Struct("<I")
ID1_VALUE_MASK = 0xFF
