"""
Writer — builds containers and ID0 page sets.

Id0Builder lays out pages exactly as described, so valid trees and
deliberately broken ones (cycles, dangling children, orphans, wrong
counts) come out of the same code. ContainerWriter then frames sections:

  1. Encode every section (compress per section, or the whole stream)
  2. Compute offsets from the fixed header size and section order
  3. Assemble: fixed header + sections + trailing bytes
"""

from __future__ import annotations

import io
import os
import struct
import tempfile
import zlib

import zstandard

from idbkit import DEFAULT_PAGE_SIZE, ID1_PAGE_SIZE
from idbkit._format.spec import (
    BTREE_V20, COMPRESSION_NONE, COMPRESSION_ZLIB, COMPRESSION_ZSTD, FILE_PREFIX_STRUCT,
    ID0_HEADER_SIZE, ID0_HEADER_STRUCT, ID1_RECORD_STRUCT, ID2, IDA0_HEADER_STRUCT, INLINE_SLOT_ORDER,
    INLINE_TAIL_STRUCT, INLINE_VERSIONS, MAGIC_IDA0, MAGIC_IDA1, MAGIC_IDA2,
    NARROW_SECTION_HEADER, NARROW_TAIL_STRUCT, NARROW_VERSIONS, PAGE_LAYOUTS,
    RECORD_LEN_STRUCT, SECTION_KINDS, SEPARATED_SLOT_ORDER, SIGNATURE, SUPPORTED_VERSIONS,
    TAIL_OFFSET, VAX_UNKNOWN_2048, VAX_UNKNOWN_3, WIDE_SECTION_HEADER, WIDE_TAIL_STRUCT,
)
from idbkit._format.words import WORD32, WORD64, word_for_bitness


def compress(data: bytes, compression: int, *, raw_deflate: bool = False) -> bytes:
    if compression == COMPRESSION_NONE:
        return data
    if compression == COMPRESSION_ZLIB:
        if raw_deflate:
            c = zlib.compressobj(wbits=-15)
            return c.compress(data) + c.flush()
        return zlib.compress(data)
    if compression == COMPRESSION_ZSTD:
        return zstandard.ZstdCompressor().compress(data)
    raise ValueError(f"Unsupported compression code {compression}")


# ---------------------------------------------------------------------------
# ID0 pages
# ---------------------------------------------------------------------------

def _common_prefix(a: bytes, b: bytes, limit: int) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y or n == limit:
            break
        n += 1
    return n


class Id0Builder:
    """Assemble an ID0 section page by page.

    Pages are numbered from 1 in the order they are added. Child and
    preceding references are plain page numbers, so they may point
    anywhere, including at pages not added yet.
    """

    def __init__(self, version: bytes = BTREE_V20, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        if version not in PAGE_LAYOUTS:
            raise ValueError(f"Unknown B-tree version: {version!r}")
        if not ID0_HEADER_SIZE <= page_size <= 0xFFFF:
            raise ValueError(f"Page size must be in [{ID0_HEADER_SIZE}, 65535], got {page_size}")
        self.version = version
        self.layout = PAGE_LAYOUTS[version]
        self.page_size = page_size
        self.pages: list[bytes] = []
        self.records = 0
        self._leaf_fields = len(self.layout.leaf_slot.unpack(bytes(self.layout.leaf_slot.size)))
        self._indent_limit = 0xFF if self.layout.record_prefix else 0xFFFF

    @property
    def next_page(self) -> int:
        return len(self.pages) + 1

    def _record(self, key: bytes, value: bytes) -> bytes:
        return (
            bytes(self.layout.record_prefix)
            + RECORD_LEN_STRUCT.pack(len(key)) + key
            + RECORD_LEN_STRUCT.pack(len(value)) + value
        )

    def _page(self, preceding: int, slots: list[tuple[int, bytes | None]], index: bool) -> int:
        layout = self.layout
        count = len(slots)
        directory_end = layout.directory_end(count)
        if directory_end > self.page_size:
            raise ValueError(f"{count} entries do not fit a {self.page_size}-byte page")
        buf = bytearray(self.page_size)
        layout.page_header.pack_into(buf, 0, preceding, count)

        pos = self.page_size
        for i, (field, record) in enumerate(slots):
            recofs = 0
            if record is not None:
                pos -= len(record)
                if pos < directory_end:
                    raise ValueError(f"Records overflow the {self.page_size}-byte page")
                buf[pos:pos + len(record)] = record
                recofs = pos
            if index:
                layout.index_slot.pack_into(buf, layout.slot_offset(i), field, recofs)
            else:
                padding = (0,) * (self._leaf_fields - 2)
                layout.leaf_slot.pack_into(buf, layout.slot_offset(i), field, *padding, recofs)
        layout.trailer.pack_into(buf, layout.trailer_offset(count), 0, pos)

        self.pages.append(bytes(buf))
        return len(self.pages)

    def leaf(
        self,
        entries: list[tuple[bytes, bytes]],
        *,
        compress_keys: bool = True,
        deleted: int = 0,
    ) -> int:
        """Add a leaf page, returning its page number.

        `deleted` appends that many directory slots with a zero record offset.
        """
        slots: list[tuple[int, bytes | None]] = []
        previous = b""
        for key, value in entries:
            indent = _common_prefix(previous, key, self._indent_limit) if compress_keys else 0
            slots.append((indent, self._record(key[indent:], value)))
            previous = key
        slots.extend((0, None) for _ in range(deleted))
        self.records += len(entries)
        return self._page(0, slots, index=False)

    def index(self, preceding: int, entries: list[tuple[bytes, bytes, int]]) -> int:
        """Add an index page: a preceding child, then (key, value, child) separators."""
        if preceding == 0:
            raise ValueError("Index pages need a non-zero preceding page")
        slots = [(child, self._record(key, value)) for key, value, child in entries]
        self.records += len(entries)
        return self._page(preceding, slots, index=True)

    def raw(self, data: bytes) -> int:
        """Add a page with arbitrary bytes, zero padded to the page size."""
        if len(data) > self.page_size:
            raise ValueError(f"Raw page is {len(data)} bytes, page size is {self.page_size}")
        self.pages.append(bytes(data) + bytes(self.page_size - len(data)))
        return len(self.pages)

    def header_page(
        self,
        root: int,
        record_count: int,
        page_count: int,
        next_free: int = 0,
        page_size: int | None = None,
    ) -> bytes:
        header = ID0_HEADER_STRUCT.pack(
            next_free, self.page_size if page_size is None else page_size,
            root, record_count, page_count, 0,
        ) + self.version + b"\x00"
        return header + bytes(self.page_size - len(header))

    def build(
        self,
        root: int | None = None,
        *,
        record_count: int | None = None,
        page_count: int | None = None,
        next_free: int = 0,
        header_page_size: int | None = None,
    ) -> bytes:
        """Serialize the header page plus every added page.

        `root` defaults to the last page added. Counts default to what
        leaf() and index() recorded.
        """
        if root is None:
            root = len(self.pages)
        out = io.BytesIO()
        out.write(self.header_page(
            root,
            self.records if record_count is None else record_count,
            len(self.pages) if page_count is None else page_count,
            next_free,
            header_page_size,
        ))
        for page in self.pages:
            out.write(page)
        return out.getvalue()


# ---------------------------------------------------------------------------
# ID1 / NAM
# ---------------------------------------------------------------------------

def _pad_pages(data: bytes, page_size: int) -> bytes:
    return data + bytes(-len(data) % page_size)


def build_id1(
    segments: list[tuple[int, list[int]]],
    bitness: int,
    *,
    legacy: bool = False,
    page_size: int = ID1_PAGE_SIZE,
) -> bytes:
    """ID1 section from (start address, [u32 per address]) segments.

    `legacy` writes a Va4 header with explicit data offsets, otherwise a
    VA* header with data stored in segment order.
    """
    word = word_for_bitness(bitness)
    data = b"".join(
        b"".join(ID1_RECORD_STRUCT.pack(v) for v in values) for _, values in segments
    )
    npages = 1 + len(_pad_pages(data, page_size)) // page_size
    header = io.BytesIO()
    if legacy:
        header.write(b"Va4\x00" + struct.pack("<HH", len(segments), npages))
        offset = page_size
        for start, values in segments:
            header.write(word.pack(start) + word.pack(start + len(values)) + word.pack(offset))
            offset += len(values) * ID1_RECORD_STRUCT.size
    else:
        header.write(b"VA*\x00" + struct.pack(
            "<IIII", VAX_UNKNOWN_3, len(segments), VAX_UNKNOWN_2048, npages,
        ))
        for start, values in segments:
            header.write(word.pack(start) + word.pack(start + len(values)))
    return _pad_pages(header.getvalue(), page_size) + _pad_pages(data, page_size)


def build_nam(
    addresses: list[int],
    bitness: int,
    *,
    legacy: bool = False,
    page_size: int = ID1_PAGE_SIZE,
) -> bytes:
    """NAM section listing `addresses` in order."""
    word = word_for_bitness(bitness)
    data = b"".join(word.pack(a) for a in addresses)
    npages = 1 + len(_pad_pages(data, page_size)) // page_size
    # 64-bit files store twice the name count
    stored_count = len(addresses) * 2 if bitness == 64 else len(addresses)
    if legacy:
        header = (
            b"Va4\x00" + struct.pack("<H", 1) + word.pack(npages)
            + struct.pack("<H", 0) + word.pack(stored_count) + struct.pack("<I", page_size)
        )
    else:
        header = (
            b"VA*\x00" + struct.pack("<III", VAX_UNKNOWN_3, 1, VAX_UNKNOWN_2048)
            + word.pack(npages) + struct.pack("<I", 0) + word.pack(stored_count)
        )
    return _pad_pages(header, page_size) + _pad_pages(data, page_size)


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------

class ContainerWriter:
    """Frame a {kind: bytes} mapping as a container file."""

    def __init__(
        self,
        sections: dict[str, bytes],
        *,
        magic: bytes = MAGIC_IDA1,
        version: int | None = 6,
        compression: int = COMPRESSION_NONE,
        trailing: bytes = b"",
        md5: bytes = bytes(16),
    ) -> None:
        unknown = set(sections) - set(SECTION_KINDS)
        if unknown:
            raise ValueError(f"Unknown section kinds: {sorted(unknown)}")
        if magic == MAGIC_IDA0:
            if version is not None:
                raise ValueError("IDA0 files carry no header version")
            if ID2 in sections:
                raise ValueError("IDA0 files have no ID2 slot")
        elif version not in SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported header version: {version}")
        if version in INLINE_VERSIONS and magic != MAGIC_IDA2:
            raise ValueError("Inline headers only exist for IDA2 files")
        self.sections = dict(sections)
        self.magic = magic
        self.version = version
        self.compression = compression
        self.trailing = trailing
        self.md5 = md5

    def serialize(self) -> bytes:
        """Serialize to bytes. Pure — does not mutate the writer."""
        if self.version in INLINE_VERSIONS:
            return self._inline()
        return self._separated()

    def _separated(self) -> bytes:
        if self.magic == MAGIC_IDA0:
            fixed_size = IDA0_HEADER_STRUCT.size
            section_header = NARROW_SECTION_HEADER
        elif self.version in NARROW_VERSIONS:
            fixed_size = TAIL_OFFSET + NARROW_TAIL_STRUCT.size
            section_header = NARROW_SECTION_HEADER
        else:
            fixed_size = TAIL_OFFSET + WIDE_TAIL_STRUCT.size
            section_header = WIDE_SECTION_HEADER

        # --- Pass 1: encode sections and assign offsets ---
        offsets = {kind: 0 for kind in SEPARATED_SLOT_ORDER}
        blobs: list[bytes] = []
        running = fixed_size
        for kind in SEPARATED_SLOT_ORDER:
            if kind not in self.sections:
                continue
            data = compress(
                self.sections[kind], self.compression,
                raw_deflate=self.magic == MAGIC_IDA0,
            )
            blob = section_header.pack(self.compression, len(data)) + data
            offsets[kind] = running
            blobs.append(blob)
            running += len(blob)

        # --- Pass 2: fixed header ---
        slots = [offsets[kind] for kind in SEPARATED_SLOT_ORDER]
        id0, id1, nam, seg, til, id2 = slots
        if self.magic == MAGIC_IDA0:
            header = IDA0_HEADER_STRUCT.pack(self.magic, 0, id0, id1, nam, seg, til)
        elif self.version in NARROW_VERSIONS:
            raw_offsets = b"".join(WORD32.pack(o) for o in (id0, id1, nam, seg, til))
            header = (
                FILE_PREFIX_STRUCT.pack(self.magic, 0, raw_offsets, SIGNATURE, self.version)
                + NARROW_TAIL_STRUCT.pack(id2, 0, 0, 0, 0, 0)
            )
        else:
            raw_offsets = WORD64.pack(id0) + WORD64.pack(id1) + bytes(4)
            header = (
                FILE_PREFIX_STRUCT.pack(self.magic, 0, raw_offsets, SIGNATURE, self.version)
                + WIDE_TAIL_STRUCT.pack(nam, seg, til, 0, 0, 0, 0, 0, id2, 0)
            )

        # --- Assemble ---
        out = io.BytesIO()
        out.write(header)
        for blob in blobs:
            out.write(blob)
        out.write(self.trailing)
        return out.getvalue()

    def _inline(self) -> bytes:
        fixed_size = TAIL_OFFSET + INLINE_TAIL_STRUCT.size
        sizes = [len(self.sections.get(kind, b"")) for kind in INLINE_SLOT_ORDER]
        stream = b"".join(self.sections.get(kind, b"") for kind in INLINE_SLOT_ORDER)
        stream = compress(stream + self.trailing, self.compression)

        raw_offsets = WORD64.pack(fixed_size) + WORD64.pack(fixed_size) + bytes(4)
        out = io.BytesIO()
        out.write(FILE_PREFIX_STRUCT.pack(self.magic, 0, raw_offsets, SIGNATURE, self.version))
        out.write(INLINE_TAIL_STRUCT.pack(self.compression, *sizes, 0, 0, self.md5))
        out.write(stream)
        return out.getvalue()

    def write(self, path: str, mode: int = 0o644) -> int:
        """Write the container to file atomically. Returns bytes written."""
        data = self.serialize()
        dir_name = os.path.dirname(os.path.abspath(path)) or "."
        fd, tmp_path = tempfile.mkstemp(dir=dir_name, suffix=".idb.tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return len(data)
