"""
Sequential readers for the ID1 (per-byte flags) and NAM (named
addresses) sections.

Both sections start with a header page tagged by a "Va" magic:
    Va0 .. Va4      older layouts, sizes stored in the header
    VA*             6.5 and later, fixed 0x2000-byte pages

Readers validate the header eagerly and decode records lazily. They are
iterable any number of times.
"""

from __future__ import annotations

import logging
import struct
from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterator

from idbkit import ID1_PAGE_SIZE
from idbkit._format.spec import (
    ID1_RECORD_STRUCT, ID1_VALUE_MASK, VA_MAGICS, VAX_UNKNOWN_2048, VAX_UNKNOWN_3,
)
from idbkit._format.words import WordSize, word_for_bitness
from idbkit.errors import SectionFormatError

log = logging.getLogger(__name__)

_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")


class _Cursor:
    """Bounds-checked little-endian reader over a header page."""

    def __init__(self, buf: memoryview, what: str, offset: int = 0) -> None:
        self.buf = buf
        self.what = what
        self.pos = offset

    def _take(self, size: int) -> int:
        if self.pos + size > len(self.buf):
            raise SectionFormatError(
                f"{self.what} header truncated at {self.pos:#x} ({len(self.buf)} bytes)"
            )
        start = self.pos
        self.pos += size
        return start

    def u16(self) -> int:
        return _U16.unpack_from(self.buf, self._take(2))[0]

    def u32(self) -> int:
        return _U32.unpack_from(self.buf, self._take(4))[0]

    def word(self, word: WordSize) -> int:
        return word.unpack_from(self.buf, self._take(word.size))


def _read_va_version(buf: memoryview, what: str) -> int | None:
    magic = bytes(buf[:4])
    if len(magic) < 4 or magic not in VA_MAGICS:
        raise SectionFormatError(f"{what}: invalid Va magic {magic!r}")
    return VA_MAGICS[magic]


def _expect(value: int, expected, what: str, field: str) -> None:
    allowed = expected if isinstance(expected, tuple) else (expected,)
    if value not in allowed:
        raise SectionFormatError(f"{what}: {field} must be {expected}, got {value}")


# ---------------------------------------------------------------------------
# ID1
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Id1Segment:
    start: int
    end: int
    data_offset: int

    def __len__(self) -> int:
        return self.end - self.start

    def __contains__(self, address: int) -> bool:
        return self.start <= address < self.end


@dataclass(frozen=True)
class ByteRecord:
    """One address of the ID1 section: the stored byte and its flag bits."""

    address: int
    value: int
    flags: int

    @property
    def raw(self) -> int:
        return self.flags | self.value


class Id1Reader:
    """Per-address byte and flag records from an ID1 section."""

    def __init__(self, content: bytes | memoryview, bitness: int, page_size: int = ID1_PAGE_SIZE) -> None:
        self.buf = memoryview(content).toreadonly()
        self.word = word_for_bitness(bitness)
        self.page_size = page_size
        self.version, self.npages, segments = self._parse_header()
        self._check_segments(segments)
        self._segments = sorted(segments, key=lambda s: s.start)
        self._starts = [s.start for s in self._segments]
        log.debug(
            "ID1: Va%s, %d pages, %d segments",
            "*" if self.version is None else self.version, self.npages, len(self._segments),
        )

    def _parse_header(self) -> tuple[int | None, int, list[Id1Segment]]:
        cur = _Cursor(self.buf[:self.page_size], "ID1", 4)
        version = _read_va_version(self.buf, "ID1")
        segments = []
        if version is not None:
            nsegments = cur.u16()
            npages = cur.u16()
            for _ in range(nsegments):
                start, end, offset = cur.word(self.word), cur.word(self.word), cur.word(self.word)
                segments.append(self._segment(start, end, offset))
            data_order = sorted(segments, key=lambda s: s.data_offset)
            cursor = self.page_size
            for seg in data_order:
                if seg.data_offset < cursor:
                    raise SectionFormatError(
                        f"ID1: segment {seg.start:#x} data at {seg.data_offset:#x} "
                        f"overlaps data ending at {cursor:#x}"
                    )
                cursor = seg.data_offset + len(seg) * ID1_RECORD_STRUCT.size
        else:
            _expect(cur.u32(), VAX_UNKNOWN_3, "ID1", "first header field")
            nsegments = cur.u32()
            _expect(cur.u32(), VAX_UNKNOWN_2048, "ID1", "third header field")
            npages = cur.u32()
            # data follows the header page in segment order
            cursor = self.page_size
            for _ in range(nsegments):
                start, end = cur.word(self.word), cur.word(self.word)
                seg = self._segment(start, end, cursor)
                segments.append(seg)
                cursor += len(seg) * ID1_RECORD_STRUCT.size
        if npages < 1:
            raise SectionFormatError("ID1: page count must include the header page")
        return version, npages, segments

    @staticmethod
    def _segment(start: int, end: int, offset: int) -> Id1Segment:
        if start > end:
            raise SectionFormatError(f"ID1: segment start {start:#x} after end {end:#x}")
        return Id1Segment(start, end, offset)

    def _check_segments(self, segments: list[Id1Segment]) -> None:
        by_address = sorted(segments, key=lambda s: s.start)
        for a, b in zip(by_address, by_address[1:]):
            if a.end > b.start:
                raise SectionFormatError(
                    f"ID1: segments [{a.start:#x}, {a.end:#x}) and "
                    f"[{b.start:#x}, {b.end:#x}) overlap"
                )
        required = sum(len(s) for s in segments) * ID1_RECORD_STRUCT.size
        required_pages = -(-required // self.page_size)
        if required_pages > self.npages - 1:
            raise SectionFormatError(
                f"ID1: segments need {required_pages} data pages, header declares {self.npages - 1}"
            )
        for seg in segments:
            data_end = seg.data_offset + len(seg) * ID1_RECORD_STRUCT.size
            if data_end > len(self.buf):
                raise SectionFormatError(
                    f"ID1: segment {seg.start:#x} data ends at {data_end:#x}, "
                    f"section is {len(self.buf):#x} bytes"
                )

    @property
    def segments(self) -> list[Id1Segment]:
        return list(self._segments)

    def _record(self, seg: Id1Segment, address: int) -> ByteRecord:
        offset = seg.data_offset + (address - seg.start) * ID1_RECORD_STRUCT.size
        (raw,) = ID1_RECORD_STRUCT.unpack_from(self.buf, offset)
        return ByteRecord(address, raw & ID1_VALUE_MASK, raw & ~ID1_VALUE_MASK)

    def byte_at(self, address: int) -> ByteRecord | None:
        i = bisect_right(self._starts, address) - 1
        if i < 0 or address not in self._segments[i]:
            return None
        return self._record(self._segments[i], address)

    def __iter__(self) -> Iterator[ByteRecord]:
        for seg in self._segments:
            for address in range(seg.start, seg.end):
                yield self._record(seg, address)

    def __len__(self) -> int:
        return sum(len(s) for s in self._segments)


# ---------------------------------------------------------------------------
# NAM
# ---------------------------------------------------------------------------

class NamReader:
    """Named addresses from a NAM section, in stored order."""

    def __init__(self, content: bytes | memoryview, bitness: int, page_size: int = ID1_PAGE_SIZE) -> None:
        self.buf = memoryview(content).toreadonly()
        self.word = word_for_bitness(bitness)
        self.version = _read_va_version(self.buf, "NAM")
        cur = _Cursor(self.buf, "NAM", 4)
        if self.version is not None:
            _expect(cur.u16(), 1, "NAM", "first header field")
            self.npages = cur.word(self.word)
            _expect(cur.u16(), 0, "NAM", "third header field")
            nnames = cur.word(self.word)
            self.page_size = cur.u32()
            if self.page_size < 64:
                raise SectionFormatError(f"NAM: page size {self.page_size} below 64")
        else:
            _expect(cur.u32(), VAX_UNKNOWN_3, "NAM", "first header field")
            _expect(cur.u32(), (0, 1), "NAM", "second header field")
            _expect(cur.u32(), VAX_UNKNOWN_2048, "NAM", "third header field")
            self.npages = cur.word(self.word)
            _expect(cur.u32(), 0, "NAM", "fifth header field")
            nnames = cur.word(self.word)
            self.page_size = page_size
        # 64-bit files store twice the name count
        self.count = nnames // 2 if self.word.bits == 64 else nnames

        if self.npages < 1:
            raise SectionFormatError("NAM: page count must include the header page")
        if self.page_size % self.word.size:
            raise SectionFormatError(
                f"NAM: page size {self.page_size} is not a multiple of {self.word.size}"
            )
        required = self.count * self.word.size
        available = min(
            (self.npages - 1) * self.page_size,
            max(0, len(self.buf) - self.page_size),
        )
        if required > available:
            raise SectionFormatError(
                f"NAM: {self.count} names need {required} bytes, {available} available"
            )
        log.debug("NAM: %d names over %d pages", self.count, self.npages)

    def __iter__(self) -> Iterator[int]:
        # names are word aligned and never straddle a page, so the
        # padding only ever sits after the last name
        start = self.page_size
        yield from self.word.unpack_array(self.buf, start, self.count)

    def __len__(self) -> int:
        return self.count
