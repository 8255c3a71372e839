"""
Container header parser.

Reads the fixed-position file header and turns it into a FileHeader: the
bitness tag plus one SectionDescriptor per present section. Nothing past
the header (and the small per-section headers it points at) is touched.

Fatal errors:
  - MalformedHeader for unknown magic, signature, version or compression
  - TruncatedFile when the file ends before a field the header declares
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from idbkit._format.spec import (
    COMPRESSION_NAMES, COMPRESSION_NONE, FILE_PREFIX_STRUCT, IDA0_HEADER_STRUCT,
    INLINE_SLOT_ORDER, INLINE_TAIL_STRUCT, INLINE_VERSIONS, LAYOUT_INLINE,
    LAYOUT_SEPARATED, MAGIC_BITNESS, MAGIC_IDA0, MAGIC_IDA2, NARROW_SECTION_HEADER,
    NARROW_TAIL_STRUCT, NARROW_VERSIONS, SEPARATED_SLOT_ORDER, SIGNATURE,
    SUPPORTED_VERSIONS, TAIL_OFFSET, WIDE_SECTION_HEADER, WIDE_TAIL_STRUCT,
)
from idbkit._format.words import WORD32, WORD64, WordSize, word_for_bitness
from idbkit.errors import MalformedHeader, TruncatedFile

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SectionDescriptor:
    """Location of one section's stored bytes.

    `offset`/`size` cover the data itself. `header_size` bytes of
    per-section header (compression + length) sit right before it in
    separated layouts.
    """

    kind: str
    offset: int
    size: int
    header_size: int = 0
    compression: int = COMPRESSION_NONE
    checksum: int | None = None

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def extent_start(self) -> int:
        return self.offset - self.header_size

    @property
    def is_compressed(self) -> bool:
        return self.compression != COMPRESSION_NONE

    def overlaps(self, other: SectionDescriptor) -> bool:
        return self.extent_start < other.end and other.extent_start < self.end


@dataclass(frozen=True)
class FileHeader:
    """Decoded container header."""

    magic: bytes
    bitness: int
    version: int | None
    layout: str
    section_descriptors: tuple[SectionDescriptor, ...]
    compression: int = COMPRESSION_NONE
    data_start: int = 0
    md5: bytes | None = None
    fixed_size: int = 0
    _by_kind: dict[str, SectionDescriptor] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        self._by_kind.update({d.kind: d for d in self.section_descriptors})

    @property
    def word(self) -> WordSize:
        return word_for_bitness(self.bitness)

    @property
    def is_64(self) -> bool:
        return self.bitness == 64

    @property
    def kinds(self) -> list[str]:
        return [d.kind for d in self.section_descriptors]

    def descriptor(self, kind: str) -> SectionDescriptor | None:
        return self._by_kind.get(kind)


def parse_header(data: bytes | memoryview) -> FileHeader:
    """Parse the container header from the whole file's bytes."""
    buf = memoryview(data)
    if len(buf) < IDA0_HEADER_STRUCT.size:
        raise TruncatedFile(
            f"File is {len(buf)} bytes, shorter than the minimum header "
            f"({IDA0_HEADER_STRUCT.size} bytes)"
        )

    magic = bytes(buf[:4])
    if magic not in MAGIC_BITNESS:
        raise MalformedHeader(f"Bad magic: expected IDA0, IDA1 or IDA2, got {magic!r}")
    bitness = MAGIC_BITNESS[magic]

    if magic == MAGIC_IDA0:
        if len(buf) >= FILE_PREFIX_STRUCT.size:
            signature = FILE_PREFIX_STRUCT.unpack_from(buf)[3]
            if signature == SIGNATURE:
                raise MalformedHeader("Invalid version for IDA0 magic: header carries a signature")
        _, pad, *offsets = IDA0_HEADER_STRUCT.unpack_from(buf)
        _check_padding(pad)
        slots = dict(zip(SEPARATED_SLOT_ORDER, offsets))
        return _separated_header(
            buf, magic, bitness, None, slots, {}, IDA0_HEADER_STRUCT.size,
        )

    if len(buf) < FILE_PREFIX_STRUCT.size:
        raise TruncatedFile(
            f"File is {len(buf)} bytes, shorter than the signed header prefix"
        )
    _, pad, raw_offsets, signature, version = FILE_PREFIX_STRUCT.unpack_from(buf)
    _check_padding(pad)
    if signature != SIGNATURE:
        raise MalformedHeader(
            f"Bad signature: expected {SIGNATURE:#010x}, got {signature:#010x}"
        )
    if version not in SUPPORTED_VERSIONS:
        raise MalformedHeader(
            f"Unsupported header version: {version}. "
            f"Supported: {', '.join(str(v) for v in sorted(SUPPORTED_VERSIONS))}"
        )

    if version in NARROW_VERSIONS:
        _require(buf, TAIL_OFFSET + NARROW_TAIL_STRUCT.size, "version %d header" % version)
        id2_offset, *checksums = NARROW_TAIL_STRUCT.unpack_from(buf, TAIL_OFFSET)
        offsets = list(WORD32.unpack_array(raw_offsets, 0, 5)) + [id2_offset]
        slots = dict(zip(SEPARATED_SLOT_ORDER, offsets))
        sums = dict(zip(SEPARATED_SLOT_ORDER, checksums))
        return _separated_header(
            buf, magic, bitness, version, slots, sums,
            TAIL_OFFSET + NARROW_TAIL_STRUCT.size,
        )

    if version in INLINE_VERSIONS:
        return _inline_header(buf, magic, bitness, version, raw_offsets)

    # wide separated layout (5, 6)
    _require(buf, TAIL_OFFSET + WIDE_TAIL_STRUCT.size, "version %d header" % version)
    id0_offset = WORD64.unpack_from(raw_offsets, 0)
    id1_offset = WORD64.unpack_from(raw_offsets, 8)
    (nam_offset, seg_offset, til_offset, c0, c1, c2, c3, c4,
     id2_offset, _unknown) = WIDE_TAIL_STRUCT.unpack_from(buf, TAIL_OFFSET)
    offsets = [id0_offset, id1_offset, nam_offset, seg_offset, til_offset, id2_offset]
    slots = dict(zip(SEPARATED_SLOT_ORDER, offsets))
    sums = dict(zip(SEPARATED_SLOT_ORDER, (c0, c1, c2, c3, c4)))
    return _separated_header(
        buf, magic, bitness, version, slots, sums,
        TAIL_OFFSET + WIDE_TAIL_STRUCT.size,
    )


def _check_padding(pad: int) -> None:
    if pad != 0:
        raise MalformedHeader(f"Header padding must be zero, got {pad:#06x}")


def _require(buf: memoryview, needed: int, what: str) -> None:
    if len(buf) < needed:
        raise TruncatedFile(
            f"File is {len(buf)} bytes, {what} needs {needed} bytes"
        )


def _separated_header(
    buf: memoryview,
    magic: bytes,
    bitness: int,
    version: int | None,
    slots: dict[str, int],
    checksums: dict[str, int],
    fixed_size: int,
) -> FileHeader:
    # section header width follows the header layout, not the bitness
    wide = version is not None and version not in NARROW_VERSIONS
    section_header = WIDE_SECTION_HEADER if wide else NARROW_SECTION_HEADER

    descriptors = []
    for kind in SEPARATED_SLOT_ORDER:
        offset = slots.get(kind, 0)
        if offset == 0:
            continue
        if offset + section_header.size > len(buf):
            raise TruncatedFile(
                f"{kind} section header at {offset:#x} lies beyond end of file "
                f"({len(buf):#x} bytes)"
            )
        compression, length = section_header.unpack_from(buf, offset)
        if compression not in COMPRESSION_NAMES:
            raise MalformedHeader(
                f"{kind} section at {offset:#x} has unknown compression {compression}"
            )
        descriptors.append(SectionDescriptor(
            kind=kind,
            offset=offset + section_header.size,
            size=length,
            header_size=section_header.size,
            compression=compression,
            checksum=checksums.get(kind),
        ))
        log.debug(
            "Section %s: header at %#x, %d bytes, compression=%s",
            kind, offset, length, COMPRESSION_NAMES[compression],
        )

    return FileHeader(
        magic=magic,
        bitness=bitness,
        version=version,
        layout=LAYOUT_SEPARATED,
        section_descriptors=tuple(descriptors),
        fixed_size=fixed_size,
    )


def _inline_header(
    buf: memoryview,
    magic: bytes,
    bitness: int,
    version: int,
    raw_offsets: bytes,
) -> FileHeader:
    if magic != MAGIC_IDA2:
        raise MalformedHeader(
            f"Header version {version} only exists for 64-bit files, got {magic!r}"
        )
    _require(buf, TAIL_OFFSET + INLINE_TAIL_STRUCT.size, "version %d header" % version)
    compression, *sizes_and_rest = INLINE_TAIL_STRUCT.unpack_from(buf, TAIL_OFFSET)
    sizes = sizes_and_rest[:6]
    md5 = sizes_and_rest[-1]
    if compression not in COMPRESSION_NAMES:
        raise MalformedHeader(f"Inline header has unknown compression {compression}")

    header_size = WORD64.unpack_from(raw_offsets, 0)
    data_start = WORD64.unpack_from(raw_offsets, 8)
    if header_size == 0:
        raise MalformedHeader("Inline header declares a zero header size")
    if data_start == 0:
        raise MalformedHeader("Inline header declares a zero data start offset")
    if data_start > len(buf):
        raise TruncatedFile(
            f"Inline data start {data_start:#x} lies beyond end of file ({len(buf):#x} bytes)"
        )

    # compressed data is addressed after decompression, from offset zero
    cursor = 0 if compression != COMPRESSION_NONE else data_start
    descriptors = []
    for kind, size in zip(INLINE_SLOT_ORDER, sizes):
        if size == 0:
            continue
        descriptors.append(SectionDescriptor(kind=kind, offset=cursor, size=size))
        cursor += size

    return FileHeader(
        magic=magic,
        bitness=bitness,
        version=version,
        layout=LAYOUT_INLINE,
        section_descriptors=tuple(descriptors),
        compression=compression,
        data_start=data_start,
        md5=md5,
        fixed_size=TAIL_OFFSET + INLINE_TAIL_STRUCT.size,
    )
