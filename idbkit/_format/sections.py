"""
Section extractor.

Turns a FileHeader plus the file bytes into immutable SectionBytes views.

Validation order:
  1. every pair of section extents is checked for overlap (including the
     fixed file header), before any section content is read
  2. every extent is checked against the buffer length
  3. whatever lies past the last section end is reported as TrailingData,
     and so is anything in the file past a compressed inline stream

Sections are zero-copy read-only memoryview slices of the caller's
buffer. Decompression happens on demand in SectionBytes.content(), capped
so that a forged length field can never drive an unbounded allocation.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from typing import Iterator

import zstandard

from idbkit._format.header import FileHeader, SectionDescriptor
from idbkit._format.spec import (
    COMPRESSION_NAMES, COMPRESSION_NONE, COMPRESSION_ZLIB, COMPRESSION_ZSTD,
    LAYOUT_INLINE, MAGIC_IDA0,
)
from idbkit.config import ParserConfig
from idbkit.diagnostics import REASON_STREAM_TRAILING, REASON_TRAILING, UnparsedRegion
from idbkit.errors import OverlappingSections, SectionFormatError, SectionOutOfBounds

log = logging.getLogger(__name__)

# extra decompressed bytes accepted past the declared inline sizes, so
# trailing data in a compressed stream is still measured
INLINE_TRAILING_SLACK = 0x10000

# zstd input is fed in chunks so the output limit is checked as it grows
ZSTD_INPUT_CHUNK = 0x1000

_HEADER_KIND = "HEADER"


def decompress_stream(
    data, compression: int, limit: int, *, raw_deflate: bool = False,
) -> tuple[bytes, int]:
    """Decompress one complete stream of at most `limit` bytes.

    Returns (output, input bytes consumed). Input past the end of the
    stream is left unconsumed. A stream that ends early, fails to decode
    or grows past `limit` raises SectionFormatError.
    """
    data = bytes(data)
    if compression == COMPRESSION_NONE:
        return data, len(data)
    try:
        if compression == COMPRESSION_ZLIB:
            out, consumed = _zlib_read(data, limit, raw_deflate)
        elif compression == COMPRESSION_ZSTD:
            out, consumed = _zstd_read(data, limit)
        else:
            raise SectionFormatError(f"Unsupported compression code {compression}")
    except (zlib.error, zstandard.ZstdError) as e:
        raise SectionFormatError(
            f"{COMPRESSION_NAMES[compression]} decompression failed: {e}"
        ) from e
    return out, consumed


def decompress(data, compression: int, limit: int, *, raw_deflate: bool = False) -> bytes:
    """Decompress a whole section. Raises SectionFormatError on any failure."""
    out, consumed = decompress_stream(data, compression, limit, raw_deflate=raw_deflate)
    if consumed < len(data):
        log.warning(
            "%d bytes follow the %s stream inside its section",
            len(data) - consumed, COMPRESSION_NAMES[compression],
        )
    return out


def _exceeds(limit: int) -> SectionFormatError:
    return SectionFormatError(f"Decompressed data exceeds limit of {limit} bytes")


def _truncated(name: str, size: int) -> SectionFormatError:
    return SectionFormatError(f"{name} stream is truncated: {size} input bytes end mid-stream")


def _zlib_read(data: bytes, limit: int, raw_deflate: bool) -> tuple[bytes, int]:
    d = zlib.decompressobj(-15 if raw_deflate else 15)
    out = d.decompress(data, limit + 1)
    if len(out) > limit:
        raise _exceeds(limit)
    if not d.eof:
        raise _truncated("zlib", len(data))
    return out, len(data) - len(d.unused_data)


def _zstd_read(data: bytes, limit: int) -> tuple[bytes, int]:
    # -1 when the frame does not record its size
    if zstandard.frame_content_size(data) > limit:
        raise _exceeds(limit)
    dobj = zstandard.ZstdDecompressor().decompressobj()
    chunks = []
    total = fed = 0
    while fed < len(data) and not dobj.eof:
        chunk = data[fed:fed + ZSTD_INPUT_CHUNK]
        fed += len(chunk)
        out = dobj.decompress(chunk)
        total += len(out)
        if total > limit:
            raise _exceeds(limit)
        chunks.append(out)
    if not dobj.eof:
        raise _truncated("zstd", len(data))
    return b"".join(chunks), fed - len(dobj.unused_data)


@dataclass(frozen=True)
class TrailingData:
    """Advisory: bytes past the end of the last declared section.

    `in_stream` marks bytes inside a decompressed inline stream; their
    offset is relative to that stream, not to the file.
    """

    offset: int
    size: int
    in_stream: bool = False

    def as_region(self) -> UnparsedRegion:
        reason = REASON_STREAM_TRAILING if self.in_stream else REASON_TRAILING
        return UnparsedRegion(self.offset, self.size, reason)


class SectionBytes:
    """Immutable view of one section's stored bytes, tagged with its kind."""

    def __init__(
        self,
        descriptor: SectionDescriptor,
        extent: memoryview,
        *,
        max_size: int,
        raw_deflate: bool = False,
    ) -> None:
        self.descriptor = descriptor
        self._extent = extent
        self._max_size = max_size
        self._raw_deflate = raw_deflate
        self._content: bytes | memoryview | None = None

    @property
    def kind(self) -> str:
        return self.descriptor.kind

    @property
    def offset(self) -> int:
        return self.descriptor.offset

    @property
    def size(self) -> int:
        return self.descriptor.size

    @property
    def extent(self) -> memoryview:
        """Stored bytes including the per-section header, if any."""
        return self._extent

    @property
    def raw(self) -> memoryview:
        """Stored data bytes (still compressed if the section is)."""
        return self._extent[self.descriptor.header_size:]

    def content(self) -> bytes | memoryview:
        """Decoded section data. Decompressed once, then cached."""
        if self._content is None:
            if not self.descriptor.is_compressed:
                self._content = self.raw
            else:
                self._content = decompress(
                    self.raw, self.descriptor.compression, self._max_size,
                    raw_deflate=self._raw_deflate,
                )
                log.debug(
                    "Decompressed %s: %d -> %d bytes",
                    self.kind, self.size, len(self._content),
                )
        return self._content

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return f"SectionBytes({self.kind}, offset={self.offset:#x}, size={self.size})"


class ContainerSections:
    """Extracted sections keyed by kind, in file order."""

    def __init__(
        self,
        header: FileHeader,
        sections: list[SectionBytes],
        trailing: TrailingData | None,
        buffer_size: int,
        file_trailing: TrailingData | None = None,
    ) -> None:
        self.header = header
        self._sections = {s.kind: s for s in sections}
        self._order = [s.kind for s in sorted(sections, key=lambda s: s.descriptor.extent_start)]
        self.trailing = trailing
        self.file_trailing = file_trailing
        self.buffer_size = buffer_size

    @property
    def kinds(self) -> list[str]:
        return list(self._order)

    @property
    def trailing_data(self) -> list[TrailingData]:
        """Leftover bytes past the last section, and past the compressed stream."""
        return [t for t in (self.trailing, self.file_trailing) if t is not None]

    @property
    def has_trailing_data(self) -> bool:
        return bool(self.trailing_data)

    def get(self, kind: str) -> SectionBytes | None:
        return self._sections.get(kind)

    def __getitem__(self, kind: str) -> SectionBytes:
        return self._sections[kind]

    def __contains__(self, kind: object) -> bool:
        return kind in self._sections

    def __iter__(self) -> Iterator[SectionBytes]:
        for kind in self._order:
            yield self._sections[kind]

    def __len__(self) -> int:
        return len(self._sections)

    @property
    def unparsed_regions(self) -> list[UnparsedRegion]:
        return [t.as_region() for t in self.trailing_data]

    def reassemble(self, fill: int = 0) -> bytes:
        """Write every section's stored bytes back at its declared extent.

        Bytes outside all extents (fixed header, gaps, trailing data) are
        set to `fill`. For inline compressed files this rebuilds the
        decompressed stream, not the file.
        """
        out = bytearray([fill]) * self.buffer_size
        for section in self:
            start = section.descriptor.extent_start
            out[start:start + len(section.extent)] = section.extent
        return bytes(out)


def extract_sections(
    header: FileHeader,
    data: bytes | memoryview,
    config: ParserConfig | None = None,
) -> ContainerSections:
    """Validate the section table and slice out every declared section."""
    config = config or ParserConfig()
    buf = memoryview(data).toreadonly()
    descriptors = header.section_descriptors
    file_trailing = None

    _check_overlaps(header)

    if header.layout == LAYOUT_INLINE and header.compression != COMPRESSION_NONE:
        declared = sum(d.size for d in descriptors)
        if declared > config.max_section_size * max(len(descriptors), 1):
            raise SectionFormatError(
                f"Inline sections declare {declared} bytes, over the configured limit"
            )
        stream, consumed = decompress_stream(
            buf[header.data_start:], header.compression, declared + INLINE_TRAILING_SLACK,
        )
        base = memoryview(stream).toreadonly()
        floor = 0
        in_stream = True
        log.debug("Decompressed inline data: %d -> %d bytes", consumed, len(base))
        stream_end = header.data_start + consumed
        if len(buf) > stream_end:
            file_trailing = TrailingData(stream_end, len(buf) - stream_end)
            log.info(
                "Trailing data: %d bytes at %#x past the compressed stream",
                file_trailing.size, file_trailing.offset,
            )
    else:
        base = buf
        floor = header.data_start if header.layout == LAYOUT_INLINE else header.fixed_size
        in_stream = False

    for d in descriptors:
        if d.end > len(base):
            raise SectionOutOfBounds(
                d.kind,
                f"{d.kind} section [{d.extent_start:#x}, {d.end:#x}) exceeds "
                f"buffer length {len(base):#x}",
            )

    raw_deflate = header.magic == MAGIC_IDA0
    sections = [
        SectionBytes(
            d, base[d.extent_start:d.end],
            max_size=config.max_section_size, raw_deflate=raw_deflate,
        )
        for d in descriptors
    ]

    last_end = max((d.end for d in descriptors), default=floor)
    trailing = None
    if len(base) > last_end:
        trailing = TrailingData(last_end, len(base) - last_end, in_stream=in_stream)
        log.info("Trailing data: %d bytes at %#x", trailing.size, trailing.offset)

    return ContainerSections(header, sections, trailing, len(base), file_trailing)


def _check_overlaps(header: FileHeader) -> None:
    descriptors = header.section_descriptors
    compressed_inline = header.layout == LAYOUT_INLINE and header.compression != COMPRESSION_NONE
    for i, a in enumerate(descriptors):
        if not compressed_inline and a.extent_start < header.fixed_size:
            raise OverlappingSections(
                _HEADER_KIND, a.kind,
                f"{a.kind} section at {a.extent_start:#x} overlaps the file header "
                f"[0, {header.fixed_size:#x})",
            )
        for b in descriptors[i + 1:]:
            if a.overlaps(b):
                raise OverlappingSections(
                    a.kind, b.kind,
                    f"{a.kind} [{a.extent_start:#x}, {a.end:#x}) overlaps "
                    f"{b.kind} [{b.extent_start:#x}, {b.end:#x})",
                )
