"""
Database facade — one call from file bytes to recovered sections.

Usage:
    db = parse_file("sample.i64")
    db.id0.get(b"NRoot Node")
    for name_address in db.nam():
        ...

Container problems raise (see idbkit.errors). ID0 problems come back as
diagnostics on the result; call raise_for_diagnostics() to escalate.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

from idbkit._format.btree import read_id0
from idbkit._format.header import FileHeader, parse_header
from idbkit._format.sections import ContainerSections, extract_sections
from idbkit._format.sequential import Id1Reader, NamReader
from idbkit._format.spec import (
    COMPRESSION_NONE, COMPRESSION_NAMES, ID0, ID1, MAGIC_BITNESS, NAM, SECTION_DESCRIPTIONS,
)
from idbkit.config import ParserConfig
from idbkit.diagnostics import TRAILING_DATA, Diagnostic, UnparsedRegion
from idbkit.errors import DiagnosticError
from idbkit.id0 import Id0Section

log = logging.getLogger(__name__)


class IDBDatabase:
    """Everything recovered from one container."""

    def __init__(
        self,
        header: FileHeader,
        sections: ContainerSections,
        id0: Id0Section | None,
        config: ParserConfig,
    ) -> None:
        self.header = header
        self.sections = sections
        self.id0 = id0
        self.config = config

        diagnostics: list[Diagnostic] = []
        for trailing in sections.trailing_data:
            where = "the compressed stream" if trailing.in_stream else "the file"
            diagnostics.append(Diagnostic(
                TRAILING_DATA,
                f"{trailing.size} bytes of trailing data at {trailing.offset:#x} in {where}",
            ))
        if id0 is not None:
            diagnostics.extend(id0.diagnostics)
        self.diagnostics = diagnostics

    @property
    def bitness(self) -> int:
        return self.header.bitness

    @property
    def is_64(self) -> bool:
        return self.header.is_64

    @property
    def unparsed_regions(self) -> list[UnparsedRegion]:
        """Container trailing data, plus ID0 regions as file offsets.

        ID0 regions can only be placed in the file when ID0 is stored
        uncompressed; otherwise they stay on self.id0.unparsed only.
        """
        regions = list(self.sections.unparsed_regions)
        section = self.sections.get(ID0)
        if self.id0 is not None and section is not None and self._id0_in_file():
            regions.extend(r.shifted(section.offset) for r in self.id0.unparsed)
        return sorted(regions, key=lambda r: r.offset)

    def _id0_in_file(self) -> bool:
        descriptor = self.header.descriptor(ID0)
        return (
            self.header.compression == COMPRESSION_NONE
            and descriptor is not None
            and not descriptor.is_compressed
        )

    # --- Sequential sections -----------------------------------------------

    def id1(self) -> Id1Reader | None:
        section = self.sections.get(ID1)
        if section is None:
            return None
        return Id1Reader(section.content(), self.bitness, self.config.id1_page_size)

    def nam(self) -> NamReader | None:
        section = self.sections.get(NAM)
        if section is None:
            return None
        return NamReader(section.content(), self.bitness, self.config.id1_page_size)

    # --- Reporting ---------------------------------------------------------

    def raise_for_diagnostics(self, kinds: Iterable[str] | None = None) -> None:
        """Raise DiagnosticError if any diagnostic (of the given kinds) was recorded."""
        wanted = None if kinds is None else set(kinds)
        selected = [d for d in self.diagnostics if wanted is None or d.kind in wanted]
        if selected:
            raise DiagnosticError(
                selected,
                f"{len(selected)} diagnostic(s): "
                + ", ".join(sorted({d.kind for d in selected})),
            )

    def summary(self) -> dict[str, Any]:
        """JSON-friendly overview of the container."""
        return {
            "magic": self.header.magic.decode("ascii"),
            "bitness": self.bitness,
            "version": self.header.version,
            "layout": self.header.layout,
            "compression": COMPRESSION_NAMES[self.header.compression],
            "sections": [
                {
                    "kind": s.kind,
                    "description": SECTION_DESCRIPTIONS[s.kind],
                    "offset": s.offset,
                    "size": s.size,
                    "compression": COMPRESSION_NAMES[s.descriptor.compression],
                }
                for s in self.sections
            ],
            "trailing_data": sum(t.size for t in self.sections.trailing_data),
            "id0": self.id0.summary() if self.id0 is not None else None,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "unparsed_regions": [r.to_dict() for r in self.unparsed_regions],
        }

    def __repr__(self) -> str:
        return (
            f"IDBDatabase({self.header.magic!r}, version={self.header.version}, "
            f"sections={self.sections.kinds})"
        )


def is_idb(path: str | Path) -> bool:
    """Fast check for a container magic. Reads only the first 4 bytes."""
    with open(path, "rb") as f:
        head = f.read(4)
    return head in MAGIC_BITNESS


def is_idb_bytes(data: bytes) -> bool:
    return bytes(data[:4]) in MAGIC_BITNESS


def parse_bytes(data: bytes | memoryview, config: ParserConfig | None = None) -> IDBDatabase:
    """Parse a whole container held in memory."""
    config = config or ParserConfig()
    if len(data) > config.max_file_size:
        raise ValueError(
            f"Input size {len(data)} exceeds maximum {config.max_file_size} bytes. "
            f"Pass a config with a larger max_file_size to override."
        )
    header = parse_header(data)
    sections = extract_sections(header, data, config)

    id0 = None
    section = sections.get(ID0)
    if section is not None:
        id0 = read_id0(section.content(), config)

    db = IDBDatabase(header, sections, id0, config)
    log.info(
        "Parsed %s container: %d sections, %s ID0 entries, %d diagnostics",
        header.magic.decode("ascii"), len(sections),
        len(id0) if id0 is not None else "no", len(db.diagnostics),
    )
    return db


def parse_file(path: str | Path, config: ParserConfig | None = None) -> IDBDatabase:
    """Read and parse a container file."""
    config = config or ParserConfig()
    path = Path(path)
    file_size = path.stat().st_size
    if file_size > config.max_file_size:
        raise ValueError(
            f"File size {file_size} exceeds maximum {config.max_file_size} bytes. "
            f"Pass a config with a larger max_file_size to override."
        )
    with open(path, "rb") as f:
        data = f.read()
    log.debug("Read %d bytes from %s", len(data), path)
    return parse_bytes(data, config)
