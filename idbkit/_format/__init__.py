"""Container format layer: header, sections, ID0 B-tree, ID1/NAM readers, writer."""

from idbkit._format.btree import read_id0
from idbkit._format.header import FileHeader, SectionDescriptor, parse_header
from idbkit._format.sections import ContainerSections, SectionBytes, TrailingData, extract_sections
from idbkit._format.sequential import ByteRecord, Id1Reader, Id1Segment, NamReader
from idbkit._format.writer import ContainerWriter, Id0Builder, build_id1, build_nam

__all__ = [
    "ByteRecord",
    "ContainerSections",
    "ContainerWriter",
    "FileHeader",
    "Id0Builder",
    "Id1Reader",
    "Id1Segment",
    "NamReader",
    "SectionBytes",
    "SectionDescriptor",
    "TrailingData",
    "build_id1",
    "build_nam",
    "extract_sections",
    "parse_header",
    "read_id0",
]
