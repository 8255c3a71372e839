"""
Error taxonomy.

Container-level problems are fatal and raise one of the specific
subclasses below. Problems found inside ID0 traversal are never raised;
they are collected as diagnostics (see idbkit.diagnostics).
"""

from __future__ import annotations


class IDBFormatError(Exception):
    """Base class for every container format error."""


class MalformedHeader(IDBFormatError):
    """Magic, signature, version or compression field is not recognized."""


class TruncatedFile(IDBFormatError):
    """File is shorter than its fixed header or a declared offset."""


class OverlappingSections(IDBFormatError):
    """Two declared sections share at least one byte."""

    def __init__(self, first: str, second: str, message: str) -> None:
        super().__init__(message)
        self.first = first
        self.second = second


class SectionOutOfBounds(IDBFormatError):
    """A declared section range runs past the end of the file."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SectionFormatError(IDBFormatError):
    """Section content could not be decoded (decompression, ID1/NAM layout)."""


class DiagnosticError(IDBFormatError):
    """Raised on request when a parse result carries selected diagnostics."""

    def __init__(self, diagnostics: list, message: str) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics
