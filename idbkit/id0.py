"""
ID0 result model.

An Id0Section is the authoritative output of the B-tree reader: the
recovered (key, value) pairs in strictly increasing key order, plus
everything the reader could not account for.
"""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Any, Iterator

from idbkit.diagnostics import Diagnostic, UnparsedRegion


@dataclass(frozen=True, order=True)
class Id0Entry:
    key: bytes
    value: bytes


@dataclass(frozen=True)
class Id0Header:
    """Fields of the ID0 header page (page 0)."""

    next_free_offset: int
    page_size: int
    root_page: int
    record_count: int
    page_count: int
    version: bytes


def _prefix_successor(prefix: bytes) -> bytes | None:
    """Smallest byte string greater than every string starting with prefix."""
    stripped = prefix.rstrip(b"\xff")
    if not stripped:
        return None
    return stripped[:-1] + bytes([stripped[-1] + 1])


@dataclass(frozen=True)
class Id0Section:
    """Recovered ID0 contents.

    Attributes:
        entries: Sorted, duplicate-free entries.
        diagnostics: Non-fatal findings, in the order they were made.
        unparsed: Byte ranges of the ID0 content no decoder consumed.
        degraded: True when output was cut short (order violation or limit).
        size: Length of the ID0 content in bytes.
        page_size: Page size used for the traversal.
        version: Page layout name ("1.5", "1.6", "2.0"), None if unknown.
        header: Decoded header page, None if it was unreadable.
        reachable_pages: Pages visited and decoded during traversal.
    """

    entries: tuple[Id0Entry, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    unparsed: tuple[UnparsedRegion, ...] = ()
    degraded: bool = False
    size: int = 0
    page_size: int = 0
    version: str | None = None
    header: Id0Header | None = None
    reachable_pages: tuple[int, ...] = ()
    _keys: list[bytes] = field(default_factory=list, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._keys.extend(e.key for e in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Id0Entry]:
        return iter(self.entries)

    def __getitem__(self, index):
        return self.entries[index]

    # --- Lookups -----------------------------------------------------------

    def get(self, key: bytes) -> bytes | None:
        """Value stored under exactly `key`."""
        i = bisect_left(self._keys, key)
        if i < len(self._keys) and self._keys[i] == key:
            return self.entries[i].value
        return None

    def sub_values(self, prefix: bytes) -> list[Id0Entry]:
        """Entries whose key starts with `prefix`."""
        return list(self.entries[self._span(prefix, prefix)])

    def get_inclusive_range(self, start: bytes, end: bytes) -> list[Id0Entry]:
        """Entries from `start` up to and including every key prefixed by `end`."""
        return list(self.entries[self._span(start, end)])

    def _span(self, start: bytes, end_prefix: bytes) -> slice:
        lo = bisect_left(self._keys, start)
        successor = _prefix_successor(end_prefix)
        hi = len(self._keys) if successor is None else bisect_left(self._keys, successor)
        return slice(lo, max(lo, hi))

    # --- Accounting --------------------------------------------------------

    def coverage(self) -> dict[str, list[tuple[int, int]]]:
        """Partition [0, size) into metadata, reachable and unparsed ranges.

        Ranges are half-open (start, end) pairs, adjacent ranges merged.
        """
        metadata: list[tuple[int, int]] = []
        if self.header is not None and self.size:
            header_end = min(self.page_size, self.size)
            holes = sorted((r.offset, r.end) for r in self.unparsed if r.end <= header_end)
            metadata = _subtract((0, header_end), holes)
        reachable = [
            (n * self.page_size, (n + 1) * self.page_size)
            for n in sorted(self.reachable_pages)
        ]
        unparsed = sorted((r.offset, r.end) for r in self.unparsed)
        return {
            "metadata": _merge(metadata),
            "reachable": _merge(reachable),
            "unparsed": _merge(unparsed),
        }

    def diagnostics_of(self, kind: str) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]

    def summary(self) -> dict[str, Any]:
        return {
            "entries": len(self.entries),
            "size": self.size,
            "page_size": self.page_size,
            "version": self.version,
            "degraded": self.degraded,
            "reachable_pages": len(self.reachable_pages),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "unparsed": [r.to_dict() for r in self.unparsed],
        }


def _merge(ranges: list[tuple[int, int]]) -> list[tuple[int, int]]:
    merged: list[tuple[int, int]] = []
    for start, end in ranges:
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(end, merged[-1][1]))
        else:
            merged.append((start, end))
    return merged


def _subtract(span: tuple[int, int], holes: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Parts of `span` not covered by the sorted `holes`."""
    start, end = span
    out: list[tuple[int, int]] = []
    for lo, hi in holes:
        if lo > start:
            out.append((start, min(lo, end)))
        start = max(start, hi)
    if start < end:
        out.append((start, end))
    return out
