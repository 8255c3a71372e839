"""
Non-fatal parse findings.

A Diagnostic describes something irregular that did not stop parsing.
An UnparsedRegion describes a byte range that no decoder consumed. Both
are plain frozen records collected into lists and returned alongside
the recovered data.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

log = logging.getLogger(__name__)

# Diagnostic kinds
DANGLING_PAGE_REFERENCE = "DanglingPageReference"
CYCLE_DETECTED = "CycleDetected"
BTREE_ORDER_VIOLATION = "BTreeOrderViolation"
MALFORMED_PAGE = "MalformedPage"
MALFORMED_ID0_HEADER = "MalformedId0Header"
MULTI_FRAGMENT_VALUE = "MultiFragmentValue"
RECORD_COUNT_MISMATCH = "RecordCountMismatch"
PAGE_COUNT_MISMATCH = "PageCountMismatch"
PARTIAL_PAGE = "PartialPage"
LIMIT_EXCEEDED = "LimitExceeded"
TRAILING_DATA = "TrailingData"

VALID_KINDS = frozenset({
    DANGLING_PAGE_REFERENCE, CYCLE_DETECTED, BTREE_ORDER_VIOLATION,
    MALFORMED_PAGE, MALFORMED_ID0_HEADER, MULTI_FRAGMENT_VALUE,
    RECORD_COUNT_MISMATCH, PAGE_COUNT_MISMATCH, PARTIAL_PAGE,
    LIMIT_EXCEEDED, TRAILING_DATA,
})

# Unparsed region reasons
REASON_ORPHAN_PAGE = "orphan-page"
REASON_MALFORMED_PAGE = "malformed-page"
REASON_PARTIAL_PAGE = "partial-page"
REASON_OVER_LIMIT = "over-limit"
REASON_BAD_HEADER = "bad-id0-header"
REASON_TRAILING = "trailing-data"
REASON_STREAM_TRAILING = "stream-trailing-data"
REASON_HEADER_RESIDUE = "id0-header-residue"


@dataclass(frozen=True)
class Diagnostic:
    """A single non-fatal irregularity.

    Attributes:
        kind: One of the kind constants in this module.
        message: Human readable description.
        page: ID0 page number involved, if any.
        position: Entry position in the output sequence, if any.
    """

    kind: str
    message: str
    page: int | None = None
    position: int | None = None

    def __post_init__(self) -> None:
        if self.kind not in VALID_KINDS:
            raise ValueError(f"Unknown diagnostic kind: {self.kind!r}")

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class UnparsedRegion:
    """Byte range not reached or not decoded.

    Offsets are relative to the buffer the region was found in (the ID0
    content for B-tree regions, the file for container trailing data).
    """

    offset: int
    size: int
    reason: str
    page: int | None = None
    stale_entries: int = 0

    @property
    def end(self) -> int:
        return self.offset + self.size

    def shifted(self, base: int) -> UnparsedRegion:
        """Same region expressed relative to an enclosing buffer."""
        return UnparsedRegion(
            self.offset + base, self.size, self.reason, self.page, self.stale_entries,
        )

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class DiagnosticLog:
    """Append-only diagnostic collector that mirrors each entry to logging."""

    def __init__(self) -> None:
        self.items: list[Diagnostic] = []

    def add(
        self,
        kind: str,
        message: str,
        *,
        page: int | None = None,
        position: int | None = None,
    ) -> Diagnostic:
        diag = Diagnostic(kind, message, page=page, position=position)
        self.items.append(diag)
        log.warning("%s: %s", kind, message)
        return diag

    def __len__(self) -> int:
        return len(self.items)
