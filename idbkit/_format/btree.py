"""
ID0 paged B-tree reader.

Layout of the ID0 content:
    page 0          header page (Id0Header + version string)
    page n (n >= 1) index or leaf page at n * page_size

Every data page is decoded at most once into an arena indexed by page
number. The traversal is an explicit stack walk from the root page, so
tree depth is unbounded and a revisited page is reported instead of
looped on. Pages the walk never reaches are reported as unparsed
regions, together with how many stale records they still hold.

Nothing in here raises for bad page data. Every irregularity becomes a
Diagnostic on the returned Id0Section.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from idbkit import MIN_PAGE_SIZE
from idbkit._format.fragments import FragmentStrategy, strategy_for
from idbkit._format.spec import (
    ID0_HEADER_SIZE, ID0_HEADER_STRUCT, PAGE_LAYOUTS, RECORD_LEN_STRUCT, PageLayout,
)
from idbkit.config import ParserConfig
from idbkit.diagnostics import (
    BTREE_ORDER_VIOLATION, CYCLE_DETECTED, DANGLING_PAGE_REFERENCE, LIMIT_EXCEEDED,
    MALFORMED_ID0_HEADER, MALFORMED_PAGE, MULTI_FRAGMENT_VALUE, PAGE_COUNT_MISMATCH,
    PARTIAL_PAGE, REASON_BAD_HEADER, REASON_HEADER_RESIDUE, REASON_MALFORMED_PAGE, REASON_ORPHAN_PAGE,
    REASON_OVER_LIMIT, REASON_PARTIAL_PAGE, RECORD_COUNT_MISMATCH, DiagnosticLog,
    UnparsedRegion,
)
from idbkit.id0 import Id0Entry, Id0Header, Id0Section

log = logging.getLogger(__name__)

LEAF = "leaf"
INDEX = "index"


class PageFormatError(Exception):
    """A page (or the header page) violates its layout."""


@dataclass(frozen=True)
class PageEntry:
    """One directory entry. `value` is None when the record was dropped."""

    key: bytes
    value: bytes | None
    child: int | None = None


@dataclass(frozen=True)
class PageFragment:
    """A value whose declared length runs past the page end."""

    slot: int
    declared: int
    available: int
    kept: bool


@dataclass(frozen=True)
class BTreePage:
    index: int
    kind: str
    preceding: int | None
    entries: tuple[PageEntry, ...]
    deleted_slots: int
    freeptr: int
    unused_bytes: int
    fragments: tuple[PageFragment, ...] = ()

    @property
    def is_leaf(self) -> bool:
        return self.kind == LEAF

    @property
    def stale_entries(self) -> int:
        return sum(1 for e in self.entries if e.key or e.value)


# ---------------------------------------------------------------------------
# Header page
# ---------------------------------------------------------------------------

def parse_id0_header(buf: memoryview) -> tuple[Id0Header, PageLayout]:
    if len(buf) < ID0_HEADER_STRUCT.size:
        raise PageFormatError(
            f"ID0 header needs {ID0_HEADER_STRUCT.size} bytes, section has {len(buf)}"
        )
    next_free, page_size, root, records, pages, _unknown = ID0_HEADER_STRUCT.unpack_from(buf)
    tail = bytes(buf[ID0_HEADER_STRUCT.size:ID0_HEADER_SIZE])
    nul = tail.find(b"\x00")
    if nul < 0:
        raise PageFormatError("ID0 version string is not NUL-terminated")
    version = tail[:nul]
    layout = PAGE_LAYOUTS.get(version)
    if layout is None:
        raise PageFormatError(f"Unknown B-tree version: {version!r}")
    header = Id0Header(
        next_free_offset=next_free,
        page_size=page_size,
        root_page=root,
        record_count=records,
        page_count=pages,
        version=version,
    )
    return header, layout


# ---------------------------------------------------------------------------
# Page decoding
# ---------------------------------------------------------------------------

def _read_record(page: memoryview, recofs: int, prefix: int, where: str) -> tuple[bytes, int, int, int]:
    """Decode key and value length. Returns (key, value_start, value_len, record_end)."""
    page_size = len(page)
    pos = recofs + prefix
    if pos + RECORD_LEN_STRUCT.size > page_size:
        raise PageFormatError(f"{where}: key length at {pos:#x} past page end")
    (klen,) = RECORD_LEN_STRUCT.unpack_from(page, pos)
    pos += RECORD_LEN_STRUCT.size
    if pos + klen > page_size:
        raise PageFormatError(
            f"{where}: {klen}-byte key at {pos:#x} overruns {page_size:#x}-byte page"
        )
    key = bytes(page[pos:pos + klen])
    pos += klen
    if pos + RECORD_LEN_STRUCT.size > page_size:
        raise PageFormatError(f"{where}: value length at {pos:#x} past page end")
    (vlen,) = RECORD_LEN_STRUCT.unpack_from(page, pos)
    pos += RECORD_LEN_STRUCT.size
    return key, pos, vlen, min(pos + vlen, page_size)


def _check_recofs(recofs: int, directory_end: int, page_size: int, where: str) -> None:
    if not directory_end <= recofs < page_size:
        raise PageFormatError(
            f"{where}: record offset {recofs:#x} outside [{directory_end:#x}, {page_size:#x})"
        )


def decode_page(
    page: memoryview,
    index: int,
    layout: PageLayout,
    strategy: FragmentStrategy,
) -> BTreePage:
    """Decode one page. Raises PageFormatError on any layout violation."""
    page_size = len(page)
    if page_size < layout.page_header.size:
        raise PageFormatError(f"page {index}: shorter than its header")
    preceding, count = layout.page_header.unpack_from(page, 0)
    directory_end = layout.directory_end(count)
    if directory_end > page_size:
        raise PageFormatError(
            f"page {index}: {count} entries need a {directory_end:#x}-byte directory, "
            f"page is {page_size:#x} bytes"
        )
    freeptr = layout.trailer.unpack_from(page, layout.trailer_offset(count))[-1]

    entries: list[PageEntry] = []
    fragments: list[PageFragment] = []
    deleted = 0
    used = 0
    last_key = b""

    for slot in range(count):
        where = f"page {index} slot {slot}"
        offset = layout.slot_offset(slot)
        if preceding:
            child, recofs = layout.index_slot.unpack_from(page, offset)
            indent = 0
        else:
            fields = layout.leaf_slot.unpack_from(page, offset)
            child, indent, recofs = None, fields[0], fields[-1]
            if recofs == 0:
                deleted += 1
                continue
        _check_recofs(recofs, directory_end, page_size, where)
        suffix, value_start, vlen, record_end = _read_record(
            page, recofs, layout.record_prefix, where,
        )
        used += record_end - recofs

        if preceding:
            key = suffix
        else:
            if indent > len(last_key):
                raise PageFormatError(
                    f"{where}: key indent {indent} exceeds previous key length {len(last_key)}"
                )
            key = last_key[:indent] + suffix
            last_key = key

        if value_start + vlen <= page_size:
            value = bytes(page[value_start:value_start + vlen])
        else:
            value = strategy.resolve(page, value_start, vlen)
            fragments.append(PageFragment(
                slot=slot,
                declared=vlen,
                available=page_size - value_start,
                kept=value is not None,
            ))
            if value is None and not preceding:
                continue
        entries.append(PageEntry(key, value, child))

    return BTreePage(
        index=index,
        kind=INDEX if preceding else LEAF,
        preceding=preceding or None,
        entries=tuple(entries),
        deleted_slots=deleted,
        freeptr=freeptr,
        unused_bytes=max(0, page_size - directory_end - used),
        fragments=tuple(fragments),
    )


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

_VISIT = 0
_EMIT = 1


class BTreeReader:
    """Rebuilds the ordered entry sequence of one ID0 section."""

    def __init__(self, content: bytes | memoryview, config: ParserConfig | None = None) -> None:
        self.buf = memoryview(content).toreadonly()
        self.config = config or ParserConfig()
        self.strategy = strategy_for(self.config.fragment_strategy)
        self.diagnostics = DiagnosticLog()
        self.unparsed: list[UnparsedRegion] = []
        self.entries: list[Id0Entry] = []
        self.degraded = False
        self._arena: dict[int, BTreePage | PageFormatError] = {}
        self._visited: set[int] = set()
        self._reachable: list[int] = []
        self._emitting = True

    # --- Arena -------------------------------------------------------------

    def _page(self, n: int) -> BTreePage | PageFormatError:
        cached = self._arena.get(n)
        if cached is None:
            start = n * self.page_size
            try:
                cached = decode_page(
                    self.buf[start:start + self.page_size], n, self.layout, self.strategy,
                )
                log.debug(
                    "Page %d: %s, %d entries, %d deleted",
                    n, cached.kind, len(cached.entries), cached.deleted_slots,
                )
            except PageFormatError as e:
                cached = e
            self._arena[n] = cached
        return cached

    # --- Entry point -------------------------------------------------------

    def read(self) -> Id0Section:
        size = len(self.buf)
        self.page_size = self.config.page_size or self.config.default_page_size
        if size == 0:
            return self._result(None, None)

        try:
            header, self.layout = parse_id0_header(self.buf)
        except PageFormatError as e:
            self.diagnostics.add(MALFORMED_ID0_HEADER, str(e), page=0)
            self.unparsed.append(UnparsedRegion(0, size, REASON_BAD_HEADER, page=0))
            self.degraded = True
            return self._result(None, None)

        self.page_size = self._choose_page_size(header)
        self._check_header_residue(header)
        total_pages = size // self.page_size
        data_pages = max(0, total_pages - 1)
        self.considered = min(data_pages, self.config.max_pages)

        if data_pages > self.considered:
            self.diagnostics.add(
                LIMIT_EXCEEDED,
                f"ID0 holds {data_pages} pages, only the first {self.considered} were considered",
            )
            start = (self.considered + 1) * self.page_size
            self.unparsed.append(UnparsedRegion(
                start, (data_pages - self.considered) * self.page_size, REASON_OVER_LIMIT,
            ))

        if header.root_page:
            self._walk(header.root_page)

        self._collect_orphans()

        partial = size % self.page_size if total_pages else 0
        if partial:
            start = total_pages * self.page_size
            self.diagnostics.add(
                PARTIAL_PAGE,
                f"{partial} bytes at {start:#x} do not fill a {self.page_size:#x}-byte page",
            )
            self.unparsed.append(UnparsedRegion(start, partial, REASON_PARTIAL_PAGE))

        self._cross_check(header)
        return self._result(header, self.layout)

    def _check_header_residue(self, header: Id0Header) -> None:
        # the header page is zero past the version string's NUL
        start = ID0_HEADER_STRUCT.size + len(header.version) + 1
        tail = bytes(self.buf[start:min(self.page_size, len(self.buf))])
        if not tail.strip(b"\x00"):
            return
        first = start + len(tail) - len(tail.lstrip(b"\x00"))
        end = start + len(tail.rstrip(b"\x00"))
        self.diagnostics.add(
            MALFORMED_ID0_HEADER,
            f"{end - first} bytes of nonzero residue at {first:#x} in the header page",
            page=0,
        )
        self.unparsed.append(UnparsedRegion(first, end - first, REASON_HEADER_RESIDUE, page=0))

    def _choose_page_size(self, header: Id0Header) -> int:
        if self.config.page_size:
            if self.config.page_size != header.page_size:
                log.debug(
                    "Forcing ID0 page size %#x (header says %#x)",
                    self.config.page_size, header.page_size,
                )
            return self.config.page_size
        if header.page_size < MIN_PAGE_SIZE:
            self.diagnostics.add(
                MALFORMED_ID0_HEADER,
                f"Unusable page size {header.page_size:#x} in ID0 header, "
                f"using {self.config.default_page_size:#x}",
                page=0,
            )
            return self.config.default_page_size
        return header.page_size

    # --- Walk --------------------------------------------------------------

    def _walk(self, root: int) -> None:
        stack: list[tuple[int, object, int]] = [(_VISIT, root, 0)]
        while stack:
            op, item, referrer = stack.pop()
            if op == _EMIT:
                self._emit(item)
                continue

            n = item
            if not 1 <= n <= self.considered:
                if self.considered < n < len(self.buf) // self.page_size:
                    log.debug("Page %d is past the page limit, skipped", n)
                    continue
                self.diagnostics.add(
                    DANGLING_PAGE_REFERENCE,
                    f"Page {referrer} references page {n}, outside the section "
                    f"({self.considered} data pages)",
                    page=referrer,
                )
                continue
            if n in self._visited:
                self.diagnostics.add(
                    CYCLE_DETECTED,
                    f"Page {n} reached again from page {referrer}, subtree skipped",
                    page=n,
                )
                continue
            self._visited.add(n)

            page = self._page(n)
            if isinstance(page, PageFormatError):
                self.diagnostics.add(MALFORMED_PAGE, str(page), page=n)
                self.unparsed.append(UnparsedRegion(
                    n * self.page_size, self.page_size, REASON_MALFORMED_PAGE, page=n,
                ))
                continue
            self._reachable.append(n)

            for fragment in page.fragments:
                self.diagnostics.add(
                    MULTI_FRAGMENT_VALUE,
                    f"Page {n} slot {fragment.slot}: value declares {fragment.declared} bytes, "
                    f"{fragment.available} left in page ({'truncated' if fragment.kept else 'dropped'})",
                    page=n,
                )

            if page.is_leaf:
                for entry in reversed(page.entries):
                    stack.append((_EMIT, entry, n))
                continue

            # preceding subtree, then each separator followed by its subtree
            for entry in reversed(page.entries):
                if entry.child:
                    stack.append((_VISIT, entry.child, n))
                stack.append((_EMIT, entry, n))
            stack.append((_VISIT, page.preceding, n))

    def _emit(self, entry: PageEntry) -> None:
        if entry.value is None or not self._emitting:
            return
        position = len(self.entries)
        if self.entries and entry.key <= self.entries[-1].key:
            self.diagnostics.add(
                BTREE_ORDER_VIOLATION,
                f"Key {entry.key!r} at position {position} does not follow "
                f"{self.entries[-1].key!r}, output truncated",
                position=position,
            )
            self._stop()
            return
        if position >= self.config.max_entries:
            self.diagnostics.add(
                LIMIT_EXCEEDED,
                f"Entry limit of {self.config.max_entries} reached, output truncated",
                position=position,
            )
            self._stop()
            return
        self.entries.append(Id0Entry(entry.key, entry.value))

    def _stop(self) -> None:
        self._emitting = False
        self.degraded = True

    # --- Accounting --------------------------------------------------------

    def _collect_orphans(self) -> None:
        for n in range(1, self.considered + 1):
            if n in self._visited:
                continue
            page = self._page(n)
            stale = page.stale_entries if isinstance(page, BTreePage) else 0
            self.unparsed.append(UnparsedRegion(
                n * self.page_size, self.page_size, REASON_ORPHAN_PAGE,
                page=n, stale_entries=stale,
            ))
            if stale:
                log.info("Orphan page %d still holds %d records", n, stale)

    def _cross_check(self, header: Id0Header) -> None:
        if header.record_count != len(self.entries):
            self.diagnostics.add(
                RECORD_COUNT_MISMATCH,
                f"Header declares {header.record_count} records, recovered {len(self.entries)}",
            )
        if header.page_count != len(self._reachable):
            self.diagnostics.add(
                PAGE_COUNT_MISMATCH,
                f"Header declares {header.page_count} pages, {len(self._reachable)} in tree",
            )

    def _result(self, header: Id0Header | None, layout: PageLayout | None) -> Id0Section:
        section = Id0Section(
            entries=tuple(self.entries),
            diagnostics=tuple(self.diagnostics.items),
            unparsed=tuple(sorted(self.unparsed, key=lambda r: r.offset)),
            degraded=self.degraded,
            size=len(self.buf),
            page_size=self.page_size,
            version=layout.name if layout else None,
            header=header,
            reachable_pages=tuple(self._reachable),
        )
        log.info(
            "ID0: %d entries, %d pages in tree, %d unparsed regions, %d diagnostics",
            len(section), len(section.reachable_pages), len(section.unparsed),
            len(section.diagnostics),
        )
        return section


def read_id0(content: bytes | memoryview, config: ParserConfig | None = None) -> Id0Section:
    """Rebuild the sorted ID0 entry sequence from the section's content bytes."""
    return BTreeReader(content, config).read()
