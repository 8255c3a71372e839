"""
Batch parsing — many containers on a thread pool.

Each file is parsed independently; a fatal error for one path is captured
in its BatchResult and never affects the others.
"""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from idbkit.config import ParserConfig
from idbkit.database import IDBDatabase, parse_file
from idbkit.errors import IDBFormatError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchResult:
    path: Path
    database: IDBDatabase | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _parse_one(path: Path, config: ParserConfig | None) -> BatchResult:
    try:
        return BatchResult(path, database=parse_file(path, config))
    except (IDBFormatError, OSError, ValueError) as e:
        log.warning("Failed to parse %s: %s", path, e)
        return BatchResult(path, error=e)


def parse_many(
    paths: Iterable[str | Path],
    config: ParserConfig | None = None,
    max_workers: int = 4,
) -> list[BatchResult]:
    """Parse every path; results come back in input order."""
    paths = [Path(p) for p in paths]
    max_workers = max(1, max_workers)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as ex:
        futures = [ex.submit(_parse_one, path, config) for path in paths]
        results = [fut.result() for fut in futures]
    failed = sum(1 for r in results if not r.ok)
    log.info("Parsed %d files, %d failed", len(results), failed)
    return results
