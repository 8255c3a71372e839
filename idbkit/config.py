"""
Parser configuration.

Defaults live in ParserConfig. A TOML file may override them:

    [parser]
    page_size = 8192          # force ID0 page size (omit to read it from ID0)
    max_pages = 200000
    fragment_strategy = "truncate"

Default location: ~/.idbkit/parser.toml
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from idbkit import (
    CONFIG_DIR_NAME, CONFIG_FILE_NAME, DEFAULT_PAGE_SIZE, ID1_PAGE_SIZE,
    MAX_ENTRIES, MAX_FILE_SIZE, MAX_PAGES, MAX_SECTION_SIZE, MIN_PAGE_SIZE,
)

log = logging.getLogger(__name__)

FRAGMENT_STRATEGIES = frozenset({"strict", "truncate"})


@dataclass(frozen=True)
class ParserConfig:
    """Immutable knobs for one parse.

    Attributes:
        page_size: Forced ID0 page size. None reads it from the ID0 header.
        default_page_size: Used when the ID0 header page size is unusable.
        id1_page_size: Page size for ID1/NAM sections.
        max_file_size: Largest file parse_file will read.
        max_section_size: Largest decompressed section.
        max_pages: Most ID0 pages considered per parse.
        max_entries: Most ID0 entries collected per parse.
        fragment_strategy: "strict" drops values overrunning their page,
            "truncate" keeps the in-page prefix.
    """

    page_size: int | None = None
    default_page_size: int = DEFAULT_PAGE_SIZE
    id1_page_size: int = ID1_PAGE_SIZE
    max_file_size: int = MAX_FILE_SIZE
    max_section_size: int = MAX_SECTION_SIZE
    max_pages: int = MAX_PAGES
    max_entries: int = MAX_ENTRIES
    fragment_strategy: str = "strict"

    def __post_init__(self) -> None:
        for size_field in ("page_size", "default_page_size", "id1_page_size"):
            value = getattr(self, size_field)
            if value is None:
                continue
            if not isinstance(value, int) or not MIN_PAGE_SIZE <= value <= 0xFFFF:
                raise ValueError(
                    f"{size_field} must be an int in [{MIN_PAGE_SIZE}, 65535], got {value!r}"
                )
        for limit_field in ("max_file_size", "max_section_size", "max_pages", "max_entries"):
            value = getattr(self, limit_field)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{limit_field} must be a positive int, got {value!r}")
        if self.fragment_strategy not in FRAGMENT_STRATEGIES:
            raise ValueError(
                f"Unknown fragment_strategy: {self.fragment_strategy!r}. "
                f"Supported: {', '.join(sorted(FRAGMENT_STRATEGIES))}"
            )

    def with_overrides(self, **overrides: Any) -> ParserConfig:
        return replace(self, **overrides)


def default_config_path() -> Path:
    return Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def load_config(config_path: Path | None = None) -> ParserConfig:
    """Load parser config from a TOML file, falling back to defaults."""
    config = ParserConfig()

    path = config_path or default_config_path()
    if not path.is_file():
        return config

    try:
        import tomllib
    except ImportError:
        import tomli as tomllib

    try:
        with open(path, "rb") as f:
            file_config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        log.warning("Failed to load config from %s: %s", path, e)
        return config

    section = file_config.get("parser", {})
    if not isinstance(section, dict):
        log.warning("Ignoring non-table [parser] entry in %s", path)
        return config

    known = {f.name for f in fields(ParserConfig)}
    overrides = {}
    for key, value in section.items():
        if key not in known:
            log.warning("Ignoring unknown config key %r in %s", key, path)
            continue
        overrides[key] = value

    try:
        return config.with_overrides(**overrides)
    except ValueError as e:
        log.warning("Invalid config in %s: %s", path, e)
        return config
