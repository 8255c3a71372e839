"""
Handling for ID0 values whose stored length runs past their page.

Such values are assumed to continue in data the reader does not know how
to follow. The strategy decides what, if anything, is kept; the caller
always records a MultiFragmentValue diagnostic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class FragmentStrategy(ABC):
    """Decides the fate of a value that overruns its page."""

    name = ""

    @abstractmethod
    def resolve(self, page: memoryview, value_start: int, declared_len: int) -> bytes | None:
        """Return the bytes to keep, or None to drop the record."""


class StrictFragments(FragmentStrategy):
    name = "strict"

    def resolve(self, page: memoryview, value_start: int, declared_len: int) -> bytes | None:
        return None


class TruncatingFragments(FragmentStrategy):
    """Keep whatever part of the value lies inside the page."""

    name = "truncate"

    def resolve(self, page: memoryview, value_start: int, declared_len: int) -> bytes | None:
        return bytes(page[value_start:value_start + declared_len])


_STRATEGIES = {
    StrictFragments.name: StrictFragments,
    TruncatingFragments.name: TruncatingFragments,
}


def strategy_for(name: str) -> FragmentStrategy:
    try:
        return _STRATEGIES[name]()
    except KeyError:
        raise ValueError(f"Unknown fragment strategy: {name!r}") from None
