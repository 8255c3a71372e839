"""
Integer width strategy.

The container stores offsets, sizes and addresses as 32-bit or 64-bit
little-endian words. One WordSize value is picked per parse and threaded
through every decode instead of duplicating readers per bitness.
"""

from __future__ import annotations

import struct


class WordSize:
    """Little-endian unsigned word of a fixed width."""

    def __init__(self, bits: int) -> None:
        if bits not in (32, 64):
            raise ValueError(f"Unsupported word width: {bits}")
        self.bits = bits
        self.size = bits // 8
        self._struct = struct.Struct("<I" if bits == 32 else "<Q")
        self.max = (1 << bits) - 1

    def unpack_from(self, buf, offset: int = 0) -> int:
        return self._struct.unpack_from(buf, offset)[0]

    def pack(self, value: int) -> bytes:
        return self._struct.pack(value)

    def unpack_array(self, buf, offset: int, count: int) -> tuple[int, ...]:
        return struct.unpack_from(f"<{count}{self._struct.format[-1]}", buf, offset)

    def __repr__(self) -> str:
        return f"WordSize({self.bits})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, WordSize) and other.bits == self.bits

    def __hash__(self) -> int:
        return hash(self.bits)


WORD32 = WordSize(32)
WORD64 = WordSize(64)


def word_for_bitness(bitness: int) -> WordSize:
    if bitness == 32:
        return WORD32
    if bitness == 64:
        return WORD64
    raise ValueError(f"Bitness must be 32 or 64, got {bitness!r}")
