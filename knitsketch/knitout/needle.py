"""
Needle locations on a V-bed machine.

A needle is a bed side (``f``, ``b`` or the slider beds ``fs``, ``bs``) and a
signed integer offset.  In the packed store a needle takes 32 bits: the two
low bits hold the side (bit 0 = back, bit 1 = slider) and the remaining bits
the offset, so ``b32 >> 2`` recovers negative offsets too.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType

FRONT = "f"
BACK = "b"
FRONT_SLIDER = "fs"
BACK_SLIDER = "bs"

ALL_SIDES: tuple[str, ...] = (FRONT_SLIDER, BACK_SLIDER, FRONT, BACK)

SIDE_MASK = 0x1
SLIDER_MASK = 0x2
OFFSET_SHIFT = 2

SIDE_BITS = MappingProxyType(
    {FRONT: 0x0, BACK: SIDE_MASK, FRONT_SLIDER: SLIDER_MASK, BACK_SLIDER: SIDE_MASK | SLIDER_MASK}
)
SIDE_FROM_BITS: tuple[str, ...] = (FRONT, BACK, FRONT_SLIDER, BACK_SLIDER)
OTHER_SIDE = MappingProxyType({FRONT: BACK, BACK: FRONT, FRONT_SLIDER: BACK_SLIDER, BACK_SLIDER: FRONT_SLIDER})

LEFT = -1
RIGHT = 1
NONE = 0

_NEEDLE_RE = re.compile(r"^(fs|bs|f|b)([+-]?\d+)$")


@dataclass(frozen=True)
class Needle:
    side: str
    offset: int

    def __post_init__(self) -> None:
        if self.side not in SIDE_BITS:
            raise ValueError(f"Invalid needle side {self.side!r}")

    @classmethod
    def parse(cls, text: str) -> Needle:
        """Parse ``f10``, ``bs-3`` or ``b+2``."""
        match = _NEEDLE_RE.match(text.strip())
        if match is None:
            raise ValueError(f"Invalid needle {text!r}")
        return cls(match.group(1), int(match.group(2)))

    def to_b32(self) -> int:
        return SIDE_BITS[self.side] | (self.offset << OFFSET_SHIFT)

    @classmethod
    def from_b32(cls, b32: int) -> Needle:
        return cls(SIDE_FROM_BITS[b32 & (SIDE_MASK | SLIDER_MASK)], b32 >> OFFSET_SHIFT)

    # ── Transformations ───────────────────────────────────────────────────────

    def shifted_by(self, shift: int) -> Needle:
        return Needle(self.side, self.offset + shift) if shift else self

    def shifted_to(self, offset: int) -> Needle:
        return Needle(self.side, offset)

    def to_hook(self) -> Needle:
        return Needle(self.side[0], self.offset)

    def to_slider(self) -> Needle:
        return Needle(self.side[0] + "s", self.offset)

    def other_side(self, racking: int = 0) -> Needle:
        """Needle facing this one on the other bed at *racking*."""
        shift = -racking if self.in_front() else racking
        return Needle(OTHER_SIDE[self.side], self.offset + shift)

    # ── Queries ───────────────────────────────────────────────────────────────

    def in_front(self) -> bool:
        return self.side in (FRONT, FRONT_SLIDER)

    def in_back(self) -> bool:
        return self.side in (BACK, BACK_SLIDER)

    def in_hook(self) -> bool:
        return self.side in (FRONT, BACK)

    def on_slider(self) -> bool:
        return self.side in (FRONT_SLIDER, BACK_SLIDER)

    def racking_to(self, other: Needle) -> int:
        """Racking (front minus back offset) aligning this needle with *other*."""
        if self.in_front() == other.in_front():
            raise ValueError("Racking only makes sense across beds")
        if self.in_front():
            return self.offset - other.offset
        return other.offset - self.offset

    def dir_to(self, other: Needle) -> int:
        if other.offset < self.offset:
            return LEFT
        if other.offset > self.offset:
            return RIGHT
        return NONE

    def front_offset(self, racking: int) -> int:
        return self.offset if self.in_front() else self.offset + racking

    def back_offset(self, racking: int) -> int:
        return self.offset if self.in_back() else self.offset - racking

    def __str__(self) -> str:
        return f"{self.side}{self.offset}"
