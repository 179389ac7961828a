"""
Yarn stack: front/back yarn occupancy of a single needle.

Carriers are numbered 1 to 10.  The *front* mask has one bit per carrier
(bit ``i - 1`` for carrier ``i``) and marks yarns held by the needle's loop.
The *back* mask has two bits per carrier encoding the back action of that
carrier (none, miss, tuck or knit).  The logical yarn set is every carrier
with either a front bit or a non-zero back action.

Every mutation ends with :meth:`YarnStack.commit`, which forwards the stack to
an optional callback so an owning bed state can write the bits through.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Callable, Iterable, Optional, Sequence, Union

NUM_CARRIERS: int = 10

FYARN_BITS: tuple[int, ...] = tuple(1 << i for i in range(NUM_CARRIERS))
BYARN_BITS: tuple[int, ...] = tuple(3 << (2 * i) for i in range(NUM_CARRIERS))
FYARN_FULL_MASK: int = sum(FYARN_BITS)
BYARN_FULL_MASK: int = sum(BYARN_BITS)


class BackAction(IntEnum):
    NONE = 0
    MISS = 1
    TUCK = 2
    KNIT = 3


YarnsArg = Union[int, str, Iterable[Union[int, str]]]
MasksArg = Union[int, str, BackAction, Sequence[Union[int, str, BackAction]]]


def as_yarn_list(yarns: YarnsArg, bits: Sequence[int] = FYARN_BITS) -> list[int]:
    """Carrier numbers from a bitmask or an iterable of carrier ids."""
    if isinstance(yarns, str):
        yarns = int(yarns)
    if isinstance(yarns, int):
        return [i + 1 for i, msk in enumerate(bits) if msk & yarns]
    return [int(y) for y in yarns]


def as_back_action(mask: Union[int, str, BackAction]) -> BackAction:
    if isinstance(mask, str):
        try:
            return BackAction[mask.upper()]
        except KeyError:
            raise ValueError(f"Unsupported back yarn action {mask!r}") from None
    return BackAction(mask)


def as_front_bits(yarns: YarnsArg) -> int:
    """Front bitmask of *yarns*."""
    bits = 0
    for yarn in as_yarn_list(yarns):
        if not 1 <= yarn <= NUM_CARRIERS:
            raise ValueError(f"Invalid carrier number {yarn}")
        bits |= 1 << (yarn - 1)
    return bits


def as_back_bits(yarns: YarnsArg, masks: MasksArg = BackAction.MISS) -> int:
    """Back bitmask of *yarns*, each with its action from *masks*."""
    yarn_list = as_yarn_list(yarns)
    if isinstance(masks, (list, tuple)):
        if len(masks) != len(yarn_list):
            raise ValueError("One back action is required per yarn")
        actions = [as_back_action(m) for m in masks]
    else:
        actions = [as_back_action(masks)] * len(yarn_list)
    bits = 0
    for yarn, action in zip(yarn_list, actions):
        if not 1 <= yarn <= NUM_CARRIERS:
            raise ValueError(f"Invalid carrier number {yarn}")
        bits |= int(action) << (2 * (yarn - 1))
    return bits


class YarnStack:
    """Front/back yarn bits of one needle with write-through on commit."""

    def __init__(
        self,
        fyarns: int = 0,
        byarns: int = 0,
        apply_func: Optional[Callable[[YarnStack], None]] = None,
    ) -> None:
        if fyarns | FYARN_FULL_MASK != FYARN_FULL_MASK:
            raise ValueError(f"Invalid front yarn bits {fyarns:#x}")
        if byarns | BYARN_FULL_MASK != BYARN_FULL_MASK:
            raise ValueError(f"Invalid back yarn bits {byarns:#x}")
        self.fyarns = fyarns
        self.byarns = byarns
        self.yarns: set[int] = set()
        self.apply_func = apply_func
        self.recompute_set()

    @property
    def yarn_mask(self) -> int:
        return as_front_bits(sorted(self.yarns))

    def recompute_set(self) -> YarnStack:
        self.yarns.clear()
        for i, (fbit, bbit) in enumerate(zip(FYARN_BITS, BYARN_BITS)):
            if self.fyarns & fbit or self.byarns & bbit:
                self.yarns.add(i + 1)
        return self

    def commit(self) -> None:
        if self.apply_func is not None:
            self.apply_func(self)

    # ── Mutations ─────────────────────────────────────────────────────────────

    def reset_front_yarns(self, yarns: YarnsArg, skip_commit: bool = False) -> YarnStack:
        self.fyarns = as_front_bits(yarns)
        self.recompute_set()
        if not skip_commit:
            self.commit()
        return self

    def reset_back_yarns(
        self, yarns: YarnsArg, masks: MasksArg = BackAction.MISS, skip_commit: bool = False
    ) -> YarnStack:
        self.byarns = as_back_bits(yarns, masks)
        self.recompute_set()
        if not skip_commit:
            self.commit()
        return self

    def set_front_yarns(self, yarns: YarnsArg, miss_to_back: bool = True) -> YarnStack:
        """Put *yarns* in front.

        Yarns currently in front but not in *yarns* move to the back as a
        miss unless *miss_to_back* is false.
        """
        bits = as_front_bits(yarns)
        for i, (fbit, bbit) in enumerate(zip(FYARN_BITS, BYARN_BITS)):
            if fbit & bits:
                self.fyarns |= fbit
                self.byarns &= ~bbit
                self.yarns.add(i + 1)
            elif miss_to_back and self.fyarns & fbit:
                self.fyarns &= ~fbit
                self.byarns = (self.byarns & ~bbit) | (int(BackAction.MISS) << (2 * i))
        self.commit()
        return self

    def set_back_yarns(self, yarns: YarnsArg, masks: MasksArg = BackAction.MISS) -> YarnStack:
        """Set the back action of *yarns*; a miss never overrides a front yarn."""
        bits = as_back_bits(yarns, masks)
        for i, (fbit, bbit) in enumerate(zip(FYARN_BITS, BYARN_BITS)):
            action = (bits & bbit) >> (2 * i)
            if action == BackAction.NONE:
                continue
            if action == BackAction.MISS and self.fyarns & fbit:
                continue
            self.byarns = (self.byarns & ~bbit) | (bits & bbit)
            self.yarns.add(i + 1)
        self.commit()
        return self

    def set_front_back_yarns(self, yarns: YarnsArg) -> YarnStack:
        """Put *yarns* both in front and as a back knit."""
        bits = as_front_bits(yarns)
        for i, (fbit, bbit) in enumerate(zip(FYARN_BITS, BYARN_BITS)):
            if fbit & bits:
                self.fyarns |= fbit
                self.byarns |= bbit
                self.yarns.add(i + 1)
        self.commit()
        return self

    def allocate_yarns(self, yarns: YarnsArg) -> YarnStack:
        """Add the yarns not yet present as back misses."""
        new_yarns = [y for y in as_yarn_list(yarns) if not self.has_yarn(y)]
        if new_yarns:
            self.set_back_yarns(new_yarns, BackAction.MISS)
        return self

    # ── Queries ───────────────────────────────────────────────────────────────

    def has_yarn(self, yarn: int = 0) -> bool:
        return yarn in self.yarns if yarn else bool(self.yarns)

    def has_every_yarn(self, yarns: YarnsArg) -> bool:
        return all(self.has_yarn(y) for y in as_yarn_list(yarns))

    def has_front_yarn(self, yarn: int = 0) -> bool:
        if yarn:
            return bool(self.fyarns & FYARN_BITS[yarn - 1])
        return self.fyarns != 0

    def has_back_yarn(self, yarn: int = 0) -> bool:
        if yarn:
            return bool(self.byarns & BYARN_BITS[yarn - 1])
        return self.byarns != 0

    def front_yarns(self) -> list[int]:
        return as_yarn_list(self.fyarns)

    def back_yarns(self) -> list[int]:
        return as_yarn_list(self.byarns, BYARN_BITS)

    def back_yarn_action(self, yarn: int) -> BackAction:
        """Back action of carrier number *yarn* (1-based)."""
        return BackAction((self.byarns >> (2 * (yarn - 1))) & 3)

    def __repr__(self) -> str:
        return f"YarnStack(fyarns={self.fyarns:#05x}, byarns={self.byarns:#07x})"
