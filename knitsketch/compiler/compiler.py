"""
Compiler: turn a :class:`~knitsketch.trace.trace.Trace` into Knitout.

The trace is compiled one pass at a time.  Around every pass the compiler
emits, in order:

1. the yarn start of a run (``inhook`` or ``in``) on its first entry;
2. the ``x-stitch-number`` of the section (cast-on, regular);
3. the transfers moving the loops of previous wales to the needles of their
   next stitches (decreases, increases and shifts);
4. one instruction per traced entry, tagged with the entry index as
   metadata;
5. the ``releasehook`` of carriers brought in during the pass;
6. the cast-off chain and the yarn end (``outhook`` or ``out``) after the
   last entry of a run.

Loops held by the beds are tracked per needle with a
:class:`~knitsketch.machine.yarnstack.YarnStack` so that transfers and the
final drops only touch needles that actually hold yarn.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from knitsketch.config.params import Params
from knitsketch.knitout.needle import NONE, Needle
from knitsketch.knitout.store import Knitout
from knitsketch.machine.carriers import CARRIERS, CarrierConfig, CarrierType
from knitsketch.machine.yarnstack import BackAction, YarnStack, as_front_bits
from knitsketch.stitch.sampler import StitchCode
from knitsketch.trace.trace import Trace, TracedStitch, TracePass

logger = logging.getLogger(__name__)

CASTON_STITCH = 33
CASTOFF_STITCH = 24
MACHINE_GAUGE = "15"
POSITION = "Center"
TAIL_LENGTH = 5

# carriers of these types are brought in without the yarn inserting hook
_NO_HOOK = (CarrierType.ELASTIC, CarrierType.INLAY)


class Compiler:
    """Iterative Knitout generator: :meth:`step` compiles one pass."""

    def __init__(self, trace: Trace, params: Params, knitout: Optional[Knitout] = None) -> None:
        self.trace = trace
        self.params = params
        self.carriers = CarrierConfig(params.carriers)
        self.k = knitout if knitout is not None else Knitout()
        self.k.set_carriers(CARRIERS)
        self.k.set_header("Machine", params.machine)
        self.k.set_header("Gauge", MACHINE_GAUGE)
        self.k.set_position(POSITION)
        self.bed: dict[Needle, YarnStack] = {}
        self.active: list[str] = []
        self.racking = 0
        self.stitch_number: Optional[int] = None
        self.index = 0

    @property
    def done(self) -> bool:
        return self.index >= len(self.trace.passes)

    @property
    def progress(self) -> float:
        passes = len(self.trace.passes)
        return self.index / passes if passes else 1.0

    def step(self) -> bool:
        if self.done:
            return True
        self.compile_pass(self.trace.passes[self.index])
        self.index += 1
        return self.done

    def run(self) -> Knitout:
        while not self.step():
            pass
        return self.k

    # ── Passes ───────────────────────────────────────────────────────────────

    def compile_pass(self, tpass: TracePass) -> None:
        entries = self.trace.entries[tpass.start:tpass.end]
        if not entries:
            return
        hooked: list[str] = []
        if entries[0].start:
            self.active = []
        self.set_stitch_number(CASTON_STITCH if tpass.cast_on else self.params.stitch_number)
        if not tpass.cast_on:
            self.transfer_loops(entries)
        for position, entry in enumerate(entries):
            hooked.extend(self.bring_in(entry.carriers))
            self.compile_entry(tpass.start + position, entry, position, tpass.cast_on)
        for c in hooked:
            if self._uses_hook(c):
                self.k.releasehook([c])
        if entries[-1].end:
            self.end_run(tpass)

    def compile_entry(self, index: int, entry: TracedStitch, position: int, cast_on: bool) -> None:
        d, n, cs = entry.direction, entry.needle, list(entry.carriers)
        if cast_on:
            if entry.twice:
                self._knit(d, n, cs)
            elif self.params.cast_on_type == "tuck" and position % 2:
                return
            else:
                self._tuck(d, n, cs)
        else:
            program = self.trace.sampler[entry.stitch].program
            if program == StitchCode.TUCK:
                self._tuck(d, n, cs)
            elif program == StitchCode.MISS:
                self._miss(d, n, cs)
            elif program == StitchCode.SPLIT:
                self._split(d, n, cs)
            else:
                self._knit(d, n, cs)
        self.k.set_metadata(-1, index)

    def set_stitch_number(self, number: int) -> None:
        if number != self.stitch_number:
            self.k.x_stitch_number(number)
            self.stitch_number = number

    # ── Yarn ─────────────────────────────────────────────────────────────────

    def _uses_hook(self, carrier: str) -> bool:
        device = self.carriers.get_device([carrier])
        return device is None or device.type not in _NO_HOOK

    def bring_in(self, carriers: Sequence[str]) -> list[str]:
        """Bring in the carriers not yet active; returns those needing a release."""
        added = []
        for c in carriers:
            if c in self.active:
                continue
            if self._uses_hook(c):
                self.k.inhook([c])
            else:
                self.k.in_([c])
            self.active.append(c)
            added.append(c)
        return added

    def end_run(self, tpass: TracePass) -> None:
        last = self.trace.entries[tpass.end - 1]
        cs = list(last.carriers)
        chain = self._cast_off_needles(tpass.course)
        if self.params.cast_off_type == "pickup" and len(chain) > 1:
            self.pickup_cast_off(chain, cs, last.direction)
        for c in self.active:
            if self._uses_hook(c):
                self.k.outhook([c])
            else:
                self.k.out([c])
        self.active = []
        for n in sorted(self.bed, key=lambda n: (n.side, n.offset)):
            self.k.drop(n)
        self.bed.clear()

    def _cast_off_needles(self, course: int) -> list[tuple[Needle, int]]:
        """Needles of the last course with their entries, starting next to the carrier."""
        chain: list[tuple[Needle, int]] = []
        seen: set[Needle] = set()
        for tpass in reversed(self.trace.passes[:self.index + 1]):
            if tpass.course != course:
                break
            for i in range(tpass.end - 1, tpass.start - 1, -1):
                needle = self.trace.entries[i].needle
                if needle not in seen and needle in self.bed:
                    seen.add(needle)
                    chain.append((needle, i))
        return chain

    def pickup_cast_off(self, chain: list[tuple[Needle, int]], cs: list[str], direction: int) -> None:
        """Chain the last loops into each other, with a tuck picking up every loop."""
        self.set_stitch_number(CASTOFF_STITCH)
        needles = [n for n, _ in chain]
        tucks = 0
        d = -direction
        for i, (n, index) in enumerate(chain):
            nxt = needles[i + 1] if i + 1 < len(needles) else None
            if nxt is not None and n.dir_to(nxt) != NONE:
                d = n.dir_to(nxt)
            if i > 0:
                self._tuck(d, needles[i - 1], cs)
                tucks += 1
            self._knit(d, n, cs)
            self.k.set_metadata(-1, index)
            if nxt is not None:
                if nxt.side == n.side:
                    self._miss(-d, n, cs)
                self.move_loop(n, nxt)
        last = needles[-1]
        for i in range(TAIL_LENGTH):
            self._knit(-d if i % 2 == 0 else d, last, cs)
        logger.debug("Cast off %d needles with %d pickup tucks", len(chain), tucks)

    # ── Transfers ────────────────────────────────────────────────────────────

    def loop_moves(self, entries: list[TracedStitch]) -> dict[Needle, Needle]:
        """Source to target needle of every loop that must move before a pass."""
        sampler, needles = self.trace.sampler, self.trace.needles
        moves: dict[Needle, Needle] = {}
        for entry in entries:
            stitch = sampler[entry.stitch]
            for w in stitch.prev_wales:
                src = needles[w]
                if src is None or src == entry.needle or src not in self.bed or src in moves:
                    continue
                nexts = [needles[s] for s in sampler[w].next_wales]
                if src in nexts or sampler[w].next_wales[0] != entry.stitch:
                    continue
                moves[src] = entry.needle
        return moves

    def transfer_loops(self, entries: list[TracedStitch]) -> None:
        moves = self.loop_moves(entries)
        if not moves:
            return
        held: dict[Needle, Needle] = {}
        self.set_racking(0)
        for src in moves:
            other = src.other_side()
            self.xfer(src, other)
            held[other] = moves[src]
        by_racking: dict[int, list[tuple[Needle, Needle]]] = {}
        for other, dst in held.items():
            by_racking.setdefault(other.racking_to(dst), []).append((other, dst))
        for racking in sorted(by_racking):
            self.set_racking(racking)
            for other, dst in by_racking[racking]:
                self.xfer(other, dst)
        self.set_racking(0)

    def move_loop(self, src: Needle, dst: Needle) -> None:
        """Move one loop to any needle, through the other bed if needed."""
        if src.side == dst.side:
            other = src.other_side()
            self.set_racking(0)
            self.xfer(src, other)
            src = other
        self.set_racking(src.racking_to(dst))
        self.xfer(src, dst)
        self.set_racking(0)

    def set_racking(self, racking: int) -> None:
        if racking != self.racking:
            self.k.rack(racking)
            self.racking = racking

    def xfer(self, src: Needle, dst: Needle) -> None:
        self.k.xfer(src, dst)
        stack = self.bed.pop(src, None)
        if stack is None:
            return
        if dst in self.bed:
            self.bed[dst].set_front_yarns(stack.front_yarns(), miss_to_back=False)
        else:
            self.bed[dst] = stack

    # ── Stitch instructions ──────────────────────────────────────────────────

    def _knit(self, d: int, n: Needle, cs: list[str]) -> None:
        self.k.knit(d, n, cs)
        self.bed[n] = YarnStack(as_front_bits(cs))

    def _tuck(self, d: int, n: Needle, cs: list[str]) -> None:
        self.k.tuck(d, n, cs)
        self.bed.setdefault(n, YarnStack()).set_front_yarns(cs, miss_to_back=False)

    def _miss(self, d: int, n: Needle, cs: list[str]) -> None:
        self.k.miss(d, n, cs)
        if n in self.bed:
            self.bed[n].set_back_yarns(cs, BackAction.MISS)

    def _split(self, d: int, n: Needle, cs: list[str]) -> None:
        other = n.other_side()
        self.k.split(d, n, other, cs)
        stack = self.bed.pop(n, None)
        if stack is not None:
            self.bed.setdefault(other, YarnStack()).set_front_yarns(stack.front_yarns(), miss_to_back=False)
        self.bed[n] = YarnStack(as_front_bits(cs))


def compile_trace(trace: Trace, params: Params) -> Knitout:
    """Compile a whole trace into a new Knitout program."""
    return Compiler(trace, params).run()

