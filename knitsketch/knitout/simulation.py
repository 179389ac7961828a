"""
Machine simulation of a Knitout program.

simulate() replays every instruction of a :class:`Knitout` on a model of the
needle beds and yarn carriers and reports what a machine would refuse or
what would most likely ruin the fabric.  It returns a SimulationResult rather
than raising so that every problem of a program is reported at once.

Errors (the machine cannot run the instruction):
  - a carrier used by ``knit``/``tuck``/``split``/``miss`` that is not in;
  - ``in``/``inhook`` of a carrier already in, ``out``/``outhook`` or
    ``releasehook`` of a carrier that is not in (or not on the hook);
  - ``rack`` beyond the machine range or off the quarter-pitch grid;
  - ``xfer``/``split`` between needles of the same bed, at a fractional
    racking, or between needles the racking does not align.

Warnings (legal, but the yarn is probably lost):
  - ``knit`` on an empty needle and ``xfer``/``drop`` of an empty needle;
  - carriers still in, or loops still on the beds, at the end.

Loops are identified by the index of the instruction that formed them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from knitsketch.schemas.issues import Issue, IssueLog

from .needle import NONE, Needle
from .store import (
    AMISS,
    DROP,
    IN,
    INHOOK,
    KNIT,
    MISS,
    OUT,
    OUTHOOK,
    PRESSER_OFF,
    RACK,
    RELEASEHOOK,
    SPLIT,
    STITCH,
    TUCK,
    X_PRESSER_MODE,
    X_SPEED_NUMBER,
    X_STITCH_NUMBER,
    XFER,
    Entry,
    Knitout,
    KnitoutStream,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RACKING = 4
RACKING_STEP = 0.25


@dataclass
class CarrierState:
    """A yarn carrier that is in.

    Attributes:
        name: Carrier name from the ``Carriers`` header.
        hooked: True between ``inhook`` and ``releasehook``.
        needle: Needle of the last loop or miss made with the carrier.
        direction: Direction of that last operation.
    """

    name: str
    hooked: bool = False
    needle: Optional[Needle] = None
    direction: int = NONE


@dataclass
class MachineState:
    """Beds, racking, carriers and settings after some instructions."""

    beds: dict[Needle, list[int]] = field(default_factory=dict)
    carriers: dict[str, CarrierState] = field(default_factory=dict)
    racking: float = 0.0
    stitch_number: Optional[int] = None
    speed_number: Optional[int] = None
    presser_mode: int = PRESSER_OFF

    def loops(self, needle: Needle) -> list[int]:
        return self.beds.get(needle, [])

    def is_empty(self, needle: Optional[Needle] = None) -> bool:
        if needle is None:
            return not self.beds
        return needle not in self.beds

    def loop_count(self) -> int:
        return sum(len(loops) for loops in self.beds.values())

    # ── Loop updates ─────────────────────────────────────────────────────────

    def knit(self, needle: Needle, loop: int) -> list[int]:
        """Pull a new loop through the loops of *needle*; returns the old loops."""
        old = self.beds.pop(needle, [])
        self.beds[needle] = [loop]
        return old

    def tuck(self, needle: Needle, loops: Sequence[int]) -> None:
        if loops:
            self.beds.setdefault(needle, []).extend(loops)

    def drop(self, needle: Needle) -> list[int]:
        return self.beds.pop(needle, [])


@dataclass(frozen=True)
class SimulationResult:
    """Final machine state and the problems met on the way."""

    state: MachineState
    issues: IssueLog

    @property
    def ok(self) -> bool:
        return not self.issues.has_errors()


class Simulation:
    """Instruction-by-instruction replay of a Knitout program.

    Use :meth:`run` for a complete program, or :meth:`listen` to follow a
    :class:`KnitoutStream` while it is being written.
    """

    def __init__(self, max_racking: int = DEFAULT_MAX_RACKING) -> None:
        self.max_racking = max_racking
        self.state = MachineState()
        self.issues = IssueLog()
        self.index = 0

    def run(self, knitout: Knitout) -> SimulationResult:
        for entry in knitout.entries():
            self.consume(entry)
        return self.finish()

    def listen(self, stream: KnitoutStream) -> None:
        """Consume every instruction *stream* commits from now on."""
        stream.listen(lambda _, entry: self.consume(entry))

    def finish(self) -> SimulationResult:
        state = self.state
        for name in state.carriers:
            self._warn(f"Carrier {name} is still in at the end of the program")
        if not state.is_empty():
            self._warn(f"{state.loop_count()} loops are left on the beds at the end of the program")
        logger.debug("Simulated %d instructions: %d issues", self.index, len(self.issues))
        return SimulationResult(state, self.issues)

    # ── Instructions ─────────────────────────────────────────────────────────

    def consume(self, entry: Entry) -> None:
        opcode, *args = entry
        handler = _HANDLERS.get(opcode)
        if handler is not None:
            handler(self, *args)
        self.index += 1

    def _in(self, cs: list[str], hook: bool = False) -> None:
        for c in cs:
            if c in self.state.carriers:
                self._error(f"Carrier {c} is already in")
                continue
            self.state.carriers[c] = CarrierState(c, hooked=hook)

    def _inhook(self, cs: list[str]) -> None:
        self._in(cs, hook=True)

    def _releasehook(self, cs: list[str]) -> None:
        for c in cs:
            carrier = self.state.carriers.get(c)
            if carrier is None or not carrier.hooked:
                self._error(f"Carrier {c} is not on the yarn inserting hook")
                continue
            carrier.hooked = False

    def _out(self, cs: list[str]) -> None:
        for c in cs:
            if self.state.carriers.pop(c, None) is None:
                self._error(f"Carrier {c} is not in")

    def _rack(self, racking: float) -> None:
        racking = float(racking)
        if abs(racking) > self.max_racking:
            self._error(f"Racking {racking:g} is beyond the machine range of {self.max_racking}")
        elif racking / RACKING_STEP != round(racking / RACKING_STEP):
            self._error(f"Racking {racking:g} is not a multiple of {RACKING_STEP:g}")
        self.state.racking = racking

    def _knit(self, d: int, n: Needle, cs: list[str]) -> None:
        if not self._check_carriers(cs):
            return
        if not cs:
            self.state.drop(n)
            return
        if self.state.is_empty(n):
            self._warn(f"Knit on the empty needle {n}")
        self.state.knit(n, self.index)
        self._move_carriers(cs, n, d)

    def _tuck(self, d: int, n: Needle, cs: list[str]) -> None:
        if not self._check_carriers(cs) or not cs:
            return
        self.state.tuck(n, [self.index])
        self._move_carriers(cs, n, d)

    def _split(self, d: int, n: Needle, n2: Needle, cs: list[str]) -> None:
        if not self._check_carriers(cs) or not self._check_aligned(n, n2, "Split"):
            return
        old = self.state.drop(n) if not cs else self.state.knit(n, self.index)
        self.state.tuck(n2, old)
        self._move_carriers(cs, n, d)

    def _miss(self, d: int, n: Needle, cs: list[str]) -> None:
        if self._check_carriers(cs):
            self._move_carriers(cs, n, d)

    def _drop(self, n: Needle) -> None:
        if not self.state.drop(n):
            self._warn(f"Drop of the empty needle {n}")

    def _xfer(self, n: Needle, n2: Needle) -> None:
        if not self._check_aligned(n, n2, "Transfer"):
            return
        loops = self.state.drop(n)
        if not loops:
            self._warn(f"Transfer from the empty needle {n}")
            return
        self.state.tuck(n2, loops)
        for carrier in self.state.carriers.values():
            if carrier.needle == n:
                carrier.needle = n2

    def _stitch_number(self, number: int) -> None:
        self.state.stitch_number = int(number)

    def _speed_number(self, number: int) -> None:
        self.state.speed_number = int(number)

    def _presser_mode(self, mode: int) -> None:
        self.state.presser_mode = int(mode)

    def _ignore(self, *args: Any) -> None:
        pass

    # ── Checks ───────────────────────────────────────────────────────────────

    def _check_carriers(self, cs: list[str]) -> bool:
        missing = [c for c in cs if c not in self.state.carriers]
        if missing:
            self._error(f"Carrier {' '.join(missing)} is not in")
        return not missing

    def _check_aligned(self, n: Needle, n2: Needle, what: str) -> bool:
        racking = self.state.racking
        if n.in_front() == n2.in_front():
            self._error(f"{what} between {n} and {n2} on the same bed")
            return False
        if racking != int(racking):
            self._error(f"{what} from {n} to {n2} at the fractional racking {racking:g}")
            return False
        if n.front_offset(int(racking)) != n2.front_offset(int(racking)):
            self._error(f"{what} from {n} to {n2} does not match the racking {racking:g}")
            return False
        return True

    def _move_carriers(self, cs: list[str], n: Needle, d: int) -> None:
        for c in cs:
            carrier = self.state.carriers[c]
            carrier.needle = n
            carrier.direction = d

    def _error(self, message: str) -> None:
        self.issues.add(Issue.error(f"{message} (instruction {self.index})", source="simulation"))

    def _warn(self, message: str) -> None:
        self.issues.add(Issue.warning(f"{message} (instruction {self.index})", source="simulation"))


_HANDLERS = {
    IN: Simulation._in,
    INHOOK: Simulation._inhook,
    RELEASEHOOK: Simulation._releasehook,
    OUT: Simulation._out,
    OUTHOOK: Simulation._out,
    RACK: Simulation._rack,
    KNIT: Simulation._knit,
    TUCK: Simulation._tuck,
    SPLIT: Simulation._split,
    MISS: Simulation._miss,
    DROP: Simulation._drop,
    AMISS: Simulation._ignore,
    XFER: Simulation._xfer,
    STITCH: Simulation._ignore,
    X_STITCH_NUMBER: Simulation._stitch_number,
    X_SPEED_NUMBER: Simulation._speed_number,
    X_PRESSER_MODE: Simulation._presser_mode,
}


def simulate(knitout: Knitout, max_racking: int = DEFAULT_MAX_RACKING) -> SimulationResult:
    """Replay *knitout* on an empty machine and report its problems."""
    return Simulation(max_racking).run(knitout)
