"""
Trace: the knitting-ordered stitch sequence the compiler consumes.

Every entry is one visit of a stitch by the yarn.  Cast-on stitches are
visited twice (the second visit carries :data:`TWICE`), every other stitch
once.  Entries are grouped in passes of one direction, and in nodes (one
per course or short-row block) used for interactive selection.

Entry flags:

    INVERSE   pass runs right to left
    TWICE     second visit of a stitch
    START     first entry of a yarn run
    END       last entry of a yarn run
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from knitsketch.knitout.needle import LEFT, RIGHT, Needle
from knitsketch.schemas.issues import IssueLog
from knitsketch.stitch.sampler import StitchSampler

INVERSE = 0x0004
TWICE = 0x0008
START = 0x0010
END = 0x0020


class TraceError(ValueError):
    """The stitch graph cannot be knitted on the configured machine."""


class TraceState(str, Enum):
    IDLE = "idle"
    KNITTING = "knitting"
    TRANSITIONING = "transitioning"


@dataclass
class TracedStitch:
    stitch: int
    flags: int
    pass_index: int
    carriers: tuple[str, ...]
    needle: Needle

    @property
    def direction(self) -> int:
        return LEFT if self.flags & INVERSE else RIGHT

    @property
    def twice(self) -> bool:
        return bool(self.flags & TWICE)

    @property
    def start(self) -> bool:
        return bool(self.flags & START)

    @property
    def end(self) -> bool:
        return bool(self.flags & END)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stitch": self.stitch,
            "flags": self.flags,
            "pass": self.pass_index,
            "carriers": list(self.carriers),
            "needle": str(self.needle),
        }


@dataclass
class TracePass:
    """Consecutive entries ``[start, end)`` knitted in one direction."""

    index: int
    direction: int
    start: int
    end: int
    course: int
    carriers: tuple[str, ...]
    cast_on: bool = False
    left: int = 0
    right: int = 0

    def __len__(self) -> int:
        return self.end - self.start


@dataclass
class Trace:
    """Traced entries of one sampler.

    Attributes:
        sampler: The stitch graph being traced.
        entries: Visits in knitting order.
        passes: Entry ranges of constant direction.
        nodes: ``(start, end)`` entry intervals (inclusive), one per course
            or short-row block.
        needles: Needle of every stitch, indexed by stitch.
    """

    sampler: StitchSampler
    entries: list[TracedStitch] = field(default_factory=list)
    passes: list[TracePass] = field(default_factory=list)
    nodes: list[tuple[int, int]] = field(default_factory=list)
    needles: list[Optional[Needle]] = field(default_factory=list)
    issues: IssueLog = field(default_factory=IssueLog)
    _first: dict[int, int] = field(default_factory=dict)
    _second: dict[int, int] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> Trace:
        return cls(StitchSampler([], 1.0, 1.0))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[TracedStitch]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> TracedStitch:
        return self.entries[index]

    def add_entry(self, stitch: int, flags: int, pass_index: int, carriers: tuple[str, ...]) -> int:
        index = len(self.entries)
        needle = self.needles[stitch]
        if needle is None:
            raise TraceError(f"Stitch {stitch} has no needle")
        self.entries.append(TracedStitch(stitch, flags, pass_index, carriers, needle))
        (self._second if flags & TWICE else self._first)[stitch] = index
        return index

    def traced_index(self, stitch: int, twice: bool = False) -> int:
        """Entry of a stitch visit, ``-1`` if it was never traced."""
        return (self._second if twice else self._first).get(stitch, -1)

    def node_of(self, index: int) -> int:
        """Node containing entry *index*, ``-1`` if none."""
        k = bisect_right([start for start, _ in self.nodes], index) - 1
        if k >= 0 and self.nodes[k][0] <= index <= self.nodes[k][1]:
            return k
        return -1

    def yarn_runs(self) -> list[tuple[int, int]]:
        """``(start, end)`` entries of every yarn run."""
        runs, start = [], -1
        for i, entry in enumerate(self.entries):
            if entry.start:
                start = i
            if entry.end and start >= 0:
                runs.append((start, i))
                start = -1
        return runs

    @property
    def width(self) -> int:
        """Needle span of the whole trace."""
        if not self.entries:
            return 0
        offsets = [e.needle.offset for e in self.entries]
        return max(offsets) - min(offsets) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "passes": [
                {"start": p.start, "end": p.end, "direction": p.direction, "course": p.course,
                 "carriers": list(p.carriers), "range": [p.left, p.right], "castOn": p.cast_on}
                for p in self.passes
            ],
            "nodes": [list(n) for n in self.nodes],
            "issues": [i.to_dict() for i in self.issues],
        }
