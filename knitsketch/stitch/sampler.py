"""
StitchSampler: the stitch graph laid over a solved mesh.

Every stitch belongs to one course (a row of stitches along an isoline) or
to one short-row block.  Stitches are connected

* along their course to the previous and next stitch (closed courses wrap),
* across courses by *wales*: at most two previous and two next wales.

The stitch type is derived from the wale connectivity:

    caston    no previous wale
    castoff   no next wale
    decrease  two previous wales (two loops knit into one)
    increase  two next wales (one loop feeds two stitches)
    regular   everything else

Positions are kept twice: ``point`` in the global mm frame of the mesh and
``position`` in the sketch-local px frame of the stitch's layer.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from knitsketch.schemas.issues import IssueLog, check

MAX_WALES = 2
NO_STITCH = -1
YARN_MASK_ALL = 0x3FF


class StitchType(str, Enum):
    REGULAR = "regular"
    CASTON = "caston"
    CASTOFF = "castoff"
    DECREASE = "decrease"
    INCREASE = "increase"


IRREGULAR_TYPES = frozenset({StitchType.DECREASE, StitchType.INCREASE})


class StitchCode(str, Enum):
    """Program applied to a stitch by sketch layers."""

    KNIT = "knit"
    TUCK = "tuck"
    MISS = "miss"
    SPLIT = "split"


@dataclass
class Stitch:
    index: int
    layer: int
    point: tuple[float, float]
    position: tuple[float, float]
    course: int
    region: int
    short_row: bool = False
    prev_course: int = NO_STITCH
    next_course: int = NO_STITCH
    prev_wales: list[int] = field(default_factory=list)
    next_wales: list[int] = field(default_factory=list)
    yarn_mask: int = 0
    program: StitchCode = StitchCode.KNIT

    def to_dict(self) -> dict[str, Any]:
        return {
            "layer": self.layer,
            "position": list(self.position),
            "course": self.course,
            "region": self.region,
            "shortRow": self.short_row,
            "prevCourse": self.prev_course,
            "nextCourse": self.next_course,
            "prevWales": list(self.prev_wales),
            "nextWales": list(self.next_wales),
            "yarnMask": self.yarn_mask,
            "program": self.program.value,
        }


@dataclass
class Course:
    """A row of stitches (or a short-row block) in knitting order."""

    index: int
    stitches: list[int]
    region: int
    closed: bool
    time: float
    short_row: bool = False

    def __len__(self) -> int:
        return len(self.stitches)


class StitchSampler:
    """Stitches, courses and short-row blocks of one mesh.

    Attributes:
        sketch_ids: Sketch of every mesh layer (stitch ``layer`` indexes it).
        wale_dist / course_dist: Target stitch spacing in mm.
        stitches: Every stitch, indexed by :attr:`Stitch.index`.
        courses: Courses and short-row blocks in sampling order.
        issues: Problems found while sampling.
    """

    def __init__(self, sketch_ids: list[int], wale_dist: float, course_dist: float) -> None:
        self.sketch_ids = list(sketch_ids)
        self.wale_dist = wale_dist
        self.course_dist = course_dist
        self.stitches: list[Stitch] = []
        self.courses: list[Course] = []
        self.issues = IssueLog()

    def __len__(self) -> int:
        return len(self.stitches)

    def __iter__(self) -> Iterator[Stitch]:
        return iter(self.stitches)

    def __getitem__(self, index: int) -> Stitch:
        return self.stitches[index]

    # ── Construction ─────────────────────────────────────────────────────────

    def add_stitch(
        self,
        layer: int,
        point: tuple[float, float],
        position: tuple[float, float],
        course: int,
        region: int,
        short_row: bool = False,
        yarn_mask: int = 0,
    ) -> int:
        index = len(self.stitches)
        self.stitches.append(Stitch(index, layer, point, position, course, region, short_row, yarn_mask=yarn_mask))
        return index

    def add_course(self, stitches: list[int], region: int, closed: bool, time: float, short_row: bool = False) -> Course:
        """Register a course over existing *stitches* and chain them."""
        course = Course(len(self.courses), list(stitches), region, closed and len(stitches) > 1, time, short_row)
        for s in stitches:
            self.stitches[s].course = course.index
            self.stitches[s].short_row = short_row
        for a, b in zip(stitches[:-1], stitches[1:]):
            self.stitches[a].next_course = b
            self.stitches[b].prev_course = a
        if course.closed:
            self.stitches[stitches[-1]].next_course = stitches[0]
            self.stitches[stitches[0]].prev_course = stitches[-1]
        self.courses.append(course)
        return course

    def connect_wale(self, lower: int, upper: int) -> None:
        a, b = self.stitches[lower], self.stitches[upper]
        if upper in a.next_wales:
            return
        check(len(a.next_wales) < MAX_WALES, f"Stitch {lower} already has {MAX_WALES} next wales")
        check(len(b.prev_wales) < MAX_WALES, f"Stitch {upper} already has {MAX_WALES} previous wales")
        a.next_wales.append(upper)
        b.prev_wales.append(lower)

    def connect_courses(self, lower: list[int], upper: list[int]) -> None:
        """Connect two consecutive rows by normalised position.

        Rows of different lengths are matched monotonically so that no
        stitch gets more than two wales on a side; when one row is more than
        twice as long as the other, its stitches beyond the matched middle
        part stay unconnected (cast on or cast off).
        """
        na, nb = len(lower), len(upper)
        if not na or not nb:
            return
        if na >= nb:
            used = min(na, MAX_WALES * nb)
            start = (na - used) // 2
            for i in range(used):
                j = min(nb - 1, (2 * i + 1) * nb // (2 * used))
                self.connect_wale(lower[start + i], upper[j])
        else:
            used = min(nb, MAX_WALES * na)
            start = (nb - used) // 2
            for j in range(used):
                i = min(na - 1, (2 * j + 1) * na // (2 * used))
                self.connect_wale(lower[i], upper[start + j])

    # ── Queries ──────────────────────────────────────────────────────────────

    def stitch_type(self, index: int) -> StitchType:
        s = self.stitches[index]
        if not s.prev_wales:
            return StitchType.CASTON
        if not s.next_wales:
            return StitchType.CASTOFF
        if len(s.prev_wales) > 1:
            return StitchType.DECREASE
        if len(s.next_wales) > 1:
            return StitchType.INCREASE
        return StitchType.REGULAR

    def type_counts(self) -> Counter:
        return Counter(self.stitch_type(i) for i in range(len(self.stitches)))

    def irregular_count(self) -> int:
        counts = self.type_counts()
        return sum(counts[t] for t in IRREGULAR_TYPES)

    def course_of(self, index: int) -> Course:
        return self.courses[self.stitches[index].course]

    def short_row_courses(self) -> list[Course]:
        return [c for c in self.courses if c.short_row]

    def check(self) -> list[str]:
        """Violations of the stitch graph invariants (empty when consistent)."""
        errors = []
        for s in self.stitches:
            if len(s.prev_wales) > MAX_WALES or len(s.next_wales) > MAX_WALES:
                errors.append(f"Stitch {s.index} has more than {MAX_WALES} wales on one side")
            for w in s.next_wales:
                if s.index not in self.stitches[w].prev_wales:
                    errors.append(f"Wale {s.index} -> {w} is missing its back reference")
            for w in s.prev_wales:
                if s.index not in self.stitches[w].next_wales:
                    errors.append(f"Wale {w} -> {s.index} is missing its forward reference")
        for course in self.courses:
            ids = course.stitches
            for k, s in enumerate(ids):
                stitch = self.stitches[s]
                interior = course.closed or 0 < k < len(ids) - 1
                if interior and (stitch.prev_course == NO_STITCH or stitch.next_course == NO_STITCH):
                    errors.append(f"Stitch {s} of course {course.index} lacks a course neighbour")
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Snapshot sent back to the host."""
        return {
            "sketches": list(self.sketch_ids),
            "waleDist": self.wale_dist,
            "courseDist": self.course_dist,
            "stitches": [s.to_dict() for s in self.stitches],
            "courses": [
                {"stitches": c.stitches, "region": c.region, "closed": c.closed, "shortRow": c.short_row}
                for c in self.courses
            ],
            "issues": [i.to_dict() for i in self.issues],
        }
