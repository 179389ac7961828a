"""
Tracing: order the stitches of a sampler into passes and assign needles.

Courses are traced in sampler order, one per step.  A flat course is one
pass in the direction opposite to the previous pass; a circular course is a
front pass to the right followed by a back pass to the left.  A course
without previous wales starts a new yarn run and is traced twice (cast-on).

Needles are assigned before tracing:

* flat courses project their stitches on the course axis of their region
  (``floor(x / waleDist)`` stitch cells, strictly increasing along the
  course), short-row stitches keep the needle of the stitch below;
* circular courses put their first half on the front bed from left to
  right and their second half on the back bed from right to left;
* ``gauge = half`` doubles offsets and moves the back bed by one needle.

A wale moving its loop by more than ``maxRacking`` needles cannot be
transferred and raises :class:`TraceError`.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from knitsketch.config.params import Params
from knitsketch.knitout.needle import BACK, FRONT, LEFT, RIGHT, Needle
from knitsketch.machine.carriers import CarrierConfig
from knitsketch.schemas.issues import Issue
from knitsketch.stitch.sampler import Course, StitchSampler

from .trace import END, INVERSE, START, TWICE, Trace, TraceError, TracePass, TraceState

logger = logging.getLogger(__name__)


class Tracing:
    """Iterative tracer: :meth:`step` traces one course."""

    def __init__(
        self,
        sampler: StitchSampler,
        params: Params,
        seams: Optional[list[tuple[int, np.ndarray]]] = None,
    ) -> None:
        self.sampler = sampler
        self.params = params
        self.carriers = CarrierConfig(params.carriers)
        self.step_size = params.needle_step
        self.seams = seams if params.seam_stop in ("tracing", "nodes") else None
        self.trace = Trace(sampler)
        self.index = 0
        self.state = TraceState.IDLE
        self.direction = LEFT
        self.orders = self.course_orders()
        self.trace.needles = self.assign_needles()
        self.check_racking()
        self.check_width()
        self.check_carriers()

    @property
    def done(self) -> bool:
        return self.index >= len(self.sampler.courses)

    @property
    def progress(self) -> float:
        courses = len(self.sampler.courses)
        return self.index / courses if courses else 1.0

    def step(self) -> bool:
        if self.done:
            return True
        self.trace_course(self.sampler.courses[self.index])
        self.index += 1
        if self.done:
            self.end_run()
        return self.done

    def run(self) -> Trace:
        while not self.step():
            pass
        return self.trace

    # ── Course orders ────────────────────────────────────────────────────────

    def is_cast_on(self, course: Course) -> bool:
        return not course.short_row and all(not self.sampler[s].prev_wales for s in course.stitches)

    def course_orders(self) -> list[list[int]]:
        """Stitches of every course in tracing order (circular courses rotated)."""
        orders: list[list[int]] = []
        last_start: Optional[int] = None
        for course in self.sampler.courses:
            stitches = list(course.stitches)
            if course.closed:
                k = self._start_of(course, last_start)
                stitches = stitches[k:] + stitches[:k]
                last_start = stitches[0]
            orders.append(stitches)
        return orders

    def _start_of(self, course: Course, prev: Optional[int]) -> int:
        stitches = course.stitches
        if prev is not None:
            # continue the start of the closed course below
            for w in self.sampler[prev].next_wales:
                if w in stitches:
                    return stitches.index(w)
        if self.seams is None:
            return 0
        return self._nearest_seam(stitches)

    def _nearest_seam(self, stitches: list[int]) -> int:
        best, index = math.inf, 0
        for k, s in enumerate(stitches):
            stitch = self.sampler[s]
            for layer, pts in self.seams:
                if layer != stitch.layer:
                    continue
                d = float(np.min(np.linalg.norm(pts - np.asarray(stitch.point), axis=1)))
                if d < best:
                    best, index = d, k
        return index

    # ── Needles ──────────────────────────────────────────────────────────────

    def assign_needles(self) -> list[Optional[Needle]]:
        needles: list[Optional[Needle]] = [None] * len(self.sampler)
        axes: dict[int, np.ndarray] = {}
        step = self.step_size
        for course, order in zip(self.sampler.courses, self.orders):
            if course.short_row:
                for s in order:
                    below = self.sampler[s].prev_wales
                    needles[s] = needles[below[0]] if below and needles[below[0]] is not None else None
                continue
            if course.closed:
                m = len(order)
                h = (m + 1) // 2
                back = 1 if step == 2 else 0
                for j, s in enumerate(order):
                    if j < h:
                        needles[s] = Needle(FRONT, j * step)
                    else:
                        needles[s] = Needle(BACK, (m - 1 - j) * step + back)
                continue
            if course.region not in axes:
                axes[course.region] = self._axis(order)
            pts = np.array([self.sampler[s].point for s in order], dtype=float)
            cells = np.floor(pts @ axes[course.region] / self.sampler.wale_dist).astype(int)
            last = None
            for s, cell in zip(order, cells):
                cell = int(cell) if last is None else max(int(cell), last + 1)
                needles[s] = Needle(FRONT, cell * step)
                last = cell
        offsets = [n.offset for n in needles if n is not None]
        if offsets:
            shift = -min(offsets)
            if shift % 2 and step == 2:
                shift += 1
            needles = [n.shifted_by(shift) if n is not None else None for n in needles]
        return needles

    def _axis(self, order: list[int]) -> np.ndarray:
        """Unit vector along a flat course (right normal of the flow)."""
        if len(order) > 1:
            v = np.asarray(self.sampler[order[-1]].point) - np.asarray(self.sampler[order[0]].point)
            norm = float(np.linalg.norm(v))
            if norm > 1e-9:
                return v / norm
        return np.array([1.0, 0.0])

    def check_racking(self) -> None:
        needles = self.trace.needles
        limit = self.params.max_racking
        for stitch in self.sampler:
            for w in stitch.prev_wales:
                a, b = needles[w], needles[stitch.index]
                if a is None or b is None:
                    continue
                delta = abs(a.offset - b.offset)
                if delta > limit:
                    raise TraceError(
                        f"Wale {w} -> {stitch.index} moves its loop by {delta} needles (max racking {limit})"
                    )

    def check_width(self) -> None:
        offsets = [n.offset for n in self.trace.needles if n is not None]
        if offsets and max(offsets) + 1 > self.params.needle_count:
            self.trace.issues.add(Issue.warning(
                f"Trace needs {max(offsets) + 1} needles, the machine has {self.params.needle_count}",
                source="tracing",
            ))

    def check_carriers(self) -> None:
        count = 0
        for stitch in self.sampler:
            if stitch.prev_course < 0 or stitch.next_course < 0:
                continue
            mask = stitch.yarn_mask
            if mask != self.sampler[stitch.prev_course].yarn_mask and mask != self.sampler[stitch.next_course].yarn_mask:
                count += 1
        if count:
            self.trace.issues.add(Issue.warning(
                f"{count} stitches use carriers different from both course neighbours", source="tracing",
            ))

    # ── Passes ───────────────────────────────────────────────────────────────

    def carriers_of(self, stitch: int) -> tuple[str, ...]:
        mask = self.sampler[stitch].yarn_mask or self.carriers.default_yarn_mask
        return self.carriers.carriers_of_mask(mask)

    def trace_course(self, course: Course) -> None:
        order = self.orders[course.index]
        if not order:
            return
        cast_on = self.is_cast_on(course)
        if cast_on:
            self.end_run()
        node_start = len(self.trace)
        for visit in range(2 if cast_on else 1):
            if course.closed:
                h = (len(order) + 1) // 2
                self.add_pass(course, order[:h], RIGHT, visit, cast_on)
                if order[h:]:
                    self.add_pass(course, order[h:], LEFT, visit, cast_on)
            else:
                self.add_pass(course, order, -self.direction, visit, cast_on)
        self.trace.nodes.append((node_start, len(self.trace) - 1))

    def add_pass(self, course: Course, stitches: list[int], direction: int, visit: int, cast_on: bool) -> None:
        needles = self.trace.needles
        ordered = sorted(stitches, key=lambda s: needles[s].offset, reverse=direction == LEFT)
        flags = (INVERSE if direction == LEFT else 0) | (TWICE if visit else 0)
        start = len(self.trace)
        pass_index = len(self.trace.passes)
        for s in ordered:
            entry_flags = flags
            if self.state == TraceState.IDLE:
                entry_flags |= START
            elif self.state == TraceState.TRANSITIONING:
                logger.debug("Pass %d starts at stitch %d", pass_index, s)
            self.state = TraceState.KNITTING
            self.trace.add_entry(s, entry_flags, pass_index, self.carriers_of(s))
        offsets = [needles[s].offset for s in ordered]
        self.trace.passes.append(TracePass(
            pass_index, direction, start, len(self.trace), course.index,
            self.carriers_of(ordered[0]), cast_on, min(offsets), max(offsets),
        ))
        self.direction = direction
        self.state = TraceState.TRANSITIONING

    def end_run(self) -> None:
        if self.state == TraceState.IDLE or not self.trace.entries:
            return
        self.trace.entries[-1].flags |= END
        self.state = TraceState.IDLE


def trace_stitches(
    sampler: StitchSampler, params: Params, seams: Optional[list[tuple[int, np.ndarray]]] = None,
) -> Trace:
    """Trace every course of *sampler*."""
    return Tracing(sampler, params, seams).run()
