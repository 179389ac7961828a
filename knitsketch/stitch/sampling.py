"""
Stitch sampling of a solved mesh.

Reduced regions are sampled one per step in time order.  A region spanning
``dt`` of time gets ``n = max(1, round(dt / courseDist))`` courses at the
times ``t0 + (k + 0.5) dt / n``; each course is the longest isoline chain of
the region at that time, cut into ``m = max(1, round(L / waleDist))``
stitches evenly spaced in arclength.  Closed courses start next to where the
previous course started.

Short rows fill the length a flat region is missing between its base course
(first, middle or second to last course by ``srAlignment``) and its last
course: the geodesic from a base stitch to the point at the same relative
position on the last course spans ``g / d`` rows for the course spacing
``d = dt / n``, while time only provides the rows in between.
Where the difference reaches ``ssThreshold`` a column of short-row stitches
is stacked on the stitch; columns of equal height form contiguous blocks,
each block one short-row course.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from knitsketch.config.params import Params
from knitsketch.machine.carriers import CarrierConfig
from knitsketch.mesh.geodesic import GeodesicGraph
from knitsketch.mesh.isoline import IsolineChain, isolines
from knitsketch.mesh.mesh import Mesh
from knitsketch.mesh.regions import ReducedRegion, RegionGraph
from knitsketch.schemas.issues import Issue

from .sampler import Course, StitchSampler

logger = logging.getLogger(__name__)


def seam_points(mesh: Mesh) -> list[tuple[int, np.ndarray]]:
    """Seam geometry of every layer as ``(layer, points)`` (global mm)."""
    out = []
    for layer in mesh.finest:
        pts = [layer.points[layer.segment_samples(seg)] for seg in sorted(mesh.seam_segments.get(layer.sketch_id, ()))]
        pts.extend(mesh.seam_curves.get(layer.sketch_id, []))
        if pts:
            out.append((layer.index, np.vstack(pts)))
    return out


def _pick_chain(chains: list[IsolineChain], tris: dict[int, set[int]]) -> Optional[IsolineChain]:
    """Longest chain running through the given triangles."""
    best = None
    for chain in chains:
        inside = sum(
            1 for layer, tri in zip(chain.layers, chain.tris)
            if tri >= 0 and int(tri) in tris.get(int(layer), ())
        )
        if inside * 2 < len(chain):
            continue
        if best is None or chain.length > best.length:
            best = chain
    return best


class Sampling:
    """Iterative stitch sampling: :meth:`step` samples one reduced region."""

    def __init__(self, mesh: Mesh, params: Params) -> None:
        self.mesh = mesh
        self.params = params
        self.sampler = StitchSampler(mesh.sketch_ids, params.wale_dist, params.course_dist)
        self.yarn_mask = CarrierConfig(params.carriers).default_yarn_mask
        self.graph: Optional[RegionGraph] = mesh.regions if mesh.valid else None
        self.order: list[ReducedRegion] = self.graph.order() if self.graph is not None else []
        self.index = 0
        # first and last course of every sampled reduced region
        self.bounds: dict[int, tuple[Course, Course]] = {}
        self._geodesic: Optional[GeodesicGraph] = None
        self._seams = seam_points(mesh) if mesh.valid and params.seam_stop == "sampling" else []

    @property
    def done(self) -> bool:
        return self.index >= len(self.order)

    @property
    def progress(self) -> float:
        return self.index / len(self.order) if self.order else 1.0

    def step(self) -> bool:
        if self.done:
            return True
        region = self.order[self.index]
        self.sample_region(region)
        self.index += 1
        return self.done

    def run(self) -> StitchSampler:
        while not self.step():
            pass
        return self.sampler

    @property
    def geodesic(self) -> GeodesicGraph:
        if self._geodesic is None:
            self._geodesic = GeodesicGraph(self.mesh.finest, self.mesh.finest_links)
        return self._geodesic

    # ── Courses ──────────────────────────────────────────────────────────────

    def sample_region(self, region: ReducedRegion) -> None:
        tris = self.graph.triangles_of(region)
        dt = region.t1 - region.t0
        if not math.isfinite(dt):
            logger.warning("Region %d has no finite time span", region.id)
            self.sampler.issues.add(Issue.error("Region has no valid time span", source="sampling"))
            return
        n = max(1, round(dt / self.params.course_dist))
        chains = []
        for k in range(n):
            tau = region.t0 + (k + 0.5) * dt / n
            chain = _pick_chain(isolines(self.mesh, tau), tris)
            if chain is None or chain.length <= 0:
                logger.warning("No isoline at t=%.3f in region %d", tau, region.id)
                continue
            chains.append(chain)
        if not chains:
            self.sampler.issues.add(Issue.warning("Region is too thin for a single course", source="sampling"))
            return
        courses: list[Course] = []
        lowers: list[list[int]] = []
        prev = self._entry_course(region)
        base = _base_course(self.params.sr_alignment, len(chains)) if not region.circular and len(chains) > 1 else -1
        for k, chain in enumerate(chains):
            course = self.lay_course(chain, region, courses[-1] if courses else prev)
            courses.append(course)
            if k == base:
                lowers.append(self.short_rows(course, chains[-1], region, len(chains) - 1 - base, dt / n))
            else:
                lowers.append(course.stitches)
        if prev is not None:
            self.sampler.connect_courses(prev.stitches, courses[0].stitches)
        for k in range(1, len(courses)):
            self.sampler.connect_courses(lowers[k - 1], courses[k].stitches)
        self.bounds[region.id] = (courses[0], courses[-1])
        logger.debug("Region %d: %d courses", region.id, len(courses))

    def _entry_course(self, region: ReducedRegion) -> Optional[Course]:
        """Last course of the single predecessor this region continues from."""
        if len(region.prev) != 1:
            return None
        pred = self.graph.reduced[region.prev[0]]
        if len(pred.next) != 1 or pred.circular != region.circular or pred.id not in self.bounds:
            return None
        return self.bounds[pred.id][1]

    def lay_course(self, chain: IsolineChain, region: ReducedRegion, prev: Optional[Course]) -> Course:
        if chain.closed:
            if prev is not None and prev.stitches:
                first = self.sampler[prev.stitches[0]]
                chain = chain.rotated(chain.nearest(first.layer, first.point))
            elif self._seams:
                chain = chain.rotated(self._seam_offset(chain))
        length = chain.length
        m = max(1, round(length / self.params.wale_dist))
        j = np.arange(m, dtype=float)
        positions = j * length / m if chain.closed else (j + 0.5) * length / m
        layers, pts = chain.sample(positions)
        local = np.zeros_like(pts)
        for layer in np.unique(layers):
            sel = layers == layer
            local[sel] = self.mesh.to_local(int(layer), pts[sel])
        ids = [self._add_stitch(int(layer), p, region, local=q) for layer, p, q in zip(layers, pts, local)]
        return self.sampler.add_course(ids, region.id, chain.closed, chain.time)

    def _add_stitch(
        self, layer: int, point: np.ndarray, region: ReducedRegion, short_row: bool = False, local=None,
    ) -> int:
        if local is None:
            local = self.mesh.to_local(layer, point)[0]
        return self.sampler.add_stitch(
            layer, (float(point[0]), float(point[1])), (float(local[0]), float(local[1])),
            -1, region.id, short_row=short_row, yarn_mask=self.yarn_mask,
        )

    def _seam_offset(self, chain: IsolineChain) -> float:
        """Arclength of the chain point nearest a seam."""
        best, offset = math.inf, 0.0
        cum = chain.cumulative()
        for layer, pts in self._seams:
            mask = chain.layers == layer
            if not np.any(mask):
                continue
            d = np.linalg.norm(chain.points[mask][:, None, :] - pts[None, :, :], axis=2).min(axis=1)
            k = int(np.argmin(d))
            if d[k] < best:
                best, offset = float(d[k]), float(cum[np.flatnonzero(mask)[k]])
        return offset

    # ── Short rows ───────────────────────────────────────────────────────────

    def short_rows(self, base: Course, top: IsolineChain, region: ReducedRegion, rows: int, spacing: float) -> list[int]:
        """Stack short-row columns on *base*; returns the column tops.

        *rows* is the number of course rows time provides between *base* and
        the top course, *spacing* the time between two courses.
        """
        m = len(base.stitches)
        rel = (np.arange(m) + 0.5) / m
        top_layers, top_pts = top.sample(rel * top.length)
        heights = np.zeros(m, dtype=int)
        for j, s in enumerate(base.stitches):
            stitch = self.sampler[s]
            g = self.geodesic.distance((stitch.layer, np.asarray(stitch.point)), (int(top_layers[j]), top_pts[j]))
            extra = g / spacing - rows
            if extra >= self.params.ss_threshold:
                heights[j] = max(1, math.floor(extra + 0.5))
        tops = list(base.stitches)
        if not heights.any():
            return tops
        for r in range(1, int(heights.max()) + 1):
            block: list[int] = []
            for j in range(m + 1):
                if j < m and heights[j] >= r:
                    origin = np.asarray(self.sampler[base.stitches[j]].point)
                    point = origin + r * (top_pts[j] - origin) / (rows + heights[j])
                    s = self._add_stitch(self.sampler[tops[j]].layer, point, region, short_row=True)
                    self.sampler.connect_wale(tops[j], s)
                    tops[j] = s
                    block.append(s)
                elif block:
                    self.sampler.add_course(block, region.id, False, base.time, short_row=True)
                    block = []
        logger.debug("Region %d: %d short-row stitches", region.id, int(heights.sum()))
        return tops


def _base_course(alignment: str, n: int) -> int:
    """Course short rows are stacked on, out of *n* courses."""
    if alignment == "middle":
        return (n - 1) // 2
    if alignment == "top":
        return max(0, n - 2)
    return 0


def sample_stitches(mesh: Mesh, params: Params) -> StitchSampler:
    """Sample every reduced region of a solved, segmented *mesh*."""
    return Sampling(mesh, params).run()
