"""
Region segmentation of the time field.

The time range is cut at *critical times*: the global minimum and maximum
and the extrema of the time along every sketch border (sketch corners
where the border time turns back included).  Intervals longer than
``maxRegionDT`` are split (evenly with ``uniformRegionSplit``, greedily
otherwise) and cuts closer than ``minRegionDT`` are merged.

A region is a connected set of triangles (across links too) whose centroid
time falls in one interval.  Regions of consecutive intervals that touch
form the region graph; chains of single-successor regions of the same kind
(flat or circular) are coalesced into the reduced graph that the stitch
sampler walks.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np

from knitsketch.config.params import Params
from knitsketch.schemas.issues import Issue, IssueLog
from knitsketch.utilities.tolerance import TIME_TOL, TIME_UNIT_MM

from .isoline import isolines
from .layer import Layer
from .mesh import LinkPairs, Mesh

logger = logging.getLogger(__name__)


@dataclass
class Region:
    id: int
    interval: int
    t0: float
    t1: float
    triangles: dict[int, np.ndarray]
    prev: list[int] = field(default_factory=list)
    next: list[int] = field(default_factory=list)
    circular: bool = False
    center: tuple[float, float] = (0.0, 0.0)

    def contains(self, layer: int, tri: int) -> bool:
        tris = self.triangles.get(layer)
        return tris is not None and bool(np.any(tris == tri))


@dataclass
class ReducedRegion:
    """A chain of regions sampled as one block of courses."""

    id: int
    regions: list[int]
    t0: float
    t1: float
    circular: bool
    prev: list[int] = field(default_factory=list)
    next: list[int] = field(default_factory=list)


# ── Critical times ───────────────────────────────────────────────────────────


def _border_extrema(times: np.ndarray, tol: float) -> list[float]:
    """Times of the local extrema of a cyclic sequence (plateaus count once)."""
    runs: list[float] = []
    for t in times:
        if not runs or abs(t - runs[-1]) > tol:
            runs.append(float(t))
    if len(runs) > 1 and abs(runs[0] - runs[-1]) <= tol:
        runs.pop()
    if len(runs) < 3:
        return runs
    out = []
    for k, t in enumerate(runs):
        a, b = runs[k - 1], runs[(k + 1) % len(runs)]
        if (t < a and t < b) or (t > a and t > b):
            out.append(t)
    return out


def critical_times(layers: list[Layer], params: Params) -> list[float]:
    """Sorted interval boundaries of the time field."""
    tol = TIME_TOL * TIME_UNIT_MM
    times = np.concatenate([layer.time for layer in layers])
    tmin, tmax = float(times.min()), float(times.max())
    crit = {tmin, tmax}
    for layer in layers:
        crit.update(_border_extrema(layer.time[:layer.num_border], tol))
    return split_intervals(sorted(crit), params)


def split_intervals(crit: list[float], params: Params) -> list[float]:
    """Merge cuts closer than ``minRegionDT`` and split intervals above ``maxRegionDT``."""
    min_dt = params.min_region_dt * TIME_UNIT_MM
    max_dt = params.max_region_dt * TIME_UNIT_MM
    tmin, tmax = crit[0], crit[-1]
    kept = [tmin]
    for c in crit[1:]:
        if c - kept[-1] >= min_dt:
            kept.append(c)
    if kept[-1] != tmax:
        if len(kept) > 1 and tmax - kept[-1] < min_dt:
            kept[-1] = tmax
        else:
            kept.append(tmax)
    out = [kept[0]]
    for a, b in zip(kept[:-1], kept[1:]):
        span = b - a
        if span > max_dt * (1 + 1e-9):
            if params.uniform_region_split:
                parts = math.ceil(span / max_dt)
                out.extend(a + span * k / parts for k in range(1, parts))
            else:
                cut = a + max_dt
                while b - cut > min_dt:
                    out.append(cut)
                    cut += max_dt
        out.append(b)
    return out


# ── Region graph ─────────────────────────────────────────────────────────────


class RegionGraph:
    """Regions, their adjacency, and the reduced graph of a solved mesh."""

    def __init__(self, cuts: list[float]) -> None:
        self.cuts = cuts
        self.regions: list[Region] = []
        self.reduced: list[ReducedRegion] = []
        self.issues = IssueLog()
        self._tri_region: dict[int, np.ndarray] = {}
        self.owner: list[int] = []

    @classmethod
    def build(cls, mesh: Mesh, params: Params) -> RegionGraph:
        layers, links = mesh.finest, mesh.finest_links
        graph = cls(critical_times(layers, params))
        graph._segment(layers, links)
        graph._classify(mesh)
        graph._check(params)
        graph._reduce()
        logger.debug(
            "%d intervals, %d regions, %d reduced regions",
            len(graph.cuts) - 1, len(graph.regions), len(graph.reduced),
        )
        return graph

    @property
    def interval_count(self) -> int:
        return max(1, len(self.cuts) - 1)

    def interval_of(self, t: np.ndarray) -> np.ndarray:
        k = np.searchsorted(np.asarray(self.cuts), t, side="right") - 1
        return np.clip(k, 0, self.interval_count - 1)

    def region_of(self, layer: int, tri: int) -> int:
        return int(self._tri_region[layer][tri])

    def _segment(self, layers: list[Layer], links: list[LinkPairs]) -> None:
        offsets = np.concatenate([[0], np.cumsum([len(layer.triangles) for layer in layers])])
        total = int(offsets[-1])
        interval = np.concatenate([
            self.interval_of(layer.time[layer.triangles].mean(axis=1)) for layer in layers
        ])
        parent = np.arange(total)

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        def union(a: int, b: int) -> None:
            ra, rb = find(a), find(b)
            if ra != rb:
                parent[max(ra, rb)] = min(ra, rb)

        adjacent: list[tuple[int, int]] = []
        for layer, o in zip(layers, offsets[:-1]):
            inner = layer.edge_tris[(layer.edge_tris >= 0).all(axis=1)] + o
            adjacent.extend(map(tuple, inner.tolist()))
        for pairs in links:
            if not pairs.coupled:
                continue
            ta = _border_tris(layers[pairs.layer_a], pairs.samples_a)
            tb = _border_tris(layers[pairs.layer_b], pairs.samples_b)
            for a, b in zip(ta, tb):
                if a >= 0 and b >= 0:
                    adjacent.append((a + offsets[pairs.layer_a], b + offsets[pairs.layer_b]))
        for a, b in adjacent:
            if interval[a] == interval[b]:
                union(a, b)

        roots = np.array([find(i) for i in range(total)])
        ids: dict[int, int] = {}
        for root in roots:
            if int(root) not in ids:
                ids[int(root)] = len(ids)
        tri_region = np.array([ids[int(r)] for r in roots], dtype=int)
        for layer, o in zip(layers, offsets[:-1]):
            self._tri_region[layer.index] = tri_region[o:o + len(layer.triangles)]

        for rid in range(len(ids)):
            members = np.flatnonzero(tri_region == rid)
            k = int(interval[members[0]])
            tris = {}
            centers = []
            for layer, o in zip(layers, offsets[:-1]):
                local = members[(members >= o) & (members < o + len(layer.triangles))] - o
                if len(local):
                    tris[layer.index] = local
                    centers.append(layer.points[layer.triangles[local]].mean(axis=(0, 1)))
            c = centers[0]
            self.regions.append(Region(
                rid, k, self.cuts[k], self.cuts[min(k + 1, len(self.cuts) - 1)], tris,
                center=(float(c[0]), float(c[1])),
            ))
        for a, b in adjacent:
            ra, rb = int(tri_region[a]), int(tri_region[b])
            ka, kb = int(interval[a]), int(interval[b])
            if kb == ka + 1:
                self._connect(ra, rb)
            elif ka == kb + 1:
                self._connect(rb, ra)

    def _connect(self, lower: int, upper: int) -> None:
        if upper not in self.regions[lower].next:
            self.regions[lower].next.append(upper)
            self.regions[upper].prev.append(lower)

    def _classify(self, mesh: Mesh) -> None:
        """Mark regions whose mid-interval isolines are closed."""
        for k in range(self.interval_count):
            members = [r for r in self.regions if r.interval == k]
            if not members:
                continue
            tau = 0.5 * (self.cuts[k] + self.cuts[min(k + 1, len(self.cuts) - 1)])
            for chain in isolines(mesh, tau):
                if not chain.closed:
                    continue
                for layer, tri in zip(chain.layers, chain.tris):
                    if tri < 0:
                        continue
                    region = self.regions[self.region_of(int(layer), int(tri))]
                    if region.interval == k:
                        region.circular = True

    def _check(self, params: Params) -> None:
        for region in self.regions:
            if len(region.prev) > 1 or len(region.next) > 1:
                self.issues.add(Issue.error(
                    "Region splits or merges; the sketch needs separate pieces here",
                    center=region.center, source="regions",
                ))
            if region.t1 - region.t0 < 2 * params.course_dist:
                self.issues.add(Issue.warning(
                    "Region is thinner than two courses", center=region.center, source="regions",
                ))

    def _reduce(self) -> None:
        owner = [-1] * len(self.regions)
        for region in sorted(self.regions, key=lambda r: (r.t0, r.id)):
            if owner[region.id] >= 0:
                continue
            chain = [region.id]
            cur = region
            while len(cur.next) == 1:
                nxt = self.regions[cur.next[0]]
                if len(nxt.prev) != 1 or nxt.circular != cur.circular or owner[nxt.id] >= 0:
                    break
                chain.append(nxt.id)
                cur = nxt
            rid = len(self.reduced)
            for r in chain:
                owner[r] = rid
            first, last = self.regions[chain[0]], self.regions[chain[-1]]
            self.reduced.append(ReducedRegion(rid, chain, first.t0, last.t1, first.circular))
        for region in self.regions:
            for nxt in region.next:
                a, b = owner[region.id], owner[nxt]
                if a != b and b not in self.reduced[a].next:
                    self.reduced[a].next.append(b)
                    self.reduced[b].prev.append(a)
        self.owner = owner

    def reduced_of(self, layer: int, tri: int) -> int:
        return self.owner[self.region_of(layer, tri)]

    def triangles_of(self, reduced: ReducedRegion) -> dict[int, set[int]]:
        out: dict[int, set[int]] = {}
        for rid in reduced.regions:
            for layer, tris in self.regions[rid].triangles.items():
                out.setdefault(layer, set()).update(int(t) for t in tris)
        return out

    def order(self) -> list[ReducedRegion]:
        """Reduced regions in topological (time) order."""
        return sorted(self.reduced, key=lambda r: (r.t0, r.id))

    def to_dict(self) -> dict:
        return {
            "cuts": list(self.cuts),
            "regions": [
                {"id": r.id, "t0": r.t0, "t1": r.t1, "prev": r.prev, "next": r.next, "circular": r.circular}
                for r in self.regions
            ],
            "reduced": [
                {"id": r.id, "regions": r.regions, "t0": r.t0, "t1": r.t1, "circular": r.circular}
                for r in self.reduced
            ],
        }


def _border_tris(layer: Layer, samples: np.ndarray) -> list[int]:
    """Triangle on each border edge ``samples[k] -> samples[k+1]`` (``-1`` if missing)."""
    lookup = {(int(i), int(j)): k for k, (i, j) in enumerate(layer.edges)}
    out = []
    for a, b in zip(samples[:-1], samples[1:]):
        eid = lookup.get((min(int(a), int(b)), max(int(a), int(b))))
        out.append(int(layer.edge_tris[eid, 0]) if eid is not None else -1)
    return out


def build_regions(mesh: Mesh, params: Params) -> RegionGraph:
    """Segment the finest level of a solved *mesh* and attach the region graph."""
    graph = RegionGraph.build(mesh, params)
    mesh.regions = graph
    mesh.issues.extend(graph.issues)
    return graph
