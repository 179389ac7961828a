"""
Layer: the planar sample complex of one sketch at one mesh level.

Samples are of three kinds:

* **border** samples along every sketch segment, ``count`` per segment at
  equal arclength fractions ``k / count`` (the segment's end vertex is the
  next segment's first sample);
* **interior** samples on a regular grid of spacing ``eta``, kept when they
  are farther than ``eta / 2`` from the border;
* **intermediate** samples along constraint curves.

Triangles come from a Delaunay triangulation of all samples, filtered by
polygon containment.  Coordinates are millimetres in the global sketch frame.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np
import shapely
from scipy.spatial import Delaunay, cKDTree
from shapely.geometry import LineString, Polygon
from shapely.validation import explain_validity

from knitsketch.sketch.types import ConstraintType
from knitsketch.utilities.geometry import cumulative_length, signed_area
from knitsketch.utilities.tolerance import COORD_TOL

logger = logging.getLogger(__name__)

INTERIOR = 0
BORDER = 1
INTERMEDIATE = 2

_LOCATION_RE = re.compile(r"\[\s*([-+\d.eE]+)\s+([-+\d.eE]+)\s*\]")


class MeshError(ValueError):
    """Raised when a sketch cannot be meshed.

    Attributes:
        center: Location (mm) of the offending geometry, if known.
    """

    def __init__(self, message: str, center: Optional[tuple[float, float]] = None) -> None:
        super().__init__(message)
        self.center = center


@dataclass(frozen=True)
class ConstraintCurve:
    """A flow constraint resolved to a polyline in mesh coordinates."""

    target_id: int
    type: ConstraintType
    direction: int
    weight: float
    points: np.ndarray

    @property
    def length(self) -> float:
        return float(cumulative_length(self.points)[-1])


def _tangents(poly: np.ndarray, cum: np.ndarray, lengths: np.ndarray) -> np.ndarray:
    """Unit tangents of a polyline at the given arclengths."""
    idx = np.clip(np.searchsorted(cum, lengths, side="right") - 1, 0, len(poly) - 2)
    vec = poly[idx + 1] - poly[idx]
    norm = np.linalg.norm(vec, axis=1, keepdims=True)
    return vec / np.maximum(norm, 1e-12)


def _merge_coincident(points: np.ndarray, tol: float = COORD_TOL) -> np.ndarray:
    """Drop points lying within *tol* of an earlier point.

    Crossing constraint curves both sample their intersection; Delaunay
    keeps only one copy and the other would be left without edges.
    """
    if len(points) < 2:
        return points
    pairs = cKDTree(points).query_pairs(tol, output_type="ndarray")
    if not len(pairs):
        return points
    keep = np.ones(len(points), dtype=bool)
    keep[pairs.max(axis=1)] = False
    return points[keep]


class Layer:
    """Samples, triangles and per-sample fields of one sketch at one level.

    Attributes:
        sketch_id: Scene id of the sketch.
        index: Position of the layer in its mesh level.
        level: Mesh level (0 = coarsest).
        eta: Target sample spacing (mm).
        points: ``(n, 2)`` sample positions.
        kind: ``(n,)`` sample kinds (``INTERIOR`` / ``BORDER`` / ``INTERMEDIATE``).
        triangles: ``(m, 3)`` counter-clockwise sample triangles.
        edges: ``(e, 2)`` unique undirected edges (``i < j``).
        flow: ``(n, 2)`` unit flow vectors.
        time: ``(n,)`` time values (mm along the flow).
    """

    def __init__(
        self,
        sketch_id: int,
        index: int,
        level: int,
        eta: float,
        segments: Sequence[np.ndarray],
        constraints: Sequence[ConstraintCurve] = (),
        seg_counts: Optional[dict[int, int]] = None,
    ) -> None:
        self.sketch_id = sketch_id
        self.index = index
        self.level = level
        self.eta = float(eta)
        self.constraints = list(constraints)
        self.segments = [np.asarray(s, dtype=float) for s in segments]
        self._seg_cum = [cumulative_length(s) for s in self.segments]
        seg_counts = seg_counts or {}
        self.seg_count = [
            max(1, seg_counts.get(i, math.ceil(cum[-1] / self.eta - 1e-9)))
            for i, cum in enumerate(self._seg_cum)
        ]
        self._build_border()
        self._check_polygon()
        self._build_samples()
        self._triangulate()
        n = len(self.points)
        self.flow = np.tile([0.0, 1.0], (n, 1))
        self.time = np.zeros(n)
        self.stretch = np.ones(n)
        self.stress = np.zeros(n)
        self.kappa = np.zeros(n)
        self.constraint_hits: list[tuple[int, np.ndarray, int]] = []

    # ── Construction ─────────────────────────────────────────────────────────

    def _build_border(self) -> None:
        pts, segs, fracs, tans = [], [], [], []
        self.seg_start: list[int] = []
        for i, (poly, cum) in enumerate(zip(self.segments, self._seg_cum)):
            count = self.seg_count[i]
            f = np.arange(count) / count
            s = f * cum[-1]
            self.seg_start.append(sum(len(p) for p in pts))
            x = np.interp(s, cum, poly[:, 0])
            y = np.interp(s, cum, poly[:, 1])
            pts.append(np.column_stack([x, y]))
            segs.append(np.full(count, i))
            fracs.append(f)
            tans.append(_tangents(poly, cum, s))
        self.border_points = np.vstack(pts)
        self.border_seg = np.concatenate(segs)
        self.border_frac = np.concatenate(fracs)
        self.border_tangent = np.vstack(tans)
        self.orientation = 1.0 if signed_area(self.border_points) >= 0 else -1.0
        t = self.border_tangent
        # outward normal: right of travel for counter-clockwise borders
        self.border_normal = self.orientation * np.column_stack([t[:, 1], -t[:, 0]])
        self.polygon = Polygon(self.border_points)

    def _check_polygon(self) -> None:
        if not self.polygon.is_valid:
            reason = explain_validity(self.polygon)
            match = _LOCATION_RE.search(reason)
            if match:
                center = (float(match.group(1)), float(match.group(2)))
            else:
                c = self.border_points.mean(axis=0)
                center = (float(c[0]), float(c[1]))
            raise MeshError(f"Invalid sketch boundary: {reason}", center)
        if abs(self.polygon.area) < 1e-9:
            c = self.border_points.mean(axis=0)
            raise MeshError("Degenerate sketch boundary", (float(c[0]), float(c[1])))

    def _build_samples(self) -> None:
        eta = self.eta
        minx, miny, maxx, maxy = self.polygon.bounds
        xs = np.arange(minx, maxx + 0.5 * eta, eta)
        ys = np.arange(miny, maxy + 0.5 * eta, eta)
        gx, gy = np.meshgrid(xs, ys)
        grid = np.column_stack([gx.ravel(), gy.ravel()])
        inside = shapely.contains_xy(self.polygon, grid[:, 0], grid[:, 1])
        grid = grid[inside]
        boundary = self.polygon.exterior
        if len(grid):
            dist = shapely.distance(boundary, shapely.points(grid))
            grid = grid[dist > 0.5 * eta * (1 - 1e-6)]

        inter = []
        for curve in self.constraints:
            length = curve.length
            if length <= 0:
                continue
            count = max(1, math.ceil(length / eta))
            s = np.linspace(0.0, length, count + 1)
            cum = cumulative_length(curve.points)
            cp = np.column_stack([
                np.interp(s, cum, curve.points[:, 0]),
                np.interp(s, cum, curve.points[:, 1]),
            ])
            keep = shapely.contains_xy(self.polygon, cp[:, 0], cp[:, 1])
            cp = cp[keep]
            if len(cp):
                dist = shapely.distance(boundary, shapely.points(cp))
                cp = cp[dist > 0.25 * eta]
            if len(cp):
                inter.append(cp)
                if len(grid) and len(curve.points) >= 2:
                    line = LineString(curve.points)
                    grid = grid[shapely.distance(line, shapely.points(grid)) > 0.5 * eta]
        inter_pts = _merge_coincident(np.vstack(inter)) if inter else np.zeros((0, 2))

        nb = len(self.border_points)
        self.points = np.vstack([self.border_points, grid.reshape(-1, 2), inter_pts])
        self.kind = np.concatenate([
            np.full(nb, BORDER, dtype=np.int8),
            np.full(len(grid), INTERIOR, dtype=np.int8),
            np.full(len(inter_pts), INTERMEDIATE, dtype=np.int8),
        ])
        self.num_border = nb

    def _triangulate(self) -> None:
        self._delaunay = Delaunay(self.points)
        self._kdtree: Optional[cKDTree] = None
        simplices = self._delaunay.simplices
        p = self.points
        centroids = p[simplices].mean(axis=1)
        a, b, c = p[simplices[:, 0]], p[simplices[:, 1]], p[simplices[:, 2]]
        cross = (b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])
        keep = shapely.contains_xy(self.polygon, centroids[:, 0], centroids[:, 1])
        keep &= np.abs(cross) > 1e-12 * self.eta * self.eta
        tris = simplices[keep].copy()
        flip = cross[keep] < 0
        tris[flip] = tris[flip][:, [0, 2, 1]]
        self.triangles = tris
        self._simplex_map = np.full(len(simplices), -1, dtype=int)
        self._simplex_map[np.flatnonzero(keep)] = np.arange(len(tris))
        if not len(tris):
            c = self.border_points.mean(axis=0)
            raise MeshError("Sketch is too thin to mesh", (float(c[0]), float(c[1])))

        all_edges = np.vstack([tris[:, [0, 1]], tris[:, [1, 2]], tris[:, [2, 0]]])
        all_edges.sort(axis=1)
        self.edges, inverse = np.unique(all_edges, axis=0, return_inverse=True)
        inverse = inverse.ravel()
        m = len(tris)
        self.tri_edges = inverse.reshape(3, m).T
        # triangles on each side of every edge (-1 on the boundary)
        self.edge_tris = np.full((len(self.edges), 2), -1, dtype=int)
        for slot, tri in zip(inverse, np.tile(np.arange(m), 3)):
            row = self.edge_tris[slot]
            if row[0] < 0:
                row[0] = tri
            else:
                row[1] = tri
        area = 0.5 * np.abs(cross[keep])
        self.tri_area = area
        self.sample_area = np.zeros(len(self.points))
        np.add.at(self.sample_area, tris.ravel(), np.repeat(area / 3.0, 3))

    # ── Queries ──────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self.points)

    @property
    def num_segments(self) -> int:
        return len(self.segments)

    def is_border(self, i: int) -> bool:
        return bool(self.kind[i] == BORDER)

    def segment_samples(self, seg: int) -> np.ndarray:
        """Border samples of a segment including its end vertex (``count + 1``)."""
        start = self.seg_start[seg]
        count = self.seg_count[seg]
        idx = np.arange(start, start + count + 1)
        idx[-1] = self.seg_start[(seg + 1) % self.num_segments]
        return idx

    def border_position(self, i: int) -> tuple[int, float]:
        """``(segment, fraction)`` of a border sample."""
        return int(self.border_seg[i]), float(self.border_frac[i])

    def segment_frame(self, seg: int) -> tuple[np.ndarray, np.ndarray]:
        """Unit tangents and outward normals at the ``count + 1`` samples of a segment."""
        poly, cum = self.segments[seg], self._seg_cum[seg]
        s = np.linspace(0.0, cum[-1], self.seg_count[seg] + 1)
        t = _tangents(poly, cum, np.minimum(s, cum[-1] * (1 - 1e-9)))
        n = self.orientation * np.column_stack([t[:, 1], -t[:, 0]])
        return t, n

    def segment_length(self, seg: int) -> float:
        return float(self._seg_cum[seg][-1])

    def border_point(self, seg: int, frac: float) -> np.ndarray:
        poly, cum = self.segments[seg], self._seg_cum[seg]
        s = float(np.clip(frac, 0.0, 1.0)) * cum[-1]
        return np.array([np.interp(s, cum, poly[:, 0]), np.interp(s, cum, poly[:, 1])])

    def edge_border_position(self, i: int, j: int, alpha: float) -> Optional[tuple[int, float]]:
        """Segment and fraction of the point ``(1 - alpha) p_i + alpha p_j`` on a border edge."""
        if self.kind[i] != BORDER or self.kind[j] != BORDER:
            return None
        si, fi = self.border_position(i)
        sj, fj = self.border_position(j)
        nseg = self.num_segments
        if si == sj:
            return si, (1 - alpha) * fi + alpha * fj
        if fj == 0.0 and sj == (si + 1) % nseg:
            return si, (1 - alpha) * fi + alpha * 1.0
        if fi == 0.0 and si == (sj + 1) % nseg:
            return sj, (1 - alpha) * 1.0 + alpha * fj
        return None

    def locate(self, points) -> tuple[np.ndarray, np.ndarray]:
        """Triangle index (``-1`` outside) and barycentric weights of query points."""
        q = np.atleast_2d(np.asarray(points, dtype=float))
        simplex = self._delaunay.find_simplex(q)
        tri = np.where(simplex >= 0, self._simplex_map[np.maximum(simplex, 0)], -1)
        bary = np.zeros((len(q), 3))
        ok = tri >= 0
        if np.any(ok):
            t = self.triangles[tri[ok]]
            a, b, c = self.points[t[:, 0]], self.points[t[:, 1]], self.points[t[:, 2]]
            v0, v1, v2 = b - a, c - a, q[ok] - a
            d00 = np.einsum("ij,ij->i", v0, v0)
            d01 = np.einsum("ij,ij->i", v0, v1)
            d11 = np.einsum("ij,ij->i", v1, v1)
            d20 = np.einsum("ij,ij->i", v2, v0)
            d21 = np.einsum("ij,ij->i", v2, v1)
            denom = d00 * d11 - d01 * d01
            v = (d11 * d20 - d01 * d21) / denom
            w = (d00 * d21 - d01 * d20) / denom
            bary[ok] = np.column_stack([1 - v - w, v, w])
        return tri, bary

    def nearest_sample(self, points) -> np.ndarray:
        q = np.atleast_2d(np.asarray(points, dtype=float))
        if self._kdtree is None:
            self._kdtree = cKDTree(self.points)
        _, idx = self._kdtree.query(q)
        return np.asarray(idx, dtype=int)

    def interpolate(self, values: np.ndarray, points) -> np.ndarray:
        """Linear interpolation of per-sample *values*; nearest sample outside."""
        q = np.atleast_2d(np.asarray(points, dtype=float))
        tri, bary = self.locate(q)
        values = np.asarray(values)
        out_shape = (len(q),) + values.shape[1:]
        out = np.zeros(out_shape)
        ok = tri >= 0
        if np.any(ok):
            t = self.triangles[tri[ok]]
            w = bary[ok]
            if values.ndim == 1:
                out[ok] = np.einsum("ij,ij->i", values[t], w)
            else:
                out[ok] = np.einsum("ijk,ij->ik", values[t], w)
        if np.any(~ok):
            out[~ok] = values[self.nearest_sample(q[~ok])]
        return out

    def triangle_gradients(self, values: np.ndarray) -> np.ndarray:
        """Gradient ``(m, 2)`` of the piecewise-linear field *values*."""
        t = self.triangles
        p = self.points
        a, b, c = p[t[:, 0]], p[t[:, 1]], p[t[:, 2]]
        fa, fb, fc = values[t[:, 0]], values[t[:, 1]], values[t[:, 2]]
        e1, e2 = b - a, c - a
        det = e1[:, 0] * e2[:, 1] - e1[:, 1] * e2[:, 0]
        d1, d2 = fb - fa, fc - fa
        gx = (d1 * e2[:, 1] - d2 * e1[:, 1]) / det
        gy = (d2 * e1[:, 0] - d1 * e2[:, 0]) / det
        return np.column_stack([gx, gy])

    def to_samples(self, tri_values: np.ndarray) -> np.ndarray:
        """Area-weighted average of per-triangle values at every sample."""
        acc = np.zeros((len(self.points),) + tri_values.shape[1:])
        weights = np.zeros(len(self.points))
        w = self.tri_area
        for k in range(3):
            idx = self.triangles[:, k]
            if tri_values.ndim == 1:
                np.add.at(acc, idx, tri_values * w)
            else:
                np.add.at(acc, idx, tri_values * w[:, None])
            np.add.at(weights, idx, w)
        weights = np.maximum(weights, 1e-18)
        return acc / (weights if tri_values.ndim == 1 else weights[:, None])

    def to_dict(self) -> dict[str, Any]:
        """Minimal snapshot for transfer to the host."""
        return {
            "sketch": self.sketch_id,
            "level": self.level,
            "eta": self.eta,
            "points": self.points.tolist(),
            "kind": self.kind.tolist(),
            "triangles": self.triangles.tolist(),
            "flow": self.flow.tolist(),
            "time": self.time.tolist(),
        }
