"""
Bézier evaluation and flattening of sketch / curve segments.

Segment ``i`` of a polyline node joins vertex ``i`` to vertex ``i + 1``
(wrapping for closed nodes).  Its control polygon is the start vertex, the
segment's control points, then the end vertex.
"""

from __future__ import annotations

from math import comb

import numpy as np

from knitsketch.sketch.types import Degree, Node

_MAX_DEPTH = 12


def control_polygon(node: Node, seg_idx: int) -> np.ndarray:
    """Control points ``(degree + 1, 2)`` of a segment in node-local coordinates."""
    n = len(node.points)
    if not 0 <= seg_idx < node.segment_count:
        raise IndexError(f"Segment {seg_idx} out of range for node {node.id}")
    seg = node.segments[seg_idx]
    start = node.points[seg_idx]
    end = node.points[(seg_idx + 1) % n]
    return np.array([start, *seg.controls, end], dtype=float)


def default_controls(start, end, degree: int) -> list[tuple[float, float]]:
    """Controls that make a Bézier segment of *degree* trace the straight line."""
    a = np.asarray(start, dtype=float)
    b = np.asarray(end, dtype=float)
    if degree == Degree.LINEAR:
        return []
    if degree == Degree.QUADRATIC:
        c = 0.5 * (a + b)
        return [(float(c[0]), float(c[1]))]
    c1 = a + (b - a) / 3.0
    c2 = a + 2.0 * (b - a) / 3.0
    return [(float(c1[0]), float(c1[1])), (float(c2[0]), float(c2[1]))]


def bezier_point(ctrl: np.ndarray, t) -> np.ndarray:
    """Evaluate a Bézier curve at scalar or array *t* (Bernstein form)."""
    ctrl = np.asarray(ctrl, dtype=float)
    d = len(ctrl) - 1
    ts = np.atleast_1d(np.asarray(t, dtype=float))
    basis = np.stack([comb(d, i) * ts**i * (1.0 - ts) ** (d - i) for i in range(d + 1)], axis=1)
    out = basis @ ctrl
    return out[0] if np.ndim(t) == 0 else out


def bezier_tangent(ctrl: np.ndarray, t: float) -> np.ndarray:
    """Unit tangent at *t* (falls back to the chord when degenerate)."""
    ctrl = np.asarray(ctrl, dtype=float)
    d = len(ctrl) - 1
    deriv = d * np.diff(ctrl, axis=0)
    vec = bezier_point(deriv, t) if d > 1 else deriv[0]
    norm = float(np.linalg.norm(vec))
    if norm < 1e-12:
        vec = ctrl[-1] - ctrl[0]
        norm = float(np.linalg.norm(vec))
    return vec / norm if norm > 0 else np.array([1.0, 0.0])


def split_bezier(ctrl: np.ndarray, t: float) -> tuple[np.ndarray, np.ndarray]:
    """De Casteljau split at *t* into left and right control polygons."""
    pts = np.asarray(ctrl, dtype=float)
    left = [pts[0]]
    right = [pts[-1]]
    while len(pts) > 1:
        pts = (1.0 - t) * pts[:-1] + t * pts[1:]
        left.append(pts[0])
        right.append(pts[-1])
    return np.array(left), np.array(right[::-1])


def _flat_enough(ctrl: np.ndarray, tolerance: float) -> bool:
    a, b = ctrl[0], ctrl[-1]
    ab = b - a
    length = float(np.linalg.norm(ab))
    inner = ctrl[1:-1]
    if length < 1e-12:
        return bool(np.all(np.linalg.norm(inner - a, axis=1) <= tolerance))
    dist = np.abs(ab[0] * (inner[:, 1] - a[1]) - ab[1] * (inner[:, 0] - a[0])) / length
    return bool(np.all(dist <= tolerance))


def flatten_bezier(ctrl: np.ndarray, tolerance: float) -> tuple[np.ndarray, np.ndarray]:
    """Adaptive flattening.

    Returns:
        ``(points, params)``: the polyline including both endpoints and the
        curve parameter of every point.
    """
    ctrl = np.asarray(ctrl, dtype=float)
    if len(ctrl) == 2:
        return ctrl.copy(), np.array([0.0, 1.0])
    points = [ctrl[0]]
    params = [0.0]

    def recurse(c: np.ndarray, t0: float, t1: float, depth: int) -> None:
        if depth >= _MAX_DEPTH or _flat_enough(c, tolerance):
            points.append(c[-1])
            params.append(t1)
            return
        left, right = split_bezier(c, 0.5)
        tm = 0.5 * (t0 + t1)
        recurse(left, t0, tm, depth + 1)
        recurse(right, tm, t1, depth + 1)

    recurse(ctrl, 0.0, 1.0, 0)
    return np.array(points), np.array(params)


def segment_point(node: Node, seg_idx: int, t: float) -> np.ndarray:
    return bezier_point(control_polygon(node, seg_idx), t)


def segment_length(node: Node, seg_idx: int, tolerance: float = 1e-3) -> float:
    pts, _ = flatten_bezier(control_polygon(node, seg_idx), tolerance)
    return float(np.sum(np.linalg.norm(np.diff(pts, axis=0), axis=1)))


def flatten_node(node: Node, tolerance: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Flatten every segment of a polyline node (node-local coordinates).

    Returns:
        ``(points, seg_index, seg_param)`` for every polyline vertex.  For a
        closed node the last vertex is not repeated; for an open node the
        final vertex is included (with the last segment and ``t = 1``).
    """
    all_pts: list[np.ndarray] = []
    segs: list[np.ndarray] = []
    params: list[np.ndarray] = []
    count = node.segment_count
    for i in range(count):
        pts, ts = flatten_bezier(control_polygon(node, i), tolerance)
        last = not node.closed and i == count - 1
        keep = slice(None) if last else slice(None, -1)
        all_pts.append(pts[keep])
        params.append(ts[keep])
        segs.append(np.full(len(ts[keep]), i, dtype=int))
    if not all_pts:
        return np.zeros((0, 2)), np.zeros(0, dtype=int), np.zeros(0)
    return np.vstack(all_pts), np.concatenate(segs), np.concatenate(params)
