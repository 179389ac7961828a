"""
Time solver: flow and time fields of a mesh, one level per step.

Each step solves the next (finer) level:

1. **Flow** ``(u, v)`` per sample from a sparse least-squares system of
   neighbour smoothness, constraint targets (direction: the constraint
   tangent; isoline: its left normal; both signed by the constraint
   direction), link coupling across linked segments, and a weak prior toward
   the sketch ``+y`` axis.  The result is normalised.
2. **Time** ``t`` per sample from the least-squares system
   ``t_j - t_i = f_ij . (p_j - p_i)`` over mesh edges, equal-time rows along
   isoline constraints, equality rows across links, and a weak pin per
   connected component.  Conjugate gradient on the normal equations starts
   from the interpolated coarser solution.  Each component is shifted so its
   minimum time is zero.

Derived per-sample values (stretch, stress, kappa) are computed after the
time field.  Times are millimetres along the flow.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import shapely
from scipy import sparse
from scipy.sparse.csgraph import connected_components
from scipy.sparse.linalg import cg, lsqr, spsolve
from shapely.geometry import LineString

from knitsketch.config.params import Params
from knitsketch.sketch.types import ConstraintType, Transmission

from .layer import Layer
from .mesh import LinkPairs, Mesh

logger = logging.getLogger(__name__)

CONSTRAINT_WEIGHT = 10.0
LINK_WEIGHT = 10.0
PRIOR_WEIGHT = 1.0
WEAK_PRIOR_WEIGHT = 1e-3
PIN_WEIGHT = 1.0


class _Rows:
    """Accumulator of weighted sparse least-squares rows."""

    def __init__(self, ncols: int) -> None:
        self.ncols = ncols
        self.rows: list[np.ndarray] = []
        self.cols: list[np.ndarray] = []
        self.vals: list[np.ndarray] = []
        self.rhs: list[np.ndarray] = []
        self.count = 0

    def add(self, cols: np.ndarray, vals: np.ndarray, rhs: np.ndarray) -> None:
        """Add ``len(rhs)`` rows; *cols* / *vals* are ``(rows, k)`` arrays."""
        cols = np.atleast_2d(cols)
        vals = np.atleast_2d(vals)
        n = len(rhs)
        if n == 0:
            return
        idx = np.repeat(np.arange(self.count, self.count + n), cols.shape[1])
        self.rows.append(idx)
        self.cols.append(cols.ravel())
        self.vals.append(vals.ravel())
        self.rhs.append(np.asarray(rhs, dtype=float))
        self.count += n

    def matrix(self) -> tuple[sparse.csr_matrix, np.ndarray]:
        if not self.count:
            return sparse.csr_matrix((0, self.ncols)), np.zeros(0)
        a = sparse.csr_matrix(
            (np.concatenate(self.vals), (np.concatenate(self.rows), np.concatenate(self.cols))),
            shape=(self.count, self.ncols),
        )
        return a, np.concatenate(self.rhs)


def _offsets(layers: list[Layer]) -> np.ndarray:
    return np.concatenate([[0], np.cumsum([len(layer) for layer in layers])])


def _up_vector(mesh: Mesh, layer: Layer) -> np.ndarray:
    """The sketch ``+y`` axis in the global frame."""
    xform = mesh.transforms[layer.sketch_id]
    return np.array([0.0, xform.sy / abs(xform.sy)])


def constraint_support(layer: Layer, support: float) -> list[tuple[int, np.ndarray, np.ndarray]]:
    """Samples near each constraint curve with their target flow vectors.

    Returns one ``(curve_index, samples, targets)`` entry per direction or
    isoline constraint; a zero direction yields unsigned targets.
    """
    out = []
    radius = support * layer.eta
    pts = shapely.points(layer.points)
    for ci, curve in enumerate(layer.constraints):
        if curve.type not in (ConstraintType.DIRECTION, ConstraintType.ISOLINE) or len(curve.points) < 2:
            continue
        line = LineString(curve.points)
        dist = shapely.distance(line, pts)
        samples = np.flatnonzero(dist <= radius * (1 + 1e-9))
        if not len(samples):
            continue
        s = shapely.line_locate_point(line, pts[samples])
        eps = min(1e-3 * layer.eta, 0.25 * line.length)
        a = shapely.line_interpolate_point(line, np.maximum(s - eps, 0.0))
        b = shapely.line_interpolate_point(line, np.minimum(s + eps, line.length))
        tan = shapely.get_coordinates(b) - shapely.get_coordinates(a)
        tan /= np.maximum(np.linalg.norm(tan, axis=1, keepdims=True), 1e-12)
        if curve.type == ConstraintType.ISOLINE:
            tan = np.column_stack([-tan[:, 1], tan[:, 0]])
        sign = curve.direction if curve.direction else 1
        out.append((ci, samples, sign * tan))
    return out


class TimeSolver:
    """Iterative flow and time solver over the levels of a mesh.

    Call :meth:`step` until it returns ``True``; each call solves one level.
    """

    def __init__(self, mesh: Mesh, params: Params) -> None:
        self.mesh = mesh
        self.params = params
        self.level = 0
        self.sign = -1.0 if params.invert_time else 1.0

    @property
    def done(self) -> bool:
        return not self.mesh.valid or self.level >= len(self.mesh.levels)

    @property
    def progress(self) -> float:
        if not self.mesh.valid:
            return 1.0
        return self.level / len(self.mesh.levels)

    def step(self) -> bool:
        if self.done:
            return True
        layers = self.mesh.levels[self.level]
        links = self.mesh.links[self.level]
        if self.level == 0:
            for layer in layers:
                layer.flow[:] = self.sign * _up_vector(self.mesh, layer)
        else:
            self._prolongate(self.mesh.levels[self.level - 1], layers)
        self.solve_flow(layers, links)
        self.solve_time(layers, links)
        for layer in layers:
            compute_derived(layer)
        logger.debug("Solved level %d (%d layers)", self.level, len(layers))
        self.level += 1
        return self.done

    def run(self) -> Mesh:
        while not self.step():
            pass
        return self.mesh

    # ── Flow ─────────────────────────────────────────────────────────────────

    def _prolongate(self, coarse: list[Layer], fine: list[Layer]) -> None:
        for c, f in zip(coarse, fine):
            flow = c.interpolate(c.flow, f.points)
            norm = np.linalg.norm(flow, axis=1, keepdims=True)
            f.flow = np.where(norm > 1e-12, flow / np.maximum(norm, 1e-12), self.sign * _up_vector(self.mesh, f))
            f.time = c.interpolate(c.time, f.points)

    def solve_flow(self, layers: list[Layer], links: list[LinkPairs]) -> None:
        off = _offsets(layers)
        n = int(off[-1])
        rows = _Rows(2 * n)
        has_constraints = any(layer.constraints for layer in layers)
        prior_w = WEAK_PRIOR_WEIGHT if has_constraints else PRIOR_WEIGHT
        x0 = np.zeros(2 * n)
        for layer, o in zip(layers, off[:-1]):
            raw = self.sign * layer.flow
            x0[o:o + len(layer)] = raw[:, 0]
            x0[n + o:n + o + len(layer)] = raw[:, 1]
            e = layer.edges + o
            ones = np.ones(len(e))
            for shift in (0, n):
                rows.add(np.column_stack([e[:, 0] + shift, e[:, 1] + shift]),
                         np.column_stack([ones, -ones]), np.zeros(len(e)))
            idx = np.arange(len(layer)) + o
            up = _up_vector(self.mesh, layer)
            rows.add(idx[:, None], np.full((len(idx), 1), prior_w), np.full(len(idx), prior_w * up[0]))
            rows.add(idx[:, None] + n, np.full((len(idx), 1), prior_w), np.full(len(idx), prior_w * up[1]))
            layer.constraint_hits = []
            for ci, samples, targets in constraint_support(layer, self.params.constraint_support):
                curve = layer.constraints[ci]
                if curve.direction == 0:
                    # unsigned constraint: follow the current estimate
                    dots = np.einsum("ij,ij->i", raw[samples], targets)
                    if dots.sum() < 0:
                        targets = -targets
                if curve.weight > 0:
                    w = CONSTRAINT_WEIGHT * curve.weight
                else:
                    w = CONSTRAINT_WEIGHT / max(1.0, curve.length / (10.0 * layer.eta))
                gi = samples + o
                ws = np.full((len(gi), 1), w)
                rows.add(gi[:, None], ws, w * targets[:, 0])
                rows.add(gi[:, None] + n, ws, w * targets[:, 1])
                layer.constraint_hits.extend(
                    (int(s), targets[k], curve.target_id) for k, s in enumerate(samples)
                )
        for pairs in links:
            self._link_flow_rows(rows, layers, off, n, pairs)

        a, b = rows.matrix()
        tol = self.params.flow_accuracy * 1e-4
        result = lsqr(a, b, atol=tol, btol=tol, iter_lim=max(1000, 4 * n), x0=x0)
        x = result[0]
        for layer, o in zip(layers, off[:-1]):
            flow = np.column_stack([x[o:o + len(layer)], x[n + o:n + o + len(layer)]])
            norm = np.linalg.norm(flow, axis=1, keepdims=True)
            up = _up_vector(self.mesh, layer)
            flow = np.where(norm > 1e-9, flow / np.maximum(norm, 1e-12), up)
            layer.flow = self.sign * flow

    def _link_flow_rows(
        self, rows: _Rows, layers: list[Layer], off: np.ndarray, n: int, pairs: LinkPairs,
    ) -> None:
        if not pairs.coupled:
            return
        la, lb = layers[pairs.layer_a], layers[pairs.layer_b]
        ta, na = la.segment_frame(pairs.seg_a)
        tb, nb = lb.segment_frame(pairs.seg_b)
        if not pairs.mirror:
            tb, nb = tb[::-1], nb[::-1]
        ga = pairs.samples_a + off[pairs.layer_a]
        gb = pairs.samples_b + off[pairs.layer_b]
        s_t = 1.0 if pairs.mirror else -1.0
        mode = pairs.transmission
        if mode == Transmission.ALIGNED:
            fa = self.sign * la.flow[pairs.samples_a]
            fb = self.sign * lb.flow[pairs.samples_b]
            agree = np.einsum("ij,ij->i", fa, ta) * s_t * np.einsum("ij,ij->i", fb, tb)
            mode = Transmission.SAME if agree.sum() >= 0 else Transmission.REVERSE
        tan_sign = -s_t if mode != Transmission.REVERSE else s_t
        nor_sign = 1.0 if mode == Transmission.SAME else -1.0
        w = LINK_WEIGHT
        k = len(ga)
        for vec_a, vec_b, sign_b in ((ta, tb, tan_sign), (na, nb, nor_sign)):
            cols = np.column_stack([ga, ga + n, gb, gb + n])
            vals = w * np.column_stack([vec_a[:, 0], vec_a[:, 1], sign_b * vec_b[:, 0], sign_b * vec_b[:, 1]])
            rows.add(cols, vals, np.zeros(k))

    # ── Time ─────────────────────────────────────────────────────────────────

    def solve_time(self, layers: list[Layer], links: list[LinkPairs]) -> None:
        off = _offsets(layers)
        n = int(off[-1])
        rows = _Rows(n)
        x0 = np.concatenate([layer.time for layer in layers])
        for layer, o in zip(layers, off[:-1]):
            e = layer.edges
            f = 0.5 * (layer.flow[e[:, 0]] + layer.flow[e[:, 1]])
            d = layer.points[e[:, 1]] - layer.points[e[:, 0]]
            target = np.einsum("ij,ij->i", f, d)
            ones = np.ones(len(e))
            rows.add(np.column_stack([e[:, 1] + o, e[:, 0] + o]), np.column_stack([ones, -ones]), target)
            for ci, samples, _ in constraint_support(layer, self.params.constraint_support):
                curve = layer.constraints[ci]
                if curve.type != ConstraintType.ISOLINE or len(samples) < 2:
                    continue
                s = shapely.line_locate_point(LineString(curve.points), shapely.points(layer.points[samples]))
                chain = samples[np.argsort(s)] + o
                w = np.full(len(chain) - 1, CONSTRAINT_WEIGHT)
                rows.add(np.column_stack([chain[:-1], chain[1:]]), np.column_stack([w, -w]), np.zeros(len(w)))
        for pairs in links:
            if not pairs.coupled:
                continue
            ga = pairs.samples_a + off[pairs.layer_a]
            gb = pairs.samples_b + off[pairs.layer_b]
            w = np.full(len(ga), LINK_WEIGHT)
            rows.add(np.column_stack([ga, gb]), np.column_stack([w, -w]), np.zeros(len(ga)))
        a, b = rows.matrix()
        m = (a.T @ a).tocsr()
        rhs = a.T @ b
        pins = sample_components(m)
        m = (m + sparse.diags(np.bincount(pins, minlength=n) * PIN_WEIGHT ** 2)).tocsr()
        rhs[pins] += PIN_WEIGHT ** 2 * x0[pins]
        x, info = cg(m, rhs, x0=x0, rtol=1e-10, maxiter=self.params.max_time_iter)
        if info != 0:
            logger.debug("CG did not converge (info=%d); using a direct solve", info)
            x = spsolve(m.tocsc(), rhs)
        if not np.all(np.isfinite(x)):
            logger.warning("Direct time solve is not finite; using least squares")
            x = lsqr(m, rhs, x0=np.nan_to_num(x0), iter_lim=max(1000, 4 * n))[0]
        components = time_components(len(layers), links)
        for comp in components:
            lo = min(float(x[off[i]:off[i + 1]].min()) for i in comp)
            for i in comp:
                x[off[i]:off[i + 1]] -= lo
        for layer, o in zip(layers, off[:-1]):
            layer.time = np.asarray(x[o:o + len(layer)], dtype=float)


def sample_components(normal: sparse.spmatrix) -> np.ndarray:
    """First sample of every connected component of the time system.

    Two samples are connected when a row of the system involves both, so
    each returned sample needs a pin for the normal matrix to be regular.
    """
    _, labels = connected_components(normal, directed=False)
    _, first = np.unique(labels, return_index=True)
    return first


def time_components(count: int, links: list[LinkPairs]) -> list[list[int]]:
    """Layer groups whose time fields are coupled through links."""
    parent = list(range(count))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for pairs in links:
        if pairs.coupled:
            ra, rb = find(pairs.layer_a), find(pairs.layer_b)
            if ra != rb:
                parent[max(ra, rb)] = min(ra, rb)
    groups: dict[int, list[int]] = {}
    for i in range(count):
        groups.setdefault(find(i), []).append(i)
    return [groups[k] for k in sorted(groups)]


def compute_derived(layer: Layer) -> None:
    """Stretch ``|grad t|``, stress ``|stretch - 1|`` and streamline curvature."""
    grad = layer.triangle_gradients(layer.time)
    stretch = np.linalg.norm(grad, axis=1)
    layer.stretch = layer.to_samples(stretch)
    layer.stress = np.abs(layer.stretch - 1.0)
    gu = layer.triangle_gradients(layer.flow[:, 0])
    gv = layer.triangle_gradients(layer.flow[:, 1])
    f = layer.flow[layer.triangles].mean(axis=1)
    df = np.column_stack([np.einsum("ij,ij->i", gu, f), np.einsum("ij,ij->i", gv, f)])
    kappa = np.abs(f[:, 0] * df[:, 1] - f[:, 1] * df[:, 0])
    layer.kappa = layer.to_samples(kappa)


def solve(mesh: Mesh, params: Params, progress: Optional[list[float]] = None) -> Mesh:
    """Solve every level of *mesh* synchronously."""
    solver = TimeSolver(mesh, params)
    while not solver.step():
        if progress is not None:
            progress.append(solver.progress)
    return mesh
