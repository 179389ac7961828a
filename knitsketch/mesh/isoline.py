"""
Isolines of the time field.

:func:`layer_pieces` runs marching triangles on one layer: a sample is
*above* when ``t >= tau``; every triangle with mixed classification yields
one segment between its two crossing edges, oriented so that time increases
to the left.  Segments are chained through shared edges into pieces that
either close on themselves or run from border to border.

:func:`isolines` joins the border ends of pieces across linked segments
into :class:`IsolineChain` objects.  A mirrored link reverses the piece it
reaches.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from knitsketch.utilities.tolerance import COORD_TOL

from .layer import Layer
from .mesh import LinkPairs, Mesh


@dataclass
class Piece:
    """Part of an isoline inside one layer."""

    layer: int
    points: np.ndarray
    tris: np.ndarray
    closed: bool
    # (segment, fraction) of the border crossing at each end of an open piece
    start: Optional[tuple[int, float]] = None
    end: Optional[tuple[int, float]] = None

    def reversed(self) -> Piece:
        return Piece(self.layer, self.points[::-1].copy(), self.tris[::-1].copy(), self.closed, self.end, self.start)


@dataclass
class IsolineChain:
    """An isoline possibly spanning several linked layers.

    Attributes:
        layers: ``(k,)`` layer index of every point.
        points: ``(k, 2)`` positions (mm, global frame).
        starts: ``(k,)`` true where a new layer piece begins.
        tris: ``(k,)`` triangle each point was produced by (in its layer).
        closed: Whether the chain loops back to its first point.
    """

    layers: np.ndarray
    points: np.ndarray
    starts: np.ndarray
    tris: np.ndarray
    closed: bool
    time: float = 0.0

    def __len__(self) -> int:
        return len(self.points)

    def _steps(self) -> np.ndarray:
        """Length of every step ``i -> i+1`` (and the closing step); zero across links."""
        nxt = np.roll(np.arange(len(self.points)), -1)
        d = np.linalg.norm(self.points[nxt] - self.points, axis=1)
        jump = self.starts[nxt]
        d[jump] = 0.0
        if not self.closed:
            d[-1] = 0.0
        return d

    @property
    def length(self) -> float:
        return float(self._steps().sum())

    def cumulative(self) -> np.ndarray:
        """Arclength at every point."""
        return np.concatenate([[0.0], np.cumsum(self._steps())[:-1]])

    def sample(self, positions) -> tuple[np.ndarray, np.ndarray]:
        """Layer and position of the points at the given arclengths."""
        s = np.asarray(positions, dtype=float)
        cum = self.cumulative()
        steps = self._steps()
        total = float(steps.sum())
        if self.closed and total > 0:
            s = np.mod(s, total)
        else:
            s = np.clip(s, 0.0, total)
        idx = np.clip(np.searchsorted(cum, s, side="right") - 1, 0, len(cum) - 1)
        # skip zero-length steps so the sample stays inside one piece
        nxt = (idx + 1) % len(self.points)
        frac = np.where(steps[idx] > 0, (s - cum[idx]) / np.maximum(steps[idx], 1e-18), 0.0)
        frac = np.clip(frac, 0.0, 1.0)
        pts = self.points[idx] + frac[:, None] * (self.points[nxt] - self.points[idx])
        return self.layers[idx], pts

    def nearest(self, layer: int, point) -> float:
        """Arclength of the chain point closest to *point* in *layer*."""
        mask = self.layers == layer
        if not np.any(mask):
            return 0.0
        d = np.linalg.norm(self.points - np.asarray(point, dtype=float), axis=1)
        d[~mask] = np.inf
        return float(self.cumulative()[int(np.argmin(d))])

    def rotated(self, offset: float) -> IsolineChain:
        """Closed chain starting at the point nearest arclength *offset*."""
        if not self.closed or offset <= 0:
            return self
        cum = self.cumulative()
        k = int(np.argmin(np.abs(cum - offset)))
        if k == 0:
            return self
        order = np.roll(np.arange(len(self.points)), -k)
        return IsolineChain(
            self.layers[order], self.points[order], self.starts[order], self.tris[order],
            True, self.time,
        )


def _crossings(layer: Layer, tau: float):
    above = layer.time >= tau
    tri_above = above[layer.triangles]
    count = tri_above.sum(axis=1)
    active = np.flatnonzero((count == 1) | (count == 2))
    return above, active


def layer_pieces(layer: Layer, tau: float) -> list[Piece]:
    """Marching-triangles isoline pieces of *layer* at time *tau*."""
    above, active = _crossings(layer, tau)
    if not len(active):
        return []
    t = layer.time
    grad = layer.triangle_gradients(t)
    edge_point: dict[int, np.ndarray] = {}
    succ: dict[int, int] = {}
    seg_tri: dict[int, int] = {}
    for tri in active:
        crossing = []
        for k in range(3):
            eid = int(layer.tri_edges[tri, k])
            i, j = layer.edges[eid]
            if above[i] != above[j]:
                crossing.append(eid)
                if eid not in edge_point:
                    alpha = (tau - t[i]) / (t[j] - t[i])
                    edge_point[eid] = layer.points[i] + alpha * (layer.points[j] - layer.points[i])
        if len(crossing) != 2:
            continue
        a, b = crossing
        d = edge_point[b] - edge_point[a]
        # time increases to the left of travel
        if d[0] * grad[tri, 1] - d[1] * grad[tri, 0] < 0:
            a, b = b, a
        succ[a] = b
        seg_tri[a] = int(tri)
    pred = {b: a for a, b in succ.items()}

    pieces = []
    visited: set[int] = set()
    heads = [e for e in succ if e not in pred]
    for head in sorted(heads) + sorted(succ):
        if head in visited:
            continue
        chain = [head]
        visited.add(head)
        cur = head
        closed = False
        while cur in succ:
            nxt = succ[cur]
            if nxt == head:
                closed = True
                break
            if nxt in visited:
                break
            chain.append(nxt)
            visited.add(nxt)
            cur = nxt
        pts = np.array([edge_point[e] for e in chain])
        tris = np.array([seg_tri.get(e, seg_tri.get(pred.get(e, -1), -1)) for e in chain])
        pts, tris = _dedupe(pts, tris)
        piece = Piece(layer.index, pts, tris, closed)
        if not closed:
            piece.start = _border_position(layer, chain[0], edge_point[chain[0]])
            piece.end = _border_position(layer, chain[-1], edge_point[chain[-1]])
        pieces.append(piece)
    return pieces


def _dedupe(pts: np.ndarray, tris: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    if len(pts) < 2:
        return pts, tris
    keep = np.ones(len(pts), dtype=bool)
    keep[1:] = np.linalg.norm(np.diff(pts, axis=0), axis=1) > COORD_TOL
    return pts[keep], tris[keep]


def _border_position(layer: Layer, eid: int, point: np.ndarray) -> Optional[tuple[int, float]]:
    i, j = layer.edges[eid]
    length = np.linalg.norm(layer.points[j] - layer.points[i])
    alpha = float(np.linalg.norm(point - layer.points[i]) / max(length, 1e-18))
    return layer.edge_border_position(int(i), int(j), alpha)


def _match_end(
    mesh_links: list[LinkPairs], layers: list[Layer], pieces: list[Piece],
    layer: int, pos: tuple[int, float], skip: int,
) -> Optional[tuple[int, bool]]:
    """Piece (and which end: ``True`` = start) across the link at border position *pos*."""
    seg, frac = pos
    for pairs in mesh_links:
        if not pairs.coupled:
            continue
        if pairs.layer_a == layer and pairs.seg_a == seg:
            other, oseg = pairs.layer_b, pairs.seg_b
        elif pairs.layer_b == layer and pairs.seg_b == seg:
            other, oseg = pairs.layer_a, pairs.seg_a
        else:
            continue
        ofrac = pairs.map_frac(frac)
        tol = 2.0 * layers[other].eta / max(layers[other].segment_length(oseg), 1e-12)
        best = None
        for k, piece in enumerate(pieces):
            if k == skip or piece.layer != other or piece.closed:
                continue
            for end, bpos in ((True, piece.start), (False, piece.end)):
                if bpos is None or bpos[0] != oseg:
                    continue
                d = abs(bpos[1] - ofrac)
                if d <= tol and (best is None or d < best[0]):
                    best = (d, k, end)
        if best is not None:
            return best[1], best[2]
    return None


def _to_chain(pieces: list[Piece], closed: bool, tau: float) -> IsolineChain:
    layers = np.concatenate([np.full(len(p.points), p.layer) for p in pieces])
    points = np.vstack([p.points for p in pieces])
    tris = np.concatenate([p.tris for p in pieces])
    starts = np.zeros(len(points), dtype=bool)
    k = 0
    for p in pieces:
        starts[k] = True
        k += len(p.points)
    if len(pieces) == 1 and closed:
        starts[:] = False
    return IsolineChain(layers, points, starts, tris, closed, tau)


def isolines(mesh: Mesh, tau: float, layers: Optional[list[Layer]] = None, links=None) -> list[IsolineChain]:
    """Isoline chains of the finest level of *mesh* at time *tau*."""
    layers = layers if layers is not None else mesh.finest
    links = links if links is not None else mesh.finest_links
    pieces: list[Piece] = []
    for layer in layers:
        pieces.extend(layer_pieces(layer, tau))
    used = [False] * len(pieces)
    chains = []
    for first in range(len(pieces)):
        if used[first]:
            continue
        used[first] = True
        seq = [pieces[first]]
        if pieces[first].closed:
            chains.append(_to_chain(seq, True, tau))
            continue
        closed = False
        # extend forward from the end
        while seq[-1].end is not None:
            hit = _match_end(links, layers, pieces, seq[-1].layer, seq[-1].end, -1)
            if hit is None:
                break
            k, at_start = hit
            if k == first:
                closed = True
                break
            if used[k]:
                break
            used[k] = True
            seq.append(pieces[k] if at_start else pieces[k].reversed())
        # extend backward from the start
        while not closed and seq[0].start is not None:
            hit = _match_end(links, layers, pieces, seq[0].layer, seq[0].start, -1)
            if hit is None:
                break
            k, at_start = hit
            if used[k]:
                break
            used[k] = True
            seq.insert(0, pieces[k] if not at_start else pieces[k].reversed())
        chains.append(_to_chain(seq, closed, tau))
    return chains
