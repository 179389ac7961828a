"""
Geodesic distances over the finest mesh level.

Two points of the same layer that see each other inside the sketch outline
are separated by their straight-line distance.  Otherwise the distance is a
shortest path on the edge graph of every layer (scipy.sparse.csgraph), where
linked border samples are joined by zero-length edges.
"""

from __future__ import annotations

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import dijkstra
from shapely.geometry import LineString
from shapely.prepared import prep

from .layer import Layer
from .mesh import LinkPairs

LINK_EDGE_LENGTH = 1e-9


class GeodesicGraph:
    """Distance queries between ``(layer, point)`` locations."""

    def __init__(self, layers: list[Layer], links: list[LinkPairs]) -> None:
        self.layers = layers
        self.offsets = np.concatenate([[0], np.cumsum([len(layer) for layer in layers])])
        n = int(self.offsets[-1])
        rows, cols, vals = [], [], []
        for layer, o in zip(layers, self.offsets[:-1]):
            e = layer.edges
            d = np.linalg.norm(layer.points[e[:, 1]] - layer.points[e[:, 0]], axis=1)
            rows.append(e[:, 0] + o)
            cols.append(e[:, 1] + o)
            vals.append(np.maximum(d, LINK_EDGE_LENGTH))
        for pairs in links:
            if not pairs.coupled:
                continue
            rows.append(pairs.samples_a + self.offsets[pairs.layer_a])
            cols.append(pairs.samples_b + self.offsets[pairs.layer_b])
            vals.append(np.full(len(pairs.samples_a), LINK_EDGE_LENGTH))
        if rows:
            r, c, v = np.concatenate(rows), np.concatenate(cols), np.concatenate(vals)
        else:
            r = c = np.zeros(0, dtype=int)
            v = np.zeros(0)
        self.graph = sparse.csr_matrix((v, (r, c)), shape=(n, n))
        self._prepared = {layer.index: prep(layer.polygon.buffer(1e-6)) for layer in layers}

    def visible(self, layer: int, p, q) -> bool:
        """Whether the straight segment ``p -> q`` stays inside the layer outline."""
        if np.allclose(p, q):
            return True
        return bool(self._prepared[layer].covers(LineString([tuple(p), tuple(q)])))

    def _node(self, layer: int, point) -> tuple[int, float]:
        idx = int(self.layers[layer].nearest_sample(point)[0])
        gap = float(np.linalg.norm(self.layers[layer].points[idx] - np.asarray(point)))
        return idx + int(self.offsets[layer]), gap

    def distance(self, src: tuple[int, np.ndarray], dst: tuple[int, np.ndarray]) -> float:
        (la, p), (lb, q) = src, dst
        if la == lb and self.visible(la, p, q):
            return float(np.linalg.norm(np.asarray(q) - np.asarray(p)))
        return float(self.distances(src, [dst])[0])

    def distances(self, src: tuple[int, np.ndarray], targets) -> np.ndarray:
        """Graph distances from *src* to every ``(layer, point)`` in *targets*."""
        s, gap = self._node(*src)
        dist = dijkstra(self.graph, directed=False, indices=s)
        out = []
        for layer, point in targets:
            t, tgap = self._node(layer, point)
            out.append(dist[t] + gap + tgap)
        return np.array(out)

    def field(self, sources: list[tuple[int, np.ndarray]]) -> np.ndarray:
        """Distance from the nearest of *sources* to every sample (global index)."""
        idx = [self._node(layer, p)[0] for layer, p in sources]
        return dijkstra(self.graph, directed=False, indices=idx, min_only=True)
