"""
Small planar geometry helpers on numpy point arrays of shape ``(n, 2)``.
"""

from __future__ import annotations

import numpy as np


def as_points(points) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"Expected an (n, 2) point array, got shape {arr.shape}")
    return arr


def signed_area(points) -> float:
    """Shoelace area; positive for counter-clockwise polygons."""
    p = as_points(points)
    x, y = p[:, 0], p[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))


def cumulative_length(points, closed: bool = False) -> np.ndarray:
    """Arclength at every vertex (and at the closing vertex when *closed*)."""
    p = as_points(points)
    if closed:
        p = np.vstack([p, p[:1]])
    seg = np.linalg.norm(np.diff(p, axis=0), axis=1)
    return np.concatenate([[0.0], np.cumsum(seg)])


def polyline_length(points, closed: bool = False) -> float:
    return float(cumulative_length(points, closed)[-1])


def point_at_length(points, lengths, closed: bool = False) -> np.ndarray:
    """Interpolate positions at the given arclengths along a polyline."""
    p = as_points(points)
    if closed:
        p = np.vstack([p, p[:1]])
    cum = cumulative_length(p)
    s = np.clip(np.asarray(lengths, dtype=float), 0.0, cum[-1])
    x = np.interp(s, cum, p[:, 0])
    y = np.interp(s, cum, p[:, 1])
    return np.column_stack([x, y])


def project_to_polyline(points, query) -> tuple[float, float]:
    """Return ``(arclength, distance)`` of the closest point on an open polyline."""
    p = as_points(points)
    q = np.asarray(query, dtype=float)
    a, b = p[:-1], p[1:]
    ab = b - a
    denom = np.maximum(np.einsum("ij,ij->i", ab, ab), 1e-18)
    t = np.clip(np.einsum("ij,ij->i", q - a, ab) / denom, 0.0, 1.0)
    closest = a + ab * t[:, None]
    dist = np.linalg.norm(closest - q, axis=1)
    i = int(np.argmin(dist))
    cum = cumulative_length(p)
    return float(cum[i] + t[i] * np.sqrt(denom[i])), float(dist[i])


def segment_distances(a, b, query) -> np.ndarray:
    """Distance from each point of *query* ``(m, 2)`` to the segment ``a-b``."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    q = as_points(query)
    ab = b - a
    denom = max(float(np.dot(ab, ab)), 1e-18)
    t = np.clip((q - a) @ ab / denom, 0.0, 1.0)
    return np.linalg.norm(a + t[:, None] * ab - q, axis=1)


def bounding_box(points) -> tuple[float, float, float, float]:
    p = as_points(points)
    return (
        float(p[:, 0].min()),
        float(p[:, 1].min()),
        float(p[:, 0].max()),
        float(p[:, 1].max()),
    )
