"""
Flow and time checks on the finest level of a solved mesh.

Problems are detected per sample or per edge, clustered into connected
groups, and reported as one issue per group centred on the group.
"""

from __future__ import annotations

import logging

import numpy as np

from knitsketch.schemas.issues import Issue
from knitsketch.utilities.tolerance import TIME_UNIT_MM

from .layer import BORDER, Layer
from .mesh import Mesh

logger = logging.getLogger(__name__)

OPPOSING_DOT = 0.0
FAST_CHANGE_DOT = 0.15
CONFLICT_DOT = 0.5
MAX_STRESS = 0.5


def _clusters(layer: Layer, samples: np.ndarray) -> list[np.ndarray]:
    """Connected groups of *samples* along mesh edges."""
    marked = np.zeros(len(layer), dtype=bool)
    marked[samples] = True
    parent = {int(s): int(s) for s in samples}

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for i, j in layer.edges[marked[layer.edges[:, 0]] & marked[layer.edges[:, 1]]]:
        ri, rj = find(int(i)), find(int(j))
        if ri != rj:
            parent[max(ri, rj)] = min(ri, rj)
    groups: dict[int, list[int]] = {}
    for s in samples:
        groups.setdefault(find(int(s)), []).append(int(s))
    return [np.array(groups[k]) for k in sorted(groups)]


def _report(mesh: Mesh, layer: Layer, samples, message: str, error: bool) -> int:
    samples = np.unique(np.asarray(samples, dtype=int))
    if not len(samples):
        return 0
    count = 0
    for group in _clusters(layer, samples):
        c = layer.points[group].mean(axis=0)
        make = Issue.error if error else Issue.warning
        mesh.issues.add(make(
            message, center=(float(c[0]), float(c[1])), source="flow", sketch_id=layer.sketch_id,
        ))
        count += 1
    return count


def check_flow(mesh: Mesh, layer: Layer) -> None:
    """Opposing flows along an edge (error) and fast flow changes (warning)."""
    e = layer.edges
    dots = np.einsum("ij,ij->i", layer.flow[e[:, 0]], layer.flow[e[:, 1]])
    opposing = e[dots <= OPPOSING_DOT].ravel()
    _report(mesh, layer, opposing, "Two opposing flows do not merge.", error=True)
    fast = e[(dots > OPPOSING_DOT) & (dots < FAST_CHANGE_DOT)].ravel()
    _report(mesh, layer, fast, "Flow changes direction too fast", error=False)


def check_constraints(mesh: Mesh, layer: Layer) -> None:
    """Samples claimed by constraints that disagree on the flow."""
    claims: dict[int, list[tuple[np.ndarray, int]]] = {}
    for sample, target, curve in layer.constraint_hits:
        claims.setdefault(sample, []).append((target, curve))
    bad = []
    for sample, items in claims.items():
        for i in range(len(items)):
            for j in range(i + 1, len(items)):
                if items[i][1] != items[j][1] and float(np.dot(items[i][0], items[j][0])) < CONFLICT_DOT:
                    bad.append(sample)
    _report(mesh, layer, bad, "Conflicting flow constraints", error=True)


def check_stress(mesh: Mesh, layer: Layer) -> None:
    stressed = np.flatnonzero(layer.stress > MAX_STRESS)
    _report(mesh, layer, stressed, "Large stretch of the time field", error=False)


def check_extrema(mesh: Mesh, layer: Layer, tolerance: float) -> None:
    """Interior samples whose time is strictly below or above every neighbour."""
    n = len(layer)
    lo = np.full(n, np.inf)
    hi = np.full(n, -np.inf)
    i, j = layer.edges[:, 0], layer.edges[:, 1]
    np.minimum.at(lo, i, layer.time[j])
    np.minimum.at(lo, j, layer.time[i])
    np.maximum.at(hi, i, layer.time[j])
    np.maximum.at(hi, j, layer.time[i])
    interior = layer.kind != BORDER
    minima = interior & (layer.time < lo - tolerance)
    maxima = interior & (layer.time > hi + tolerance)
    _report(mesh, layer, np.flatnonzero(minima | maxima), "Time extremum inside the sketch", error=True)


def run_checks(mesh: Mesh) -> None:
    """Run every check on the finest level and append the issues to *mesh*."""
    if not mesh.valid:
        return
    tolerance = mesh.params.time_accuracy * TIME_UNIT_MM
    before = len(mesh.issues)
    for layer in mesh.finest:
        check_flow(mesh, layer)
        check_constraints(mesh, layer)
        check_stress(mesh, layer)
        check_extrema(mesh, layer, tolerance)
    logger.debug("Flow checks reported %d issues", len(mesh.issues) - before)
