"""Tests for region segmentation and the reduced region graph."""

import numpy as np
import pytest

from knitsketch.config.params import Params
from knitsketch.mesh.mesh import Mesh
from knitsketch.mesh.regions import RegionGraph, _border_extrema, build_regions, split_intervals
from knitsketch.mesh.solver import solve
from knitsketch.sketch.scene import Scene
from knitsketch.sketch.types import Transmission

PARAMS = Params.from_mapping({})

U_SHAPE = [(0, 0), (60, 0), (60, 60), (40, 60), (40, 20), (20, 20), (20, 60), (0, 60)]


def _solved(points_list, links=()):
    scene = Scene()
    ids = [scene.create_sketch(pts) for pts in points_list]
    for a, sa, b, sb in links:
        scene.set_link(ids[a], sa, ids[b], sb, Transmission.PARENT)
    mesh = Mesh.build(scene, ids, PARAMS)
    solve(mesh, PARAMS)
    return mesh


class TestIntervals:
    def test_close_cuts_merge(self):
        assert split_intervals([0.0, 1.0, 50.0], PARAMS) == [0.0, 50.0]

    def test_greedy_split(self):
        assert split_intervals([0.0, 250.0], PARAMS) == pytest.approx([0.0, 100.0, 200.0, 250.0])

    def test_uniform_split(self):
        params = Params.from_mapping({"uniformRegionSplit": True})
        assert split_intervals([0.0, 250.0], params) == pytest.approx([0.0, 250 / 3, 500 / 3, 250.0])

    def test_border_extrema_of_a_cycle(self):
        times = np.array([0.0, 0.0, 5.0, 10.0, 10.0, 5.0, 7.0, 3.0])
        assert sorted(_border_extrema(times, 1e-3)) == [0.0, 5.0, 7.0, 10.0]

    def test_monotone_plateaus(self):
        times = np.array([0.0, 0.0, 5.0, 5.0])
        assert sorted(_border_extrema(times, 1e-3)) == [0.0, 5.0]


class TestRegionGraph:
    def test_rectangle_single_region(self):
        mesh = _solved([[(0, 0), (100, 0), (100, 50), (0, 50)]])
        graph = build_regions(mesh, PARAMS)
        assert graph.cuts == pytest.approx([0.0, 50.0], abs=0.05)
        assert len(graph.regions) == 1
        (reduced,) = graph.order()
        assert not reduced.circular
        assert mesh.regions is graph

    def test_split_is_an_error(self):
        mesh = _solved([U_SHAPE])
        graph = RegionGraph.build(mesh, PARAMS)
        assert graph.cuts == pytest.approx([0.0, 20.0, 60.0], abs=0.05)
        assert len(graph.regions) == 3
        base = min(graph.regions, key=lambda r: r.t0)
        assert len(base.next) == 2
        errors = graph.issues.errors()
        assert errors and errors[0].message.startswith("Region splits or merges")

    def test_reduced_graph_keeps_branches(self):
        mesh = _solved([U_SHAPE])
        graph = RegionGraph.build(mesh, PARAMS)
        ordered = graph.order()
        assert len(ordered) == 3
        assert sorted(ordered[0].next) == sorted(r.id for r in ordered[1:])

    def test_tube_is_circular(self):
        a = [(0, 0), (50, 0), (50, 100), (0, 100)]
        b = [(60, 0), (110, 0), (110, 100), (60, 100)]
        mesh = _solved([a, b], links=[(0, 1, 1, 3), (0, 3, 1, 1)])
        graph = build_regions(mesh, PARAMS)
        (reduced,) = graph.reduced
        assert reduced.circular
        tris = graph.triangles_of(reduced)
        assert set(tris) == {0, 1}
