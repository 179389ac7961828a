"""Tests for the flow and time solver and the flow checks."""

import numpy as np
import pytest
from scipy import sparse

from knitsketch.config.params import Params
from knitsketch.mesh.checks import run_checks
from knitsketch.mesh.isoline import isolines
from knitsketch.mesh.mesh import Mesh
from knitsketch.mesh.solver import TimeSolver, sample_components, solve
from knitsketch.sketch.scene import Scene
from knitsketch.sketch.types import ConstraintType, SeamMode, Transmission

PARAMS = Params.from_mapping({})


def _solved(scene, group, params=PARAMS):
    mesh = Mesh.build(scene, group, params)
    solve(mesh, params)
    run_checks(mesh)
    return mesh


def _rectangle(w=100, h=50):
    scene = Scene()
    sid = scene.create_sketch([(0, 0), (w, 0), (w, h), (0, h)])
    return scene, sid


def _tube():
    scene = Scene()
    a = scene.create_sketch([(0, 0), (50, 0), (50, 100), (0, 100)])
    b = scene.create_sketch([(60, 0), (110, 0), (110, 100), (60, 100)])
    scene.set_link(a, 1, b, 3, Transmission.PARENT)
    scene.set_link(a, 3, b, 1, Transmission.PARENT)
    return scene, a, b


class TestRectangle:
    def test_time_follows_height(self):
        scene, sid = _rectangle()
        mesh = _solved(scene, [sid])
        layer = mesh.finest[0]
        assert np.allclose(layer.time, layer.points[:, 1], atol=0.05)
        assert np.allclose(layer.flow, [0.0, 1.0], atol=1e-3)

    def test_no_issues(self):
        scene, sid = _rectangle()
        mesh = _solved(scene, [sid])
        assert not mesh.issues.has_errors()
        assert mesh.time_range() == pytest.approx((0.0, 50.0), abs=0.05)

    def test_invert_time(self):
        scene, sid = _rectangle()
        params = Params.from_mapping({"invertTime": True})
        mesh = _solved(scene, [sid], params)
        layer = mesh.finest[0]
        assert np.allclose(layer.time, 50.0 - layer.points[:, 1], atol=0.05)

    def test_stretch_is_one(self):
        scene, sid = _rectangle()
        mesh = _solved(scene, [sid])
        assert np.allclose(mesh.finest[0].stretch, 1.0, atol=1e-2)


class TestSolverSteps:
    def test_one_level_per_step(self):
        scene, sid = _rectangle()
        mesh = Mesh.build(scene, [sid], PARAMS)
        solver = TimeSolver(mesh, PARAMS)
        progress = []
        while not solver.step():
            progress.append(solver.progress)
        assert progress == pytest.approx([1 / 3, 2 / 3])
        assert solver.progress == 1.0

    def test_invalid_mesh_is_done(self):
        scene = Scene()
        sid = scene.create_sketch([(0, 0), (10, 10), (10, 0), (0, 10)])
        mesh = Mesh.build(scene, [sid], PARAMS)
        assert TimeSolver(mesh, PARAMS).step()


class TestConstraints:
    def test_direction_constraint_turns_flow(self):
        scene, sid = _rectangle()
        curve = scene.create_curve([(10, 25), (90, 25)], parent=sid)
        scene.set_constraint(sid, curve, ConstraintType.DIRECTION, 1)
        mesh = _solved(scene, [sid])
        layer = mesh.finest[0]
        near = np.abs(layer.points[:, 1] - 25.0) < 0.5 * layer.eta
        near &= (layer.points[:, 0] > 20) & (layer.points[:, 0] < 80)
        assert np.all(layer.flow[near, 0] > 0.9)

    def test_perpendicular_directions_conflict(self):
        scene, sid = _rectangle()
        h = scene.create_curve([(10, 25), (90, 25)], parent=sid)
        v = scene.create_curve([(50, 5), (50, 45)], parent=sid)
        scene.set_constraint(sid, h, ConstraintType.DIRECTION, 1)
        scene.set_constraint(sid, v, ConstraintType.DIRECTION, 1)
        mesh = _solved(scene, [sid])
        conflicts = [i for i in mesh.issues.errors() if i.message == "Conflicting flow constraints"]
        assert conflicts
        eta = mesh.finest[0].eta
        assert any(np.hypot(i.center[0] - 50, i.center[1] - 25) < 2 * eta for i in conflicts)

    def test_crossing_constraints_keep_time_finite(self):
        scene, sid = _rectangle()
        h = scene.create_curve([(10, 25), (90, 25)], parent=sid)
        v = scene.create_curve([(50, 5), (50, 45)], parent=sid)
        scene.set_constraint(sid, h, ConstraintType.DIRECTION, 1)
        scene.set_constraint(sid, v, ConstraintType.DIRECTION, 1)
        mesh = _solved(scene, [sid])
        for level in mesh.levels:
            for layer in level:
                assert np.all(np.isfinite(layer.time))
                assert layer.time.min() == pytest.approx(0.0)


class TestSampleComponents:
    def test_one_pin_per_component(self):
        # samples 0-1-2 chained, 3 alone, 4-5 paired
        rows = sparse.csr_matrix(
            ([1, -1, 1, -1, 1, -1], ([0, 0, 1, 1, 2, 2], [0, 1, 1, 2, 4, 5])), shape=(3, 6),
        )
        assert sample_components(rows.T @ rows).tolist() == [0, 3, 4]


class TestTube:
    def test_linked_times_agree(self):
        scene, a, b = _tube()
        mesh = _solved(scene, [a, b])
        for pairs in mesh.finest_links:
            ta = mesh.finest[pairs.layer_a].time[pairs.samples_a]
            tb = mesh.finest[pairs.layer_b].time[pairs.samples_b]
            assert np.allclose(ta, tb, atol=0.05)

    def test_isoline_closes_around_tube(self):
        scene, a, b = _tube()
        mesh = _solved(scene, [a, b])
        (chain,) = isolines(mesh, 49.7)
        assert chain.closed
        assert chain.length == pytest.approx(100.0, rel=1e-3)
        assert set(chain.layers.tolist()) == {0, 1}


class TestSeams:
    def test_update_seams_keeps_geometry(self):
        scene, sid = _rectangle()
        mesh = Mesh.build(scene, [sid], PARAMS)
        points = mesh.finest[0].points
        assert mesh.seam_segments[sid] == set()
        scene.set_seam_mode(sid, 2, SeamMode.SEAM)
        curve = scene.create_curve([(50, 5), (50, 45)], parent=sid)
        scene.set_constraint(sid, curve, ConstraintType.SEAM, 1)
        mesh.update_seams(scene)
        assert mesh.seam_segments[sid] == {2}
        (seam,) = mesh.seam_curves[sid]
        assert np.allclose(seam[:, 0], 50.0)
        assert mesh.finest[0].points is points

    def test_cleared_seams(self):
        scene, sid = _rectangle()
        scene.set_seam_mode(sid, 1, SeamMode.SEAM)
        mesh = Mesh.build(scene, [sid], PARAMS)
        assert mesh.seam_segments[sid] == {1}
        scene.set_seam_mode(sid, 1, SeamMode.AUTO)
        mesh.update_seams(scene)
        assert mesh.seam_segments[sid] == set()
        assert mesh.seam_curves == {}
