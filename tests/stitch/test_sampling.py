"""Tests for stitch sampling over solved meshes."""

from dataclasses import replace

import numpy as np
import pytest

from knitsketch.config.params import Params
from knitsketch.mesh.checks import run_checks
from knitsketch.mesh.mesh import Mesh
from knitsketch.mesh.regions import build_regions
from knitsketch.mesh.solver import solve
from knitsketch.sketch.scene import Scene
from knitsketch.sketch.types import ConstraintType, Transmission
from knitsketch.stitch.sampler import StitchType
from knitsketch.stitch.sampling import Sampling, sample_stitches

PARAMS = Params.from_mapping({})


def _mesh(scene, group, params=PARAMS):
    mesh = Mesh.build(scene, group, params)
    solve(mesh, params)
    run_checks(mesh)
    build_regions(mesh, params)
    return mesh


@pytest.fixture(scope="module")
def rectangle():
    scene = Scene()
    sid = scene.create_sketch([(0, 0), (100, 0), (100, 50), (0, 50)])
    return _mesh(scene, [sid])


@pytest.fixture(scope="module")
def tube():
    scene = Scene()
    a = scene.create_sketch([(0, 0), (50, 0), (50, 100), (0, 100)])
    b = scene.create_sketch([(60, 0), (110, 0), (110, 100), (60, 100)])
    scene.set_link(a, 1, b, 3, Transmission.PARENT)
    scene.set_link(a, 3, b, 1, Transmission.PARENT)
    return _mesh(scene, [a, b])


@pytest.fixture(scope="module")
def triangle():
    scene = Scene()
    sid = scene.create_sketch([(0, 0), (100, 0), (50, 100)])
    base = scene.create_curve([(0, 0), (100, 0)], parent=sid)
    scene.set_constraint(sid, base, ConstraintType.ISOLINE, 1)
    return _mesh(scene, [sid])


class TestRectangle:
    def test_course_and_wale_counts(self, rectangle):
        sampler = sample_stitches(rectangle, PARAMS)
        # 50 mm / 3 mm courses, 100 mm / 1.35 mm stitches
        assert len(sampler.courses) == 17
        assert {len(c) for c in sampler.courses} == {74}
        assert not sampler.short_row_courses()

    def test_stitch_types(self, rectangle):
        sampler = sample_stitches(rectangle, PARAMS)
        first, last = sampler.courses[0], sampler.courses[-1]
        assert {sampler.stitch_type(s) for s in first.stitches} == {StitchType.CASTON}
        assert {sampler.stitch_type(s) for s in last.stitches} == {StitchType.CASTOFF}
        assert sampler.irregular_count() == 0
        assert sampler.check() == []

    def test_courses_follow_time(self, rectangle):
        sampler = sample_stitches(rectangle, PARAMS)
        ys = [np.mean([sampler[s].point[1] for s in c.stitches]) for c in sampler.courses]
        assert np.all(np.diff(ys) > 0)
        assert ys[0] == pytest.approx(50 / 34, abs=0.1)

    def test_default_yarn(self, rectangle):
        sampler = sample_stitches(rectangle, PARAMS)
        assert {s.yarn_mask for s in sampler} == {1}

    def test_local_positions(self, rectangle):
        sampler = sample_stitches(rectangle, PARAMS)
        s = sampler[0]
        assert s.position == pytest.approx(s.point)

    def test_one_step_per_region(self, rectangle):
        sampling = Sampling(rectangle, PARAMS)
        assert sampling.progress == 0.0
        assert sampling.step()
        assert sampling.done
        assert sampling.progress == 1.0

    def test_region_without_time_span_is_skipped(self, rectangle):
        sampling = Sampling(rectangle, PARAMS)
        region = sampling.order[0]
        sampling.sample_region(replace(region, t1=float("nan")))
        assert len(sampling.sampler) == 0
        (issue,) = sampling.sampler.issues.errors()
        assert issue.source == "sampling"
        assert region.id not in sampling.bounds

    def test_finer_sizing(self, rectangle):
        params = Params.from_mapping({"sizing": {"default": {"wale": "1 stitches / mm", "course": "0.5 stitches / mm"}}})
        sampler = sample_stitches(rectangle, params)
        assert len(sampler.courses) == 25
        assert {len(c) for c in sampler.courses} == {100}


class TestTube:
    def test_closed_courses(self, tube):
        sampler = sample_stitches(tube, PARAMS)
        assert len(sampler.courses) == 33
        assert all(c.closed for c in sampler.courses)
        assert {len(c) for c in sampler.courses} == {74}

    def test_no_irregular_stitches(self, tube):
        sampler = sample_stitches(tube, PARAMS)
        assert sampler.irregular_count() == 0
        assert sampler.check() == []

    def test_courses_span_both_sketches(self, tube):
        sampler = sample_stitches(tube, PARAMS)
        assert {sampler[s].layer for s in sampler.courses[5].stitches} == {0, 1}

    def test_course_starts_stay_aligned(self, tube):
        sampler = sample_stitches(tube, PARAMS)
        starts = np.array([sampler[c.stitches[0]].point for c in sampler.courses])
        assert np.ptp(starts[:, 0]) < 2 * PARAMS.wale_dist


class TestTriangle:
    def test_short_rows(self, triangle):
        sampler = sample_stitches(triangle, PARAMS)
        blocks = sampler.short_row_courses()
        assert blocks
        for course in blocks:
            for s in course.stitches:
                assert len(sampler[s].prev_wales) == 1

    def test_courses_shrink(self, triangle):
        sampler = sample_stitches(triangle, PARAMS)
        regular = [c for c in sampler.courses if not c.short_row]
        assert len(regular[0]) > 2 * len(regular[-1])

    def test_no_irregulars_on_base(self, triangle):
        sampler = sample_stitches(triangle, PARAMS)
        base = sampler.courses[0]
        assert {sampler.stitch_type(s) for s in base.stitches} == {StitchType.CASTON}
        assert sampler.check() == []

    def test_short_rows_sit_on_the_sides(self, triangle):
        sampler = sample_stitches(triangle, PARAMS)
        xs = [sampler[s].point[0] for c in sampler.short_row_courses() for s in c.stitches]
        # columns grow toward the slanted borders, not the middle
        assert min(abs(x - 50.0) for x in xs) > 5.0

    def test_no_short_rows_above_threshold(self, triangle):
        params = Params.from_mapping({"ssThreshold": 1000})
        sampler = sample_stitches(triangle, params)
        assert not sampler.short_row_courses()
