"""Tests for the scene arena and its editing operations."""

import numpy as np
import pytest

from knitsketch.sketch.scene import Scene, SceneError
from knitsketch.sketch.transform import Transform
from knitsketch.sketch.types import (
    ConstraintType,
    Degree,
    NodeKind,
    PCurveSample,
    SeamMode,
    Transmission,
)

_SQUARE = [(0, 0), (10, 0), (10, 10), (0, 10)]


def _two_linked():
    scene = Scene()
    a = scene.create_sketch(_SQUARE)
    b = scene.create_sketch([(20, 0), (30, 0), (30, 10), (20, 10)])
    # right edge of a (segment 1) with left edge of b (segment 3)
    link = scene.set_link(a, 1, b, 3)
    return scene, a, b, link


class TestCreation:
    def test_sketch_segments_match_vertices(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        node = scene.node(s)
        assert node.kind == NodeKind.SKETCH
        assert len(node.segments) == 4
        assert node.closed

    def test_curve(self):
        scene = Scene()
        c = scene.create_curve([(0, 0), (1, 1), (2, 0)])
        assert scene.node(c).segment_count == 2
        assert len(scene.node(c).segments) == 2

    def test_sketch_needs_three_vertices(self):
        with pytest.raises(SceneError):
            Scene().create_sketch([(0, 0), (1, 0)])

    def test_other_kinds(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        img = scene.create_image("shirt.png", 100, 50, parent=s)
        anchor = scene.create_anchor((3, 4), parent=s)
        rect = scene.create_rectangle(1, 2, 4, 3)
        assert scene.node(img).parent == s
        assert scene.node(s).children == [img, anchor]
        assert np.allclose(scene.global_points(rect)[2], [5, 5])

    def test_ids_are_unique(self):
        scene, a, b, link = _two_linked()
        assert len({a, b, link}) == 3


class TestHierarchy:
    def test_global_transform_composes(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE, transform=Transform(x=10, k=2))
        c = scene.create_curve([(0, 0), (1, 0)], parent=s, transform=Transform(y=1))
        assert np.allclose(scene.global_points(c), [[10, 2], [12, 2]])

    def test_set_parent_keeps_global_geometry(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE, transform=Transform(x=5, y=-3, k=2, mirror_x=True))
        c = scene.create_curve([(1, 1), (4, 2)])
        before = scene.global_points(c)
        scene.set_parent(c, s)
        assert np.allclose(scene.global_points(c), before)
        scene.unparent(c)
        assert np.allclose(scene.global_points(c), before)
        assert scene.node(c).parent is None

    def test_cycle_rejected(self):
        scene = Scene()
        a = scene.create_sketch(_SQUARE)
        b = scene.create_sketch(_SQUARE, parent=a)
        with pytest.raises(SceneError, match="descendant"):
            scene.set_parent(a, b)

    def test_delete_removes_children_links_and_constraints(self):
        scene, a, b, link = _two_linked()
        c = scene.create_curve([(1, 1), (2, 2)], parent=a)
        scene.set_constraint(a, c)
        scene.delete(c)
        assert scene.node(a).constraints == {}
        scene.delete(b)
        assert link not in scene.links
        assert scene.node(a).segments[1].link_id is None
        assert scene.validate() == []

    def test_delete_clears_pcurve_samples(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        c = scene.create_curve([(0, 0), (10, 0)], parent=s)
        p = scene.create_pcurve(s, samples={0: PCurveSample(c, 0, 0.0), 3: PCurveSample(s, 2, 0.5)})
        scene.delete(c)
        assert scene.node(p).samples[0] is None
        assert not scene.pcurve_is_valid(p)


class TestApplyScale:
    def test_commits_transform(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE, transform=Transform(x=3, y=4, k=2, mirror_y=True))
        scene.set_degree(s, 0, Degree.QUADRATIC)
        c = scene.create_curve([(1, 1), (2, 5)], parent=s, transform=Transform(x=1))
        before_s = scene.global_points(s)
        before_c = scene.global_points(c)
        before_poly = scene.polyline(s, 0.01)
        scene.apply_scale(s)
        assert scene.node(s).transform.is_identity
        assert np.allclose(scene.global_points(s), before_s, atol=1e-6)
        assert np.allclose(scene.global_points(c), before_c, atol=1e-6)
        assert np.allclose(scene.polyline(s, 0.01), before_poly, atol=1e-6)

    def test_recursive(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE, transform=Transform(k=3))
        c = scene.create_curve([(1, 1), (2, 5)], parent=s, transform=Transform(x=1, k=2))
        before = scene.global_points(c)
        scene.apply_scale(s, recursive=True)
        assert scene.node(c).transform.is_identity
        assert np.allclose(scene.global_points(c), before)

    def test_image_rejected(self):
        scene = Scene()
        img = scene.create_image("a.png", 1, 1)
        with pytest.raises(SceneError):
            scene.apply_scale(img)

    def test_mirror_toggles(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        scene.mirror(s, "x")
        assert scene.node(s).transform.mirror_x
        scene.mirror(s, "x")
        assert scene.node(s).transform.is_identity


class TestLinks:
    def test_link_is_symmetric(self):
        scene, a, b, link = _two_linked()
        assert scene.node(a).segments[1].link_id == link
        assert scene.node(b).segments[3].link_id == link
        assert scene.get_link(b, 3).other(b, 3).node_id == a

    def test_relink_clears_old(self):
        scene, a, b, link = _two_linked()
        new = scene.set_link(a, 1, b, 1)
        assert link not in scene.links
        assert scene.node(b).segments[3].link_id is None
        assert scene.node(b).segments[1].link_id == new

    def test_clear_link(self):
        scene, a, b, _ = _two_linked()
        scene.clear_link(b, 3)
        assert scene.node(a).segments[1].link_id is None
        assert not scene.links

    def test_cannot_link_curves(self):
        scene = Scene()
        a = scene.create_sketch(_SQUARE)
        c = scene.create_curve([(0, 0), (1, 0)])
        with pytest.raises(SceneError, match="sketch"):
            scene.set_link(a, 0, c, 0)

    def test_divide_linked_segment(self):
        scene, a, b, _ = _two_linked()
        idx = scene.divide_segment(a, 1, 0.25)
        assert idx == 2
        assert np.allclose(scene.node(a).points[2], (10, 2.5))
        # other side divided at the matching parameter
        assert np.allclose(scene.node(b).points[4], (20, 2.5))
        assert len(scene.links) == 2
        # bottom part of a's edge pairs with bottom part of b's edge
        assert scene.get_link(a, 1).other(a, 1).seg_idx == 4
        assert scene.get_link(a, 2).other(a, 2).seg_idx == 3
        assert scene.validate() == []

    def test_divide_mirror_link(self):
        scene, a, b, _ = _two_linked()
        scene.set_link(a, 1, b, 3, mirror=True)
        scene.divide_segment(a, 1, 0.25)
        assert np.allclose(scene.node(b).points[4], (20, 7.5))
        assert scene.get_link(a, 1).other(a, 1).seg_idx == 3

    def test_divide_shifts_later_links(self):
        scene = Scene()
        a = scene.create_sketch(_SQUARE)
        b = scene.create_sketch([(20, 0), (30, 0), (30, 10), (20, 10)])
        link = scene.set_link(a, 3, b, 1)
        scene.divide_segment(a, 0)
        assert scene.links[link].a.seg_idx == 4
        assert scene.node(a).segments[4].link_id == link
        assert scene.validate() == []

    def test_divide_keeps_curve_shape(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        scene.set_degree(s, 0, Degree.CUBIC)
        scene.set_control(s, 0, 0, (2, -5))
        before = scene.polyline(s, 0.001)
        scene.divide_segment(s, 0, 0.4)
        after = scene.polyline(s, 0.001)
        from knitsketch.utilities.geometry import polyline_length

        assert polyline_length(after, closed=True) == pytest.approx(
            polyline_length(before, closed=True), rel=1e-3
        )

    def test_transmission(self):
        scene, a, b, link = _two_linked()
        l = scene.links[link]
        assert scene.resolve_transmission(l) == Transmission.ALIGNED
        scene.set_seam_mode(b, 3, SeamMode.SEAM)
        assert scene.resolve_transmission(l) == Transmission.UNRELATED
        scene.set_transmission(a, 1, Transmission.PARENT, mirror=True)
        # only the creating side's seam mode matters for parent links
        assert scene.resolve_transmission(l) == Transmission.ALIGNED
        assert l.mirror
        scene.set_transmission(a, 1, Transmission.REVERSE)
        assert l.mirror
        assert scene.resolve_transmission(l) == Transmission.REVERSE

    def test_linked_groups(self):
        scene, a, b, _ = _two_linked()
        c = scene.create_sketch(_SQUARE)
        assert scene.linked_groups() == [[a, b], [c]]

    def test_length_mismatch_warning(self):
        scene = Scene()
        a = scene.create_sketch(_SQUARE)
        b = scene.create_sketch([(0, 0), (20, 0), (20, 20), (0, 20)])
        scene.set_link(a, 0, b, 0)
        issues = scene.validate()
        assert len(issues) == 1 and not issues[0].is_error


class TestConstraints:
    def test_set_and_replace(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        c = scene.create_curve([(1, 1), (9, 1)], parent=s)
        scene.set_constraint(s, c, ConstraintType.DIRECTION, 1)
        scene.set_constraint(s, c, ConstraintType.ISOLINE, -1, weight=2)
        constraints = scene.constraints_of(s)
        assert len(constraints) == 1
        assert constraints[0].type == ConstraintType.ISOLINE
        assert constraints[0].direction == -1

    def test_target_must_be_child(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        c = scene.create_curve([(1, 1), (9, 1)])
        with pytest.raises(SceneError, match="child"):
            scene.set_constraint(s, c)

    def test_reparenting_drops_constraint(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        c = scene.create_curve([(1, 1), (9, 1)], parent=s)
        scene.set_constraint(s, c)
        scene.unparent(c)
        assert scene.constraints_of(s) == []

    def test_clear(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        c = scene.create_curve([(1, 1), (9, 1)], parent=s)
        scene.set_constraint(s, c)
        scene.clear_constraint(s, c)
        assert scene.constraints_of(s) == []


class TestPCurve:
    def test_slots_follow_degree(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        p = scene.create_pcurve(s, degree=1)
        with pytest.raises(SceneError, match="Slot 1"):
            scene.set_pcurve_sample(p, 1, PCurveSample(s, 0, 0.5))
        scene.set_pcurve_degree(p, 2)
        scene.set_pcurve_sample(p, 1, PCurveSample(s, 0, 0.5))

    def test_controls_sample_other_curves(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        p = scene.create_pcurve(s, samples={0: PCurveSample(s, 0, 0.5), 3: PCurveSample(s, 2, 0.5)})
        assert np.allclose(scene.pcurve_controls(p), [[5, 0], [5, 10]])
        assert np.allclose(scene.polyline(p), [[5, 0], [5, 10]])

    def test_self_reference_rejected(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        p = scene.create_pcurve(s, samples={0: PCurveSample(s, 0, 0.0), 3: PCurveSample(s, 1, 0.0)})
        q = scene.create_pcurve(s, samples={0: PCurveSample(p, 0, 0.5), 3: PCurveSample(s, 2, 0.0)})
        with pytest.raises(SceneError, match="itself"):
            scene.set_pcurve_sample(p, 0, PCurveSample(p, 0, 0.5))
        with pytest.raises(SceneError, match="itself"):
            scene.set_pcurve_sample(p, 0, PCurveSample(q, 0, 0.5))

    def test_missing_slot(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        p = scene.create_pcurve(s)
        with pytest.raises(SceneError, match="missing"):
            scene.pcurve_controls(p)

    def test_pcurve_as_constraint_target(self):
        scene = Scene()
        s = scene.create_sketch(_SQUARE)
        p = scene.create_pcurve(s, samples={0: PCurveSample(s, 0, 0.5), 3: PCurveSample(s, 2, 0.5)})
        scene.set_constraint(s, p)
        assert scene.validate() == []
