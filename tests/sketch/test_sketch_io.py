"""Tests for the JSON scene document and SVG import."""

import json

import numpy as np
import pytest

from knitsketch.sketch.io import (
    load_json,
    load_svg,
    parse_path,
    save_json,
    scene_from_dict,
    scene_to_dict,
)
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


def _rich_scene() -> Scene:
    scene = Scene()
    a = scene.create_sketch([(0, 0), (10, 0), (10, 10), (0, 10)], name="front")
    b = scene.create_sketch(
        [(20, 0), (30, 0), (30, 10), (20, 10)], transform=Transform(x=1, k=2, mirror_x=True)
    )
    scene.set_link(a, 1, b, 3, Transmission.REVERSE, mirror=True)
    scene.set_seam_mode(a, 0, SeamMode.SEAM)
    scene.set_degree(a, 2, Degree.CUBIC)
    c = scene.create_curve([(1, 1), (9, 1)], parent=a)
    scene.set_constraint(a, c, ConstraintType.ISOLINE, -1, weight=0.5)
    p = scene.create_pcurve(a, degree=2, samples={0: PCurveSample(c, 0, 0.25), 1: PCurveSample(a, 1, 0.5), 3: PCurveSample(a, 3, 0.5)})
    scene.create_image("img.png", 20, 10, parent=a, opacity=0.5)
    scene.create_anchor((2, 3), parent=a)
    scene.create_rectangle(0, 0, 3, 4)
    scene.node(a).layers.append({"type": "pattern", "params": {"pattern": "KP"}})
    scene.node(p).name = "guide"
    return scene


class TestJsonDocument:
    def test_round_trip_is_lossless(self):
        scene = _rich_scene()
        data = scene_to_dict(scene)
        again = scene_from_dict(json.loads(json.dumps(data)))
        assert scene_to_dict(again) == data
        assert again.nodes == scene.nodes
        assert again.links == scene.links

    def test_new_ids_continue(self):
        scene = _rich_scene()
        again = scene_from_dict(scene_to_dict(scene))
        nid = again.create_anchor((0, 0))
        assert nid not in scene.nodes and nid not in scene.links

    def test_file_round_trip(self, tmp_path):
        path = tmp_path / "scene.json"
        save_json(_rich_scene(), path)
        assert scene_to_dict(load_json(path)) == scene_to_dict(_rich_scene())

    def test_bad_version(self):
        with pytest.raises(SceneError, match="version"):
            scene_from_dict({"version": 99})

    def test_malformed(self):
        with pytest.raises(SceneError, match="Malformed"):
            scene_from_dict({"version": 1, "nodes": [{"kind": "sketch"}]})

    def test_invalid_json_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{nope", encoding="utf-8")
        with pytest.raises(SceneError):
            load_json(path)


class TestSvgImport:
    def test_path_commands(self):
        (sub,) = parse_path("M 0 0 L 10 0 h 5 v 5 Q 10 10 0 10 Z")
        assert sub.closed
        assert sub.points == [(0, 0), (10, 0), (15, 0), (15, 5), (0, 10)]
        assert sub.controls[3] == [(10, 10)]
        assert len(sub.controls) == len(sub.points)

    def test_relative_cubic_and_implicit_lineto(self):
        subs = parse_path("m 1 1 2 0 c 0 1 1 1 1 0 M 5 5 L 6 6")
        assert len(subs) == 2
        assert subs[0].points == [(1, 1), (3, 1), (4, 1)]
        assert subs[0].controls[1] == [(3, 2), (4, 2)]
        assert not subs[0].closed

    def test_smooth_cubic_reflects_control(self):
        (sub,) = parse_path("M0 0 C0 10 10 10 10 0 S20 -10 20 0 s10 10 10 0")
        assert sub.points == [(0, 0), (10, 0), (20, 0), (30, 0)]
        assert sub.controls[1] == [(10, -10), (20, -10)]
        assert sub.controls[2] == [(20, 10), (30, 10)]

    def test_smooth_quadratic_reflects_control(self):
        (sub,) = parse_path("M0 0 Q5 5 10 0 T20 0 t10 0")
        assert sub.points == [(0, 0), (10, 0), (20, 0), (30, 0)]
        assert sub.controls[1] == [(15, -5)]
        assert sub.controls[2] == [(25, 5)]

    def test_smooth_without_previous_curve(self):
        (sub,) = parse_path("M0 0 L5 0 S10 5 15 0 T25 0")
        assert sub.controls[1] == [(5, 0), (10, 5)]
        # a T after a cubic does not reflect the cubic control
        assert sub.controls[2] == [(15, 0)]

    def test_arc_as_cubics(self):
        (sub,) = parse_path("M0 0 A10 10 0 0 1 20 0")
        assert len(sub.points) == 3
        assert np.allclose(sub.points, [(0, 0), (10, -10), (20, 0)])
        k = 4 / 3 * np.tan(np.pi / 8) * 10
        assert np.allclose(sub.controls[0], [(0, -k), (10 - k, -10)])
        assert all(len(c) == 2 for c in sub.controls)

    def test_arc_sweep_and_radius_scaling(self):
        # radius 1 cannot reach the end point and is scaled to 10
        (sub,) = parse_path("M0 0 A1 1 0 0 0 20 0")
        assert np.allclose(sub.points[1], (10, 10))
        assert sub.points[-1] == (20, 0)

    def test_arc_compact_flags(self):
        (spaced,) = parse_path("M0 0 a10 10 0 0 1 10 10")
        (compact,) = parse_path("M0 0 a10 10 0 0110 10")
        assert compact.points == spaced.points
        assert compact.controls == spaced.controls
        assert np.allclose(spaced.points[-1], (10, 10))

    def test_degenerate_arcs(self):
        (sub,) = parse_path("M0 0 A0 5 0 0 1 10 0 A5 5 0 0 1 10 0")
        assert sub.points == [(0, 0), (10, 0)]
        assert sub.controls[0] == [(0, 0), (10, 0)]

    def test_explicit_closing_vertex_dropped(self):
        (sub,) = parse_path("M0,0 L10,0 L10,10 L0,0 Z")
        assert sub.points == [(0, 0), (10, 0), (10, 10)]

    def test_bad_path(self):
        with pytest.raises(SceneError):
            parse_path("M 0")

    def test_document(self):
        svg = """<svg xmlns="http://www.w3.org/2000/svg">
          <rect id="body" x="0" y="0" width="100" height="50"/>
          <polyline points="0,0 10,10 20,0"/>
          <polygon points="0,0 10,0 5,8"/>
          <path d="M0 0 C 0 10 10 10 10 0"/>
        </svg>"""
        scene = load_svg(svg)
        kinds = [n.kind for n in scene.nodes.values()]
        assert kinds == [NodeKind.SKETCH, NodeKind.CURVE, NodeKind.SKETCH, NodeKind.CURVE]
        rect = scene.nodes[1]
        assert rect.name == "body"
        # y axis flipped, counter-clockwise
        assert np.allclose(rect.points, [(0, -50), (100, -50), (100, 0), (0, 0)])
        cubic = scene.nodes[4]
        assert cubic.segments[0].degree == Degree.CUBIC
        assert cubic.segments[0].controls == [(0, -10), (10, -10)]

    def test_invalid_document(self):
        with pytest.raises(SceneError, match="Invalid SVG"):
            load_svg("<svg>")
