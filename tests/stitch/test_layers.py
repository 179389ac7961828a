"""Tests for sketch layers applied to sampled stitches."""

import pytest
from PIL import Image

from knitsketch.config.params import Params
from knitsketch.mesh.mesh import Mesh
from knitsketch.mesh.regions import build_regions
from knitsketch.mesh.solver import solve
from knitsketch.sketch.scene import Scene
from knitsketch.stitch.layers import (
    LayerError,
    LayerParam,
    ParamType,
    SketchLayer,
    apply_layers,
    list_types,
    schema,
)
from knitsketch.stitch.sampler import StitchCode
from knitsketch.stitch.sampling import sample_stitches

PARAMS = Params.from_mapping({})


@pytest.fixture(scope="module")
def solved():
    scene = Scene()
    sid = scene.create_sketch([(0, 0), (100, 0), (100, 50), (0, 50)])
    mesh = Mesh.build(scene, [sid], PARAMS)
    solve(mesh, PARAMS)
    build_regions(mesh, PARAMS)
    return scene, sid, mesh


def _apply(solved, *layers):
    scene, sid, mesh = solved
    scene = scene.copy()
    scene.node(sid).layers.extend(layers)
    sampler = sample_stitches(mesh, PARAMS)
    apply_layers(sampler, scene)
    return sampler


class TestRegistry:
    def test_builtin_types(self):
        assert list_types() == ["image", "pattern", "program", "yarn"]

    def test_unknown_type(self):
        with pytest.raises(KeyError, match="Unknown layer type"):
            SketchLayer.from_dict(1, {"type": "lace"})

    def test_schema(self):
        names = {p["name"]: p for p in schema("program")}
        assert names["program"]["type"] == "enum"
        assert "tuck" in names["program"]["values"]

    def test_invalid_parameter(self):
        with pytest.raises(LayerError):
            SketchLayer.from_dict(1, {"type": "program", "params": {"program": "purl"}})
        with pytest.raises(LayerError):
            SketchLayer.from_dict(1, {"type": "yarn", "params": {"colour": 1}})

    def test_param_validation(self):
        assert LayerParam("n", ParamType.NUMBER).validate(2.5) == 2.5
        with pytest.raises(LayerError):
            LayerParam("n", ParamType.NUMBER).validate(True)
        with pytest.raises(LayerError):
            LayerParam("y", ParamType.YARNMASK).validate(1 << 10)


class TestLayers:
    def test_program_layer(self, solved):
        sampler = _apply(solved, {"type": "program", "params": {"program": "tuck"}})
        assert {s.program for s in sampler} == {StitchCode.TUCK}

    def test_pattern_rows_start_at_bottom(self, solved):
        sampler = _apply(solved, {"type": "pattern", "params": {"pattern": "TT\nKK"}})
        c0, c1, c2 = sampler.courses[:3]
        assert {sampler[s].program for s in c0.stitches} == {StitchCode.KNIT}
        assert {sampler[s].program for s in c1.stitches} == {StitchCode.TUCK}
        assert {sampler[s].program for s in c2.stitches} == {StitchCode.KNIT}

    def test_pattern_columns_tile(self, solved):
        sampler = _apply(solved, {"type": "pattern", "params": {"pattern": "KM"}})
        codes = [sampler[s].program for s in sampler.courses[0].stitches[:4]]
        assert codes == [StitchCode.KNIT, StitchCode.MISS, StitchCode.KNIT, StitchCode.MISS]

    def test_yarn_layer(self, solved):
        sampler = _apply(solved, {"type": "yarn", "params": {"yarnMask": 0b100}})
        assert {s.yarn_mask for s in sampler} == {0b100}

    def test_mask_limits_the_layer(self, solved):
        scene, sid, mesh = solved
        scene = scene.copy()
        rect = scene.create_rectangle(0, 0, 50, 50, parent=sid)
        scene.node(sid).layers.append({"type": "program", "params": {"program": "split", "mask": rect}})
        sampler = sample_stitches(mesh, PARAMS)
        apply_layers(sampler, scene)
        for s in sampler:
            assert (s.program == StitchCode.SPLIT) == (s.position[0] <= 50)

    def test_later_layers_win(self, solved):
        sampler = _apply(
            solved,
            {"type": "program", "params": {"program": "miss"}, "zindex": 2},
            {"type": "program", "params": {"program": "tuck"}, "zindex": 1},
        )
        assert {s.program for s in sampler} == {StitchCode.MISS}

    def test_image_layer(self, solved, tmp_path):
        img = Image.new("L", (10, 10), 255)
        for x in range(5):
            for y in range(10):
                img.putpixel((x, y), 0)
        path = tmp_path / "left.png"
        img.save(path)
        sampler = _apply(solved, {"type": "image", "params": {"image": str(path)}})
        for s in sampler:
            if s.position[0] < 45:
                assert s.program == StitchCode.TUCK
            elif s.position[0] > 55:
                assert s.program == StitchCode.KNIT

    def test_missing_image(self, solved, tmp_path):
        with pytest.raises(LayerError, match="Cannot read layer image"):
            _apply(solved, {"type": "image", "params": {"image": str(tmp_path / "none.png")}})
