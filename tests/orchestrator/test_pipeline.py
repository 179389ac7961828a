"""Tests for orchestrator.pipeline — the synchronous host-side driver."""

from __future__ import annotations

import pytest

from knitsketch.compiler.compiler import Compiler
from knitsketch.config.params import Params
from knitsketch.orchestrator.pipeline import Pipeline, PipelineError
from knitsketch.sketch.scene import Scene
from knitsketch.sketch.types import SeamMode
from knitsketch.stitch.sampler import StitchSampler

# ── Shared fixtures ────────────────────────────────────────────────────────────


def _scene() -> tuple[Scene, int, int]:
    scene = Scene()
    a = scene.create_sketch([(0, 0), (100, 0), (100, 50), (0, 50)])
    b = scene.create_sketch([(200, 0), (240, 0), (240, 30), (200, 30)])
    return scene, a, b


@pytest.fixture(scope="module")
def ran():
    scene, a, b = _scene()
    pipeline = Pipeline(scene)
    knitouts = pipeline.run()
    return pipeline, knitouts, a, b


# ── PipelineError ─────────────────────────────────────────────────────────────


class TestPipelineError:
    def test_message_format(self):
        err = PipelineError("tracing", "wale moves too far")
        assert str(err) == "[tracing] wale moves too far"

    def test_attributes(self):
        err = PipelineError("compiling", "no loop")
        assert err.stage == "compiling"
        assert err.detail == "no loop"

    def test_is_exception(self):
        with pytest.raises(PipelineError):
            raise PipelineError("flow", "oops")

    def test_failing_stage_raises(self, monkeypatch):
        def fail(self):
            raise RuntimeError("needle out of range")

        monkeypatch.setattr(Compiler, "step", fail)
        scene, _, _ = _scene()
        with pytest.raises(PipelineError) as info:
            Pipeline(scene).run()
        assert info.value.stage == "compiling"
        assert info.value.detail == "RuntimeError: needle out of range"


# ── Full run ──────────────────────────────────────────────────────────────────


class TestRun:
    def test_one_program_per_group(self, ran):
        pipeline, knitouts, _, _ = ran
        assert len(knitouts) == 2
        assert pipeline.knitouts == knitouts
        assert all(k.to_string().startswith(";!knitout-2") for k in knitouts)

    def test_no_errors(self, ran):
        pipeline, _, _, _ = ran
        assert pipeline.errors() == []
        assert not pipeline.issues.has_errors()

    def test_meshes(self, ran):
        pipeline, _, a, b = ran
        assert [m.sketch_ids for m in pipeline.meshes] == [[a], [b]]

    def test_callbacks_see_every_stage(self):
        scene, _, _ = _scene()
        pipeline = Pipeline(scene)
        messages = []
        pipeline.register_callback(messages.append)
        pipeline.run()
        assert [m["name"] for m in messages][0] == "flow"
        assert messages[-1]["name"] == "compiling"
        assert messages[-1]["progress"] == 1.0
        assert not any("meshes" in m or "knitouts" in m for m in messages)


# ── Accessors ─────────────────────────────────────────────────────────────────


class TestAccessors:
    def test_samplers_by_sketch(self, ran):
        pipeline, _, a, b = ran
        samplers = pipeline.get_samplers()
        assert len(samplers) == 2
        assert pipeline.get_sampler(a) is samplers[0]
        assert pipeline.get_sampler(b) is samplers[1]
        assert pipeline.get_sampler(9999) is None

    def test_trace_of_sampler(self, ran):
        pipeline, _, _, _ = ran
        samplers = pipeline.get_samplers()
        assert pipeline.get_trace_index(samplers[1]) == 1
        assert pipeline.get_trace(samplers[0]) is pipeline.get_traces()[0]

    def test_unknown_sampler(self, ran):
        pipeline, _, _, _ = ran
        stranger = StitchSampler([1], 1.0, 1.0)
        assert pipeline.get_trace_index(stranger) == -1
        assert pipeline.get_trace(stranger) is None

    def test_node_index(self, ran):
        pipeline, _, _, _ = ran
        trace = pipeline.get_traces()[0]
        nodes = pipeline.get_node_index(0)
        assert nodes == list(trace.nodes)
        assert nodes[0][0] == 0
        assert nodes[-1][1] == len(trace) - 1
        assert pipeline.get_node_index(7) == []

    def test_empty_before_run(self):
        scene, _, _ = _scene()
        pipeline = Pipeline(scene)
        assert pipeline.meshes == []
        assert pipeline.get_samplers() == []
        assert pipeline.get_traces() == []
        assert pipeline.knitouts == []
        assert len(pipeline.issues) == 0


# ── Scheduling ────────────────────────────────────────────────────────────────


class TestScheduling:
    def test_update_meshes_filters_groups(self):
        scene, a, b = _scene()
        pipeline = Pipeline(scene)
        meshes = pipeline.update_meshes([b])
        assert [m.sketch_ids for m in meshes] == [[b]]
        assert len(pipeline.run()) == 1

    def test_seam_edit_keeps_meshes(self):
        scene, a, _ = _scene()
        pipeline = Pipeline(scene)
        before = [k.to_string() for k in pipeline.run()]
        meshes = pipeline.meshes
        samplers = pipeline.get_samplers()
        pipeline.update_seams()
        after = [k.to_string() for k in pipeline.run()]
        assert pipeline.meshes is meshes
        assert all(new is old for new, old in zip(pipeline.get_samplers(), samplers))
        assert after == before

    def test_seam_edit_is_applied(self):
        scene, a, _ = _scene()
        pipeline = Pipeline(scene)
        pipeline.run()
        scene.set_seam_mode(a, 0, SeamMode.SEAM)
        pipeline.update_seams()
        pipeline.run()
        assert pipeline.meshes[0].seam_segments[a] == {0}
        assert len(pipeline.knitouts) == 2

    def test_seam_stop_sampling_resamples(self):
        scene, _, _ = _scene()
        pipeline = Pipeline(scene, Params.from_mapping({"seamStop": "sampling"}))
        pipeline.run()
        samplers = pipeline.get_samplers()
        pipeline.update_seams()
        knitouts = pipeline.run()
        assert len(knitouts) == 2
        assert all(new is not old for new, old in zip(pipeline.get_samplers(), samplers))
        assert pipeline.get_trace_index(pipeline.get_samplers()[0]) == 0

    def test_seam_edit_before_run_meshes(self):
        scene, _, _ = _scene()
        pipeline = Pipeline(scene)
        pipeline.update_seams()
        assert len(pipeline.meshes) == 2

    def test_seam_stop_none_remeshes(self):
        scene, _, _ = _scene()
        pipeline = Pipeline(scene, Params.from_mapping({"seamStop": "none"}))
        pipeline.run()
        meshes = pipeline.meshes
        pipeline.update_seams()
        assert pipeline.meshes is not meshes

    def test_clear(self):
        scene, _, _ = _scene()
        pipeline = Pipeline(scene)
        pipeline.run()
        pipeline.clear()
        assert pipeline.plan is None
        assert pipeline.knitouts == []
