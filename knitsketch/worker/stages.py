"""
Pipeline stages run by the iterative worker: flow, sampling, tracing and
compiling.

One :class:`PipelinePlan` owns the algorithms of a run, one per linked group
of sketches.  Later stages build their algorithms from the results of the
earlier ones when they start, so a plan can be stopped after any stage and
resumed from its samplers when only the seams change.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from knitsketch.compiler.compiler import Compiler
from knitsketch.config.params import Params
from knitsketch.mesh.checks import run_checks
from knitsketch.mesh.mesh import Mesh
from knitsketch.mesh.regions import build_regions
from knitsketch.mesh.solver import TimeSolver
from knitsketch.schemas.issues import Issue
from knitsketch.sketch.io import scene_from_dict
from knitsketch.sketch.scene import Scene
from knitsketch.stitch.layers import apply_layers
from knitsketch.stitch.sampling import Sampling, seam_points
from knitsketch.trace.tracing import Tracing

from .iterative import Message, Stage

logger = logging.getLogger(__name__)

FLOW, SAMPLING, TRACING, COMPILING = "flow", "sampling", "tracing", "compiling"
STAGE_NAMES: tuple[str, ...] = (FLOW, SAMPLING, TRACING, COMPILING)


class PipelinePlan:
    """Algorithms of one pipeline run over the linked groups of a scene.

    Attributes:
        meshes: One mesh per group, built eagerly.
        solvers / samplings / tracings / compilers: Algorithms of every stage,
            filled when the stage starts.
        snapshots: Whether finished steps attach host snapshots to their
            messages.
    """

    def __init__(
        self,
        scene: Scene,
        params: Params,
        groups: Optional[list[list[int]]] = None,
        snapshots: bool = True,
    ) -> None:
        self.scene = scene
        self.params = params
        self.snapshots = snapshots
        self.groups = groups if groups is not None else scene.linked_groups()
        self.meshes = [Mesh.build(scene, group, params) for group in self.groups]
        self.solvers = [TimeSolver(mesh, params) for mesh in self.meshes]
        self.samplings: list[Sampling] = []
        self.tracings: list[Tracing] = []
        self.compilers: list[Compiler] = []

    def _log(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.params.verbose else logging.DEBUG, msg, *args)

    # ── Step functions ───────────────────────────────────────────────────────

    def segment(self, solver: TimeSolver) -> bool:
        mesh = solver.mesh
        run_checks(mesh)
        if mesh.valid:
            graph = build_regions(mesh, self.params)
            self._log("Group %s: %d reduced regions", mesh.sketch_ids, len(graph.reduced))
        return True

    def apply(self, sampling: Sampling) -> bool:
        apply_layers(sampling.sampler, self.scene)
        self._log("Group %s: %d stitches", sampling.sampler.sketch_ids, len(sampling.sampler))
        return True

    # ── Factories ────────────────────────────────────────────────────────────

    def _samplings(self) -> list[Sampling]:
        self.samplings = [Sampling(mesh, self.params) for mesh in self.meshes]
        return self.samplings

    def _tracings(self) -> list[Tracing]:
        self.tracings = [
            Tracing(s.sampler, self.params, seam_points(s.mesh) if s.mesh.valid else None)
            for s in self.samplings
        ]
        return self.tracings

    def _compilers(self) -> list[Compiler]:
        self.compilers = [Compiler(t.trace, self.params) for t in self.tracings]
        return self.compilers

    # ── Snapshots ────────────────────────────────────────────────────────────

    def issues(self) -> list[Issue]:
        out: list[Issue] = []
        for mesh in self.meshes:
            out.extend(mesh.issues)
        for s in self.samplings:
            out.extend(s.sampler.issues)
        for t in self.tracings:
            out.extend(t.trace.issues)
        return out

    def _flow_data(self, solvers: list[TimeSolver], message: Message, index: int) -> None:
        message["issues"] = [i.to_dict() for i in self.issues()]
        if self.snapshots:
            message["meshes"] = [s.mesh.to_dict() for s in solvers]

    def _sampling_data(self, samplings: list[Sampling], message: Message, index: int) -> None:
        message["issues"] = [i.to_dict() for i in self.issues()]
        if self.snapshots:
            message["samplers"] = [s.sampler.to_dict() for s in samplings]

    def _tracing_data(self, tracings: list[Tracing], message: Message, index: int) -> None:
        message["issues"] = [i.to_dict() for i in self.issues()]
        message["nodeIndices"] = [[list(n) for n in t.trace.nodes] for t in tracings]
        if self.snapshots:
            message["traces"] = [t.trace.to_dict() for t in tracings]

    def _compiling_data(self, compilers: list[Compiler], message: Message, index: int) -> None:
        if self.snapshots:
            message["knitouts"] = [c.k.to_data() for c in compilers]

    # ── Stages ───────────────────────────────────────────────────────────────

    def flow_stage(self) -> Stage:
        return Stage(
            algorithms=self.solvers,
            steps=[
                (lambda s: s.step(), lambda s: f"Solving flow (level {s.level})"),
                (self.segment, "Segmenting regions"),
            ],
            outputs=[False, True],
            data=self._flow_data,
            name=FLOW,
        )

    def sampling_stage(self) -> Stage:
        return Stage(
            steps=[(lambda s: s.step(), "Sampling regions"), (self.apply, "Applying layers")],
            outputs=[False, True],
            data=self._sampling_data,
            factory=self._samplings,
            name=SAMPLING,
        )

    def tracing_stage(self) -> Stage:
        return Stage(
            steps=[(lambda t: t.step(), "Tracing yarn")],
            outputs=[True],
            data=self._tracing_data,
            factory=self._tracings,
            name=TRACING,
        )

    def compiling_stage(self) -> Stage:
        return Stage(
            steps=[(lambda c: c.step(), "Generating code")],
            outputs=[True],
            data=self._compiling_data,
            factory=self._compilers,
            name=COMPILING,
        )

    def stages(self) -> list[Stage]:
        stages = [self.flow_stage(), self.sampling_stage(), self.tracing_stage(), self.compiling_stage()]
        for stage in stages:
            stage.context = self
        return stages

    def seam_stages(self, scene: Scene) -> list[Stage]:
        """Stages rerun after a seam edit, up to the ``seamStop`` stage."""
        self.scene = scene
        self.compilers = []
        for mesh in self.meshes:
            mesh.update_seams(scene)
        if self.params.seam_stop == "sampling":
            self.tracings = []
            stages = [self.sampling_stage()]
        else:
            stages = [self.tracing_stage()]
        for stage in stages:
            stage.context = self
        return stages


def stages_from_message(message: Message, prev: list[Stage]) -> list[Stage]:
    """Build the stages for a host message ``{sketches, meshes, params, seamEdit}``.

    ``sketches`` is a serialized scene, ``meshes`` an optional list of sketch
    id groups (defaults to the linked groups of the scene).  A seam edit
    reuses the previous plan when one has sampled already.
    """
    scene = scene_from_dict(message["sketches"])
    params = Params.from_mapping(message.get("params") or {})
    if message.get("seamEdit") and params.seam_stop != "none":
        plan = next((s.context for s in prev if isinstance(s.context, PipelinePlan)), None)
        if plan is not None and plan.samplings and all(s.done for s in plan.samplings):
            plan.params = params
            return plan.seam_stages(scene)
    groups = message.get("meshes") or None
    return PipelinePlan(scene, params, groups).stages()
