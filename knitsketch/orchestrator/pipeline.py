"""
Pipeline — synchronous host-side driver of the compilation stages.

Pipeline stages (one algorithm per linked group of sketches):

  1. Mesh.build() + TimeSolver         → solved Mesh per group
  2. run_checks() + build_regions()    → flow issues, RegionGraph
  3. Sampling + apply_layers()         → StitchSampler per group
  4. Tracing                           → Trace per sampler
  5. Compiler                          → Knitout per trace

Stages are run by an :class:`~knitsketch.worker.iterative.IterativeWorker`
in the calling thread; every worker message is forwarded to the registered
callbacks.  Input problems (unsolvable constraints, thin regions, ...) are
collected as issues and never stop the run; an exception inside a stage
raises :class:`PipelineError` naming that stage.

Editing only seams reruns tracing (or sampling, by ``seamStop``) on the
existing samplers without solving the flow again.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from knitsketch.config.params import Params
from knitsketch.knitout.store import Knitout
from knitsketch.mesh.mesh import Mesh
from knitsketch.schemas.issues import Issue, IssueLog
from knitsketch.sketch.scene import Scene
from knitsketch.stitch.sampler import StitchSampler
from knitsketch.trace.trace import Trace
from knitsketch.worker.iterative import IterativeWorker, Message, Stage
from knitsketch.worker.stages import SAMPLING, PipelinePlan

logger = logging.getLogger(__name__)

Callback = Callable[[Optional[Message]], None]


class PipelineError(Exception):
    """Raised when a pipeline stage fails.

    Attributes:
        stage: Name of the stage that failed
            (``"flow"``, ``"sampling"``, ``"tracing"``, or ``"compiling"``).
        detail: Human-readable description of the failure.
    """

    def __init__(self, stage: str, detail: str) -> None:
        super().__init__(f"[{stage}] {detail}")
        self.stage = stage
        self.detail = detail


class Pipeline:
    """
    Scene-to-Knitout pipeline with access to every intermediate artifact.

    Call :meth:`update_meshes` (or :meth:`update_seams` after a seam edit)
    to schedule work, then :meth:`run`.  :meth:`run` alone schedules a full
    run of every linked group.
    """

    def __init__(self, scene: Scene, params: Optional[Params] = None) -> None:
        self.scene = scene
        self.params = params if params is not None else Params.from_mapping({})
        self.plan: Optional[PipelinePlan] = None
        self._pending: list[Stage] = []
        self._callbacks: list[Callback] = []
        self._error: Optional[Message] = None

    # ── Scheduling ───────────────────────────────────────────────────────────

    def register_callback(self, fn: Callback) -> None:
        """Receive every worker message of later runs."""
        self._callbacks.append(fn)

    def update_meshes(self, sketches: Optional[list[int]] = None) -> list[Mesh]:
        """Mesh the linked groups containing *sketches* (all groups by default).

        Every downstream artifact is invalidated.
        """
        groups = self.scene.linked_groups()
        if sketches is not None:
            wanted = set(sketches)
            groups = [g for g in groups if wanted.intersection(g)]
        self.plan = PipelinePlan(self.scene, self.params, groups, snapshots=False)
        self._pending = self.plan.stages()
        logger.debug("Scheduled %d groups", len(groups))
        return self.plan.meshes

    def update_seams(self, sketches: Optional[list[int]] = None) -> None:
        """Schedule the stages invalidated by a seam edit, then compiling.

        Falls back to a full run when nothing was sampled yet or
        ``seamStop`` is ``none``.
        """
        if self.plan is None or not self.plan.samplings or self.params.seam_stop == "none":
            self.update_meshes(sketches)
            return
        stages = self.plan.seam_stages(self.scene)
        if stages[-1].name == SAMPLING:
            stages.append(self.plan.tracing_stage())
        self._pending = stages + [self.plan.compiling_stage()]

    def clear(self) -> None:
        """Drop every artifact and pending stage."""
        self.plan = None
        self._pending = []
        self._error = None

    def _dispatch(self, message: Optional[Message]) -> None:
        if message is not None and "error" in message:
            self._error = message
        for fn in self._callbacks:
            fn(message)

    def run(self) -> list[Knitout]:
        """Run the pending stages and return the compiled programs.

        Raises
        ------
        PipelineError
            If a stage raised.  The ``stage`` attribute names that stage.
        """
        if not self._pending:
            self.update_meshes()
        stages, self._pending = self._pending, []
        self._error = None
        worker = IterativeWorker(self._dispatch)
        worker.start(stages)
        worker.run()
        if self._error is not None:
            raise PipelineError(self._error.get("name") or str(self._error["stage"]), self._error["error"])
        return self.knitouts

    # ── Accessors ────────────────────────────────────────────────────────────

    @property
    def meshes(self) -> list[Mesh]:
        return self.plan.meshes if self.plan is not None else []

    def get_samplers(self) -> list[StitchSampler]:
        if self.plan is None:
            return []
        return [s.sampler for s in self.plan.samplings]

    def get_sampler(self, sketch: int) -> Optional[StitchSampler]:
        """Sampler covering the sketch with id *sketch*, if any."""
        return next((s for s in self.get_samplers() if sketch in s.sketch_ids), None)

    def get_traces(self) -> list[Trace]:
        if self.plan is None:
            return []
        return [t.trace for t in self.plan.tracings]

    def get_trace_index(self, sampler: StitchSampler) -> int:
        """Index of the trace of *sampler*, ``-1`` if it was not traced."""
        traces = self.get_traces()
        for i, trace in enumerate(traces):
            if trace.sampler is sampler:
                return i
        return -1

    def get_trace(self, sampler: StitchSampler) -> Optional[Trace]:
        index = self.get_trace_index(sampler)
        return self.get_traces()[index] if index >= 0 else None

    def get_node_index(self, trace_idx: int) -> list[tuple[int, int]]:
        """``(start, end)`` entry intervals of every node of a trace."""
        traces = self.get_traces()
        if not 0 <= trace_idx < len(traces):
            return []
        return list(traces[trace_idx].nodes)

    @property
    def knitouts(self) -> list[Knitout]:
        if self.plan is None:
            return []
        return [c.k for c in self.plan.compilers if c.done]

    @property
    def issues(self) -> IssueLog:
        log = IssueLog()
        if self.plan is not None:
            log.extend(self.plan.issues())
        return log

    def errors(self) -> list[Issue]:
        return self.issues.errors()
