"""
Cooperative scheduler for staged, step-wise algorithms.

A computation is a list of :class:`Stage` objects.  Every stage runs a list
of algorithms in lock-step through its ``steps``; a step function returns
whether the algorithm finished that step (``None`` counts as done).  A stage
moves to its next step once every algorithm is done with the current one.

:meth:`IterativeWorker.update` runs steps until ``update_delta`` seconds have
elapsed, then posts one message:

* a full snapshot (built by the stage's ``data`` function) when the step has
  an output and ``transfer_delta`` seconds passed since the last transfer, or
  the step just completed;
* a light progress message otherwise.

Progress covers the whole stage: every step takes an equal share, filled
by the mean of the algorithms' ``progress``.  It never decreases within a
stage and reaches 1 when the last step completes.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Union

logger = logging.getLogger(__name__)

UPDATE_DELTA = 0.06
TRANSFER_DELTA = 0.15

StepFunction = Callable[[Any], Optional[bool]]
StepMessage = Union[str, Callable[[Any], str]]
Message = dict[str, Any]


@dataclass
class Stage:
    """One stage of a computation.

    Attributes:
        algorithms: Algorithms run in lock-step; each exposes ``progress``.
        steps: ``(step, message)`` pairs; *message* may be a function of the
            first algorithm.
        outputs: Per step, whether its completion carries a snapshot.
        data: ``data(algorithms, message, step_index)`` fills the snapshot.
        factory: Builds the algorithms when the stage starts, for stages
            depending on the results of earlier ones.
        name: Label used in messages and errors.
        context: Object owning the algorithms, handed back to the message
            handler when a run restarts.
    """

    algorithms: list[Any] = field(default_factory=list)
    steps: list[tuple[StepFunction, StepMessage]] = field(default_factory=list)
    outputs: list[bool] = field(default_factory=list)
    data: Optional[Callable[[list[Any], Message, int], None]] = None
    factory: Optional[Callable[[], list[Any]]] = None
    name: str = ""
    context: Any = None

    def __post_init__(self) -> None:
        if not self.outputs:
            self.outputs = [False] * len(self.steps)
        if len(self.outputs) != len(self.steps):
            raise ValueError(f"Stage {self.name!r} needs one output flag per step")


class IterativeWorker:
    """Runs stages one step at a time and reports to *post_message*."""

    def __init__(
        self,
        post_message: Callable[[Optional[Message]], None],
        preload: Sequence[Future] = (),
        update_delta: float = UPDATE_DELTA,
        transfer_delta: float = TRANSFER_DELTA,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.post_message = post_message
        self.preload = list(preload)
        self.update_delta = update_delta
        self.transfer_delta = transfer_delta
        self.clock = clock
        self.stages: list[Stage] = []
        self.stage = 0
        self.sub_stage = 0
        self.last_update = 0.0
        self.last_transfer = -transfer_delta
        self._progress = 0.0

    @property
    def busy(self) -> bool:
        return self.stage < len(self.stages)

    def start(self, stages: list[Stage]) -> None:
        """Replace the computation and restart at the first stage."""
        self.stages = stages
        self.stage = 0
        self.sub_stage = 0
        self._progress = 0.0
        self.last_update = self.clock()

    def cancel(self) -> None:
        """Drop every stage and acknowledge with a ``None`` message."""
        self.stages = []
        self.stage = 0
        self.sub_stage = 0
        self.post_message(None)

    # ── Stepping ─────────────────────────────────────────────────────────────

    def _enter(self, stage: Stage) -> None:
        if stage.factory is not None and not stage.algorithms:
            stage.algorithms = stage.factory()

    def do_step(self) -> Message:
        """Run the current step once on every algorithm."""
        stage, sub_stage = self.stage, self.sub_stage
        current = self.stages[stage]
        self._enter(current)
        step, msg = current.steps[sub_stage]
        algorithms = current.algorithms
        message = msg(algorithms[0]) if callable(msg) and algorithms else msg
        done = True
        for algo in algorithms:
            result = step(algo)
            done = done and (result is None or bool(result))
        if done or not algorithms:
            step_progress = 1.0
        else:
            step_progress = min(sum(algo.progress for algo in algorithms) / len(algorithms), 1.0)
        progress = max(self._progress, (sub_stage + step_progress) / len(current.steps))
        self._progress = progress
        event: Message = {
            "stage": stage,
            "subStage": sub_stage,
            "name": current.name,
            "message": message if isinstance(message, str) else "",
            "progress": progress,
            "done": done,
        }
        if current.outputs[sub_stage] and current.data is not None:
            event["_output"] = (current, sub_stage)
        if done:
            self.sub_stage += 1
            if self.sub_stage == len(current.steps):
                self.stage += 1
                self.sub_stage = 0
                self._progress = 0.0
        return event

    def _resolve_preload(self) -> None:
        pending, self.preload = self.preload, []
        for future in wait(pending).done:
            exc = future.exception()
            if exc is not None:
                logger.error("Preload failed: %s", exc)

    def update(self) -> bool:
        """Run steps for one time slice and post one message.

        Returns whether more work remains.
        """
        if not self.busy:
            return False
        if self.preload:
            self._resolve_preload()
        deadline = self.last_update + self.update_delta
        stage = self.stage
        try:
            while True:
                event = self.do_step()
                if event["done"] or self.clock() >= deadline:
                    break
        except Exception as exc:
            logger.exception("Stage %d failed", stage)
            name = self.stages[stage].name
            self.stages = []
            self.stage = 0
            self.sub_stage = 0
            self.post_message({
                "stage": stage, "name": name, "progress": 1.0, "done": True,
                "error": f"{type(exc).__name__}: {exc}",
            })
            return False
        now = self.clock()
        output = event.pop("_output", None)
        if output is not None and (event["done"] or now >= self.last_transfer + self.transfer_delta):
            current, sub_stage = output
            current.data(current.algorithms, event, sub_stage)
            self.last_transfer = now
        self.post_message(event)
        self.last_update = now
        return self.busy

    def run(self) -> None:
        """Run every stage to completion in the calling thread."""
        while self.update():
            pass
