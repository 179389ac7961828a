"""Tests for the iterative stage scheduler."""

import logging
from concurrent.futures import Future

import pytest

from knitsketch.worker.iterative import IterativeWorker, Stage


class Counter:
    """Fake algorithm finishing after *n* steps."""

    def __init__(self, n):
        self.n = n
        self.count = 0

    @property
    def progress(self):
        return self.count / self.n

    def step(self):
        if self.count < self.n:
            self.count += 1
        return self.count >= self.n


class StillClock:
    """Never advances: every update runs its step to completion."""

    def __call__(self):
        return 0.0


class TickClock:
    """Advances one second per call: every update runs a single step."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 1.0
        return self.now


def _worker(clock=None, **kwargs):
    messages = []
    worker = IterativeWorker(messages.append, clock=clock or StillClock(), **kwargs)
    return worker, messages


class TestLockStep:
    def test_steps_wait_for_every_algorithm(self):
        a, b = Counter(2), Counter(3)
        finished = []
        stage = Stage(
            algorithms=[a, b],
            steps=[(lambda x: x.step(), "counting"), (finished.append, "finishing")],
            name="count",
        )
        worker, messages = _worker()
        worker.start([stage])
        assert worker.update()
        assert a.count == 2 and b.count == 3
        assert not worker.update()
        assert finished == [a, b]
        assert [(m["stage"], m["subStage"], m["progress"], m["done"]) for m in messages] == [
            (0, 0, 0.5, True),
            (0, 1, 1.0, True),
        ]
        assert [m["message"] for m in messages] == ["counting", "finishing"]
        assert {m["name"] for m in messages} == {"count"}

    def test_message_function_sees_first_algorithm(self):
        stage = Stage(algorithms=[Counter(1)], steps=[(lambda x: x.step(), lambda x: f"count {x.count}")])
        worker, messages = _worker()
        worker.start([stage])
        worker.run()
        assert messages[0]["message"] == "count 0"

    def test_stages_run_in_order(self):
        first, second = Counter(1), Counter(1)
        stages = [
            Stage(algorithms=[first], steps=[(lambda x: x.step(), "a")], name="first"),
            Stage(algorithms=[second], steps=[(lambda x: x.step(), "b")], name="second"),
        ]
        worker, messages = _worker()
        worker.start(stages)
        worker.run()
        assert [m["name"] for m in messages] == ["first", "second"]
        assert [m["stage"] for m in messages] == [0, 1]
        assert not worker.busy

    def test_stage_without_algorithms_completes(self):
        worker, messages = _worker()
        worker.start([Stage(steps=[(lambda x: x.step(), "nothing")])])
        worker.run()
        assert messages[-1]["done"]
        assert messages[-1]["progress"] == 1.0

    def test_output_flags_must_match_steps(self):
        with pytest.raises(ValueError, match="one output flag per step"):
            Stage(steps=[(lambda x: True, "a")], outputs=[True, False], name="bad")


class TestProgress:
    def test_progress_per_update(self):
        worker, messages = _worker(TickClock())
        worker.start([Stage(algorithms=[Counter(4)], steps=[(lambda x: x.step(), "counting")])])
        worker.run()
        assert [m["progress"] for m in messages] == [0.25, 0.5, 0.75, 1.0]
        assert [m["done"] for m in messages] == [False, False, False, True]

    def test_progress_never_decreases(self):
        class Wobbly:
            def __init__(self):
                self.values = [0.5, 0.2, 0.4]
                self.progress = 0.0

            def step(self):
                if not self.values:
                    return True
                self.progress = self.values.pop(0)
                return False

        worker, messages = _worker(TickClock())
        worker.start([Stage(algorithms=[Wobbly()], steps=[(lambda x: x.step(), "wobbling")])])
        worker.run()
        progress = [m["progress"] for m in messages]
        assert progress == sorted(progress)
        assert progress[-1] == 1.0

    def test_progress_spans_every_step(self):
        worker, messages = _worker()
        worker.start([Stage(
            algorithms=[Counter(1)],
            steps=[(lambda x: x.step(), "a"), (lambda x: True, "b"), (lambda x: True, "c"), (lambda x: True, "d")],
        )])
        worker.run()
        assert [m["progress"] for m in messages] == [0.25, 0.5, 0.75, 1.0]

    def test_progress_restarts_with_each_stage(self):
        stages = [
            Stage(algorithms=[Counter(1)], steps=[(lambda x: x.step(), "a")]),
            Stage(algorithms=[Counter(2)], steps=[(lambda x: x.step(), "b")]),
        ]
        worker, messages = _worker(TickClock())
        worker.start(stages)
        worker.run()
        assert [(m["stage"], m["progress"]) for m in messages] == [(0, 1.0), (1, 0.5), (1, 1.0)]


class TestErrors:
    def test_error_message_names_the_stage(self, caplog):
        def explode(_):
            raise ValueError("boom")

        stages = [
            Stage(algorithms=[Counter(1)], steps=[(lambda x: x.step(), "a")], name="first"),
            Stage(algorithms=[Counter(1)], steps=[(explode, "b")], name="second"),
        ]
        worker, messages = _worker()
        worker.start(stages)
        with caplog.at_level(logging.ERROR, logger="knitsketch.worker.iterative"):
            worker.run()
        error = messages[-1]
        assert error["stage"] == 1
        assert error["name"] == "second"
        assert error["error"] == "ValueError: boom"
        assert error["done"] and error["progress"] == 1.0
        assert not worker.busy
        assert "Stage 1 failed" in caplog.text

    def test_no_update_after_error(self):
        def explode(_):
            raise RuntimeError("stop")

        worker, messages = _worker()
        worker.start([Stage(algorithms=[Counter(1)], steps=[(explode, "a")])])
        assert not worker.update()
        assert not worker.update()
        assert len(messages) == 1


class TestOutputs:
    @staticmethod
    def _stage(counter):
        def data(algorithms, message, index):
            message["count"] = algorithms[0].count

        return Stage(
            algorithms=[counter],
            steps=[(lambda x: x.step(), "counting")],
            outputs=[True],
            data=data,
        )

    def test_snapshot_on_completion(self):
        worker, messages = _worker()
        worker.start([self._stage(Counter(3))])
        worker.run()
        assert messages[-1]["count"] == 3

    def test_snapshots_are_rate_limited(self):
        worker, messages = _worker(TickClock(), transfer_delta=100.0)
        worker.start([self._stage(Counter(5))])
        worker.run()
        assert [m.get("count") for m in messages] == [1, None, None, None, 5]
        assert not any("_output" in m for m in messages)

    def test_no_snapshot_without_output_flag(self):
        stage = self._stage(Counter(2))
        stage.outputs = [False]
        worker, messages = _worker()
        worker.start([stage])
        worker.run()
        assert "count" not in messages[-1]


class TestLifecycle:
    def test_factory_builds_algorithms_on_entry(self):
        built = []

        def factory():
            built.append(Counter(2))
            return list(built)

        stage = Stage(steps=[(lambda x: x.step(), "counting")], factory=factory)
        worker, _ = _worker()
        worker.start([stage])
        assert built == []
        worker.run()
        assert len(built) == 1
        assert stage.algorithms == built
        assert built[0].count == 2

    def test_cancel_posts_none(self):
        worker, messages = _worker(TickClock())
        worker.start([Stage(algorithms=[Counter(10)], steps=[(lambda x: x.step(), "counting")])])
        worker.update()
        worker.cancel()
        assert messages[-1] is None
        assert not worker.busy
        assert not worker.update()

    def test_restart_replaces_stages(self):
        worker, messages = _worker(TickClock())
        worker.start([Stage(algorithms=[Counter(10)], steps=[(lambda x: x.step(), "slow")], name="slow")])
        worker.update()
        worker.start([Stage(algorithms=[Counter(1)], steps=[(lambda x: x.step(), "fast")], name="fast")])
        worker.run()
        assert messages[-1]["name"] == "fast"
        assert messages[-1]["progress"] == 1.0

    def test_preload_is_awaited(self, caplog):
        ok, failed = Future(), Future()
        ok.set_result("ready")
        failed.set_exception(OSError("missing"))
        worker, messages = _worker(preload=[ok, failed])
        worker.start([Stage(algorithms=[Counter(1)], steps=[(lambda x: x.step(), "a")])])
        with caplog.at_level(logging.ERROR, logger="knitsketch.worker.iterative"):
            worker.run()
        assert worker.preload == []
        assert messages[-1]["done"]
        assert "Preload failed: missing" in caplog.text
