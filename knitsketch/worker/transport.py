"""
Background thread hosting an :class:`~knitsketch.worker.iterative.IterativeWorker`.

The host talks to the thread by message only.  A dict (re)starts the
computation with the stages built by *on_message*; ``None`` cancels it and
is acknowledged with a ``None`` message.  Everything crossing the thread
boundary is deep-copied, so the host and the worker never share state.
"""

from __future__ import annotations

import copy
import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Optional, Sequence

from .iterative import IterativeWorker, Message, Stage

logger = logging.getLogger(__name__)

_STOP = object()


class WorkerThread:
    """Runs the worker in a daemon thread, between inbox messages."""

    def __init__(
        self,
        on_message: Callable[[Message, list[Stage]], list[Stage]],
        callback: Callable[[Optional[Message]], None],
        preload: Sequence[Future] = (),
    ) -> None:
        self.on_message = on_message
        self.callback = callback
        self.inbox: queue.Queue = queue.Queue()
        self.worker = IterativeWorker(self._post, preload)
        self.thread = threading.Thread(target=self._loop, name="knitsketch-worker", daemon=True)
        self._started = False

    def start(self) -> WorkerThread:
        if not self._started:
            self.thread.start()
            self._started = True
        return self

    def post(self, message: Optional[Message]) -> None:
        """Send a host message: a dict restarts, ``None`` cancels."""
        self.inbox.put(copy.deepcopy(message))

    def close(self, timeout: Optional[float] = None) -> None:
        self.inbox.put(_STOP)
        if self._started:
            self.thread.join(timeout)

    def __enter__(self) -> WorkerThread:
        return self.start()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ── Thread side ──────────────────────────────────────────────────────────

    def _post(self, message: Optional[Message]) -> None:
        self.callback(copy.deepcopy(message))

    def _receive(self, message: Optional[Message]) -> None:
        if message is None:
            logger.debug("Worker cancelled")
            self.worker.cancel()
            return
        self.worker.update_delta = message.get("updateDelta", self.worker.update_delta)
        self.worker.transfer_delta = message.get("transferDelta", self.worker.transfer_delta)
        try:
            stages = self.on_message(message, self.worker.stages)
        except Exception as exc:
            logger.exception("Invalid worker message")
            self._post({"stage": 0, "progress": 1.0, "done": True, "error": f"{type(exc).__name__}: {exc}"})
            return
        self.worker.start(stages)

    def _loop(self) -> None:
        while True:
            try:
                message = self.inbox.get(block=not self.worker.busy)
            except queue.Empty:
                self.worker.update()
                continue
            if message is _STOP:
                break
            self._receive(message)
