"""Deferred work for retries and the demo progression clock.

Production runs tasks on ``threading.Timer`` threads. Tests and deterministic demos use
``ManualScheduler``, which queues tasks until ``run_due``/``run_all`` is called.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Delays (seconds) before each attempt. The first entry applies to attempt one."""

    delays: tuple[float, ...]

    @property
    def max_attempts(self) -> int:
        return len(self.delays)

    def delay_before(self, attempt: int) -> float | None:
        if attempt < 1 or attempt > len(self.delays):
            return None
        return self.delays[attempt - 1]


# First POS attempt right away in the background, then three retries over ~1 minute.
POS_SUBMIT_POLICY = RetryPolicy(delays=(0.0, 5.0, 15.0, 40.0))
# First courier attempt happens inline; retries cover roughly five minutes.
COURIER_DISPATCH_POLICY = RetryPolicy(delays=(0.0, 10.0, 20.0, 40.0, 80.0, 150.0))


class TaskScheduler(Protocol):
    def call_later(self, delay_seconds: float, fn: Callable[[], None], *, name: str) -> None: ...

    def shutdown(self) -> None: ...


def _run_task(name: str, fn: Callable[[], None]) -> None:
    try:
        fn()
    except Exception:
        # Background tasks have no caller to report to.
        logger.exception("Background task failed", task=name)


class ThreadScheduler:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: set[threading.Timer] = set()
        self._closed = False

    def call_later(self, delay_seconds: float, fn: Callable[[], None], *, name: str) -> None:
        def _fire() -> None:
            with self._lock:
                self._timers.discard(timer)
            _run_task(name, fn)

        timer = threading.Timer(max(0.0, delay_seconds), _fire)
        timer.daemon = True
        timer.name = f"courant-{name}"
        with self._lock:
            if self._closed:
                logger.warning("Scheduler closed, dropping task", task=name)
                return
            self._timers.add(timer)
        timer.start()

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class ManualScheduler:
    """Virtual-time scheduler. Nothing runs until the owner advances the clock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queue: list[tuple[float, int, str, Callable[[], None]]] = []
        self._seq = itertools.count()
        self.now = 0.0

    def call_later(self, delay_seconds: float, fn: Callable[[], None], *, name: str) -> None:
        with self._lock:
            heapq.heappush(
                self._queue, (self.now + max(0.0, delay_seconds), next(self._seq), name, fn)
            )

    @property
    def pending(self) -> list[str]:
        with self._lock:
            return [name for _, _, name, _ in sorted(self._queue)]

    def run_due(self, advance_seconds: float = 0.0) -> int:
        """Advance virtual time and run every task due by then, including ones they enqueue."""

        with self._lock:
            self.now += advance_seconds
        ran = 0
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > self.now:
                    return ran
                _, _, name, fn = heapq.heappop(self._queue)
            _run_task(name, fn)
            ran += 1

    def run_all(self, max_tasks: int = 1000) -> int:
        ran = 0
        while ran < max_tasks:
            with self._lock:
                if not self._queue:
                    return ran
                self.now = max(self.now, self._queue[0][0])
            ran += self.run_due()
        return ran

    def shutdown(self) -> None:
        with self._lock:
            self._queue.clear()
