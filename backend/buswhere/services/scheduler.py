"""Cancellable periodic tasks.

`ThreadScheduler` drives the running service with `threading.Timer`;
`VirtualScheduler` runs the same callbacks against a manually advanced
clock so timer-driven behaviour can be stepped deterministically.
"""
import heapq
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle for a periodic callback. `cancel()` is idempotent."""

    def __init__(self, period: float, callback: Callable[[], None]):
        if period <= 0:
            raise ValueError("period must be positive")
        self.period = period
        self.callback = callback
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def run_once(self) -> None:
        if self.cancelled:
            return
        try:
            self.callback()
        except Exception as e:
            logger.error(f"Scheduled task failed: {str(e)}", exc_info=True)


class Scheduler(ABC):
    @abstractmethod
    def schedule(self, period: float, callback: Callable[[], None]) -> ScheduledTask:
        ...


class _ThreadTask(ScheduledTask):
    def __init__(self, period: float, callback: Callable[[], None]):
        super().__init__(period, callback)
        self._lock = threading.Lock()
        self._timer = None

    def start(self) -> None:
        with self._lock:
            if self.cancelled:
                return
            self._timer = threading.Timer(self.period, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        self.run_once()
        self.start()

    def cancel(self) -> None:
        with self._lock:
            super().cancel()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class ThreadScheduler(Scheduler):
    """Runs each task on a chain of daemon `threading.Timer` threads."""

    def schedule(self, period: float, callback: Callable[[], None]) -> ScheduledTask:
        task = _ThreadTask(period, callback)
        task.start()
        return task


class VirtualScheduler(Scheduler):
    """Scheduler whose clock only moves when `advance()` is called."""

    def __init__(self):
        self.now = 0.0
        self._queue: List[Tuple[float, int, ScheduledTask]] = []
        self._counter = itertools.count()

    def schedule(self, period: float, callback: Callable[[], None]) -> ScheduledTask:
        task = ScheduledTask(period, callback)
        heapq.heappush(self._queue, (self.now + period, next(self._counter), task))
        return task

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every due task in time order."""
        target = self.now + seconds
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, task = heapq.heappop(self._queue)
            if task.cancelled:
                continue
            self.now = due
            task.run_once()
            fired += 1
            if not task.cancelled:
                heapq.heappush(self._queue, (due + task.period, next(self._counter), task))
        self.now = target
        return fired

    @property
    def pending(self) -> int:
        return sum(1 for _, _, task in self._queue if not task.cancelled)
