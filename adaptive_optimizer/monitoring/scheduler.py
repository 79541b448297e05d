"""
Background periodic tasks.

Each task owns its thread and its stop event, so stopping or failing one
task never affects another, and nothing here is tied to a request.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs a callback every ``interval_seconds`` on a daemon thread."""

    def __init__(self, name: str, interval_seconds: float, callback: Callable[[], None]):
        if interval_seconds <= 0:
            raise ValueError(f"Interval for task {name} must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.runs = 0
        self.failures = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            logger.warning(f"Task {self.name} is already running")
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"adaptive-optimizer-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Started task {self.name} (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Task {self.name} did not stop within {timeout}s")
        self._thread = None
        logger.info(f"Stopped task {self.name}")

    def run_once(self) -> bool:
        """
        Run one cycle. A failing cycle is logged and does not stop the task.

        Returns:
            bool: True when the cycle completed
        """
        try:
            self.callback()
            self.runs += 1
            return True
        except Exception as e:
            self.failures += 1
            logger.exception(f"Task {self.name} cycle failed: {e}")
            return False

    def _loop(self):
        while not self._stop.wait(self.interval_seconds):
            self.run_once()


class TaskScheduler:
    """Owns a set of named periodic tasks."""

    def __init__(self):
        self._tasks: Dict[str, PeriodicTask] = {}

    def add(self, name: str, interval_seconds: float, callback: Callable[[], None]) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Task {name} is already registered")
        task = PeriodicTask(name, interval_seconds, callback)
        self._tasks[name] = task
        return task

    def get(self, name: str) -> PeriodicTask:
        return self._tasks[name]

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    @property
    def is_running(self) -> bool:
        return any(task.is_running for task in self._tasks.values())

    def start(self):
        for task in self._tasks.values():
            task.start()

    def stop(self, timeout: Optional[float] = 5.0):
        for task in self._tasks.values():
            task.stop(timeout)

    def run_all_once(self) -> Dict[str, bool]:
        return {name: task.run_once() for name, task in self._tasks.items()}
