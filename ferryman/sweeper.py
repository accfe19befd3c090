"""Background cleanup timers."""

from __future__ import annotations

import threading
from collections.abc import Callable

from .logger import get_logger

logger = get_logger("sweeper")


class PeriodicSweeper:
    """Runs a cleanup callable every ``interval`` seconds in a daemon thread.

    Example:
        >>> sweeper = PeriodicSweeper("cache", cache.cleanup, interval=60)
        >>> sweeper.start()
        >>> sweeper.stop()
    """

    def __init__(self, name: str, task: Callable[[], object], interval: float) -> None:
        self.name = name
        self.task = task
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"ferryman-sweep-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> None:
        """Run the task now, logging rather than raising any failure."""
        try:
            self.task()
        except Exception:
            logger.exception("Sweep %s failed", self.name)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()
