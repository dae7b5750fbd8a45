"""Cancellable periodic scheduler built on ``threading.Event``."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicRunner:
    """Call ``func`` every ``interval_seconds`` on a daemon thread.

    ``stop`` wakes the wait immediately, so shutdown never sleeps out the
    interval. Exceptions raised by ``func`` are logged and the loop goes on.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], object],
        *,
        run_immediately: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"{name}: interval must be > 0, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.run_immediately = run_immediately
        self.runs = 0
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("%s did not stop within %.1fs", self.name, timeout)
        self._thread = None

    def run_now(self) -> object:
        """Run one iteration synchronously, serialized with the loop."""

        with self._lock:
            self.runs += 1
            return self.func()

    def _loop(self) -> None:
        if self.run_immediately:
            self._safe_run()
        while not self._stop.wait(self.interval_seconds):
            self._safe_run()

    def _safe_run(self) -> None:
        try:
            self.run_now()
        except Exception:  # noqa: BLE001
            logger.exception("%s iteration failed", self.name)
