"""Non-overlapping periodic tasks."""

from __future__ import annotations

import threading
from collections.abc import Callable

from futures_trading.utils.logging import get_logger


class PeriodicTask:
    """Runs ``func`` on a daemon thread, waiting ``interval`` between runs.

    The wait starts only after a run finishes, so a slow run delays the next
    one instead of overlapping it. ``trigger()`` runs the function on the
    caller's thread and is skipped if a run is already in progress.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object]) -> None:
        self._name = name
        self._interval = interval
        self._func = func
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._logger = get_logger("futures_trading.engine.scheduler")
        self.runs = 0
        self.skipped = 0
        self.last_error: str | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop. Returns False if it was already running.

        A loop that was told to stop but is still finishing a run is joined
        before the new loop starts.
        """
        thread = self._thread
        if thread is not None and thread.is_alive():
            if not self._stop_event.is_set():
                return False
            if thread is threading.current_thread():
                self._stop_event.clear()
                self._logger.info("task_resumed", task=self._name)
                return True
            thread.join()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self._name)
        self._thread.start()
        self._logger.info("task_started", task=self._name, interval_sec=self._interval)
        return True

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to exit; optionally wait for the current run."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and timeout is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._logger.info("task_stopped", task=self._name)

    def trigger(self) -> bool:
        """Run once now. Returns False if a run was already in progress."""
        if not self._run_lock.acquire(blocking=False):
            self.skipped += 1
            self._logger.warning("task_run_skipped", task=self._name, reason="still_running")
            return False
        try:
            self._run()
        finally:
            self._run_lock.release()
        return True

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.trigger()
            self._stop_event.wait(timeout=self._interval)

    def _run(self) -> None:
        self.runs += 1
        try:
            self._func()
            self.last_error = None
        except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
            self.last_error = str(exc)
            self._logger.exception("task_run_failed", task=self._name, error=str(exc))
