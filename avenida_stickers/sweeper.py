"""Background removal of expired temporary personalized stickers."""

import logging
import threading
from typing import Callable, Dict, Optional

DEFAULT_SWEEP_INTERVAL_SECONDS = 3600


class ExpirySweeper:
    """Runs ``sweep`` once at start and then on a fixed interval.

    Uses a daemon thread so it never blocks process shutdown. A sweep that
    is requested while another one is still running is skipped.
    """

    def __init__(
        self,
        sweep: Callable[[], Dict],
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self._sweep = sweep
        self.interval_seconds = interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_lock.locked()

    @property
    def is_started(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def run_once(self) -> Optional[Dict]:
        if not self._sweep_lock.acquire(blocking=False):
            self.logger.warning("Expiry sweep already in progress, skipping this run")
            return None
        try:
            return self._sweep()
        finally:
            self._sweep_lock.release()

    def _scheduled_run(self):
        try:
            self.run_once()
        except Exception as exc:
            # keep the schedule alive, the next tick retries
            self.logger.error("Scheduled expiry sweep failed: %s", exc)

    def _run(self):
        self._scheduled_run()
        while not self._stop_event.wait(self.interval_seconds):
            self._scheduled_run()

    def start(self):
        if self.is_started:
            self.logger.warning("Expiry sweeper already running")
            return
        self.logger.info(
            "Scheduling expiry sweep every %s seconds", self.interval_seconds
        )
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="expiry-sweeper", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        if not self._thread:
            return
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        self.logger.info("Expiry sweeper stopped")
