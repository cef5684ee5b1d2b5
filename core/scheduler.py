"""
Background scheduler: periodic tick and connectivity checks.

Runs on one daemon thread so a missed wakeup never matters: tick() pays
every day that is due whenever it finally runs.
"""

import logging
import threading
import time
from typing import Optional

import config

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Drives an engine's tick() and sync_now() on fixed intervals.

    Args:
        engine: A started StreakGuardEngine.
        tick_interval: Seconds between ticks.
        connectivity_interval: Seconds between connectivity checks / retries.
        poll_seconds: How often the loop wakes to look at the schedule.
    """

    def __init__(
        self,
        engine,
        tick_interval: float = config.TICK_INTERVAL_SECONDS,
        connectivity_interval: float = config.CONNECTIVITY_CHECK_INTERVAL_SECONDS,
        poll_seconds: float = 1.0,
    ) -> None:
        self.engine = engine
        self.tick_interval = tick_interval
        self.connectivity_interval = connectivity_interval
        self.poll_seconds = poll_seconds
        self.should_stop: threading.Event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self._next_tick = 0.0
        self._next_check = 0.0

    @property
    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self.should_stop.clear()
        now = time.monotonic()
        # First tick right away; first connectivity check after one interval
        self._next_tick = now
        self._next_check = now + self.connectivity_interval
        self.thread = threading.Thread(target=self._loop, name="streakguard-scheduler", daemon=True)
        self.thread.start()
        logger.info(
            f"Scheduler started (tick every {self.tick_interval}s, "
            f"connectivity every {self.connectivity_interval}s)"
        )

    def stop(self, timeout: float = 5.0) -> None:
        self.should_stop.set()
        if self.thread is not None:
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning("Scheduler thread did not stop in time")
        self.thread = None
        logger.info("Scheduler stopped")

    def run_pending(self, now: Optional[float] = None) -> None:
        """Run whatever is due at monotonic time `now`."""
        now = time.monotonic() if now is None else now
        if now >= self._next_tick:
            self._next_tick = now + self.tick_interval
            result = self.engine.tick()
            if not result.get("success"):
                logger.warning(f"Scheduled tick failed: {result.get('error')}")
        if now >= self._next_check:
            self._next_check = now + self.connectivity_interval
            self.engine.sync_now()

    def _loop(self) -> None:
        while not self.should_stop.is_set():
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Scheduler iteration failed: {e}", exc_info=True)
            self.should_stop.wait(self.poll_seconds)
