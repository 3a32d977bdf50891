from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from tripcal.config_manager import ConfigManager
from tripcal.models import SyncResult
from tripcal.sync_engine import SyncEngine

logger = logging.getLogger("tripcal.scheduler")

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_STOPPED = "stopped"


class SyncScheduler:
    """Runs sync passes on a fixed cadence, never more than one at a time.

    A stop request is honoured between passes only; a pass already running
    is allowed to finish.
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        interval_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._pass_lock = threading.Lock()
        self._state = STATE_IDLE
        self.last_result: SyncResult | None = None

    @property
    def state(self) -> str:
        return self._state

    def _interval(self) -> int:
        if self.interval_seconds is not None:
            return max(1, int(self.interval_seconds))
        return max(1, int(self.config_manager.load().sync.interval_seconds))

    def run_once(self, trigger: str = "manual") -> SyncResult | None:
        """Run one pass, or return None when another pass is still in flight."""
        if not self._pass_lock.acquire(blocking=False):
            logger.info("Pass still running; %s tick skipped", trigger)
            return None
        try:
            self._state = STATE_RUNNING
            result = self.sync_engine.run_once(trigger=trigger)
            self.last_result = result
            return result
        finally:
            self._state = STATE_STOPPED if self._stop_event.is_set() else STATE_IDLE
            self._pass_lock.release()

    def run_forever(self) -> None:
        self.run_once(trigger="startup")
        next_tick = self._clock() + self._interval()

        while not self._stop_event.is_set():
            manual = self._manual_trigger_event.wait(timeout=max(0.0, next_tick - self._clock()))
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self.run_once(trigger="manual")
                continue
            self.run_once(trigger="scheduled")
            interval = self._interval()
            next_tick += interval
            now = self._clock()
            if now >= next_tick:
                missed = int((now - next_tick) // interval) + 1
                logger.info("Pass overran the interval; skipping %d tick(s)", missed)
                next_tick += missed * interval
        self._state = STATE_STOPPED
        logger.info("Scheduler stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="tripcal-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def request_stop(self) -> None:
        """Signal-safe stop: only sets flags, never joins."""
        self._stop_event.set()
        self._manual_trigger_event.set()

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()
