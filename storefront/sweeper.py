from __future__ import annotations

import threading
from typing import Optional

import structlog

from .inventory import ReservationManager
from .tracking import capture_exception

logger = structlog.get_logger(__name__)


class ReservationSweeper:
    """Background thread releasing expired holds every ``interval`` seconds.

    ``stop()`` wakes the thread immediately; ``pause()`` keeps the thread
    alive but skips sweeps until ``resume()``.
    """

    def __init__(self, reservations: ReservationManager, interval: float = 300) -> None:
        self._reservations = reservations
        self.interval = interval
        self._stop = threading.Event()
        self._paused = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps = 0
        self.last_released: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reservation-sweeper", daemon=True)
        self._thread.start()
        logger.info("sweeper_started", interval=self.interval)

    def stop(self, timeout: float = 5) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
            logger.info("sweeper_stopped", sweeps=self.sweeps)

    def pause(self) -> None:
        self._paused.set()
        logger.info("sweeper_paused")

    def resume(self) -> None:
        self._paused.clear()
        logger.info("sweeper_resumed")

    def run_once(self) -> int:
        released = self._reservations.cleanup_expired_reservations()
        self.sweeps += 1
        self.last_released = released
        return released

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self._paused.is_set():
                continue
            try:
                self.run_once()
            except Exception as exc:
                # Keep the thread alive; the next tick tries again.
                logger.exception("sweep_failed")
                capture_exception(exc, operation="reservation_sweep")
