"""
Job Scheduler
=============
Keyed one-shot timers. Scheduling a key that is already pending
replaces the earlier job; cancelling an unknown or finished key is a
no-op.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from carealert.models import as_utc, utcnow

logger = logging.getLogger(__name__)


class JobScheduler:
    """Runs callables once at a given UTC time on timer threads.

    Args:
        timer_factory: ``(delay_seconds, callback) -> timer`` where the
            timer has ``start()`` and ``cancel()``. Defaults to
            ``threading.Timer``; tests pass a manual timer.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        timer_factory: Callable = threading.Timer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._timer_factory = timer_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, object] = {}
        self._running = True

    def schedule_at(self, key: str, when: datetime, func: Callable[[], None]) -> None:
        delay = max(0.0, (as_utc(when) - self._clock()).total_seconds())
        self.schedule_in(key, delay, func)

    def schedule_in(self, key: str, delay_seconds: float, func: Callable[[], None]) -> None:
        with self._lock:
            if not self._running:
                logger.warning("Scheduler stopped; job %s not scheduled.", key)
                return
            previous = self._jobs.pop(key, None)
            if previous is not None:
                previous.cancel()

            timer = self._timer_factory(delay_seconds, lambda: self._run(key, timer, func))
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._jobs[key] = timer
        timer.start()
        logger.debug("Job %s scheduled in %.1fs.", key, delay_seconds)

    def cancel(self, key: str) -> bool:
        with self._lock:
            timer = self._jobs.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        logger.debug("Job %s cancelled.", key)
        return True

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def shutdown(self) -> None:
        with self._lock:
            self._running = False
            timers = list(self._jobs.values())
            self._jobs.clear()
        for timer in timers:
            timer.cancel()
        logger.info("Scheduler shut down (%d job(s) dropped).", len(timers))

    def _run(self, key: str, timer: object, func: Callable[[], None]) -> None:
        with self._lock:
            # A replaced job must not remove its successor.
            if self._jobs.get(key) is timer:
                del self._jobs[key]
        try:
            func()
        except Exception:
            logger.exception("Scheduled job %s failed.", key)
