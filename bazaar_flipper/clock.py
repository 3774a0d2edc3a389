# bazaar_flipper/clock.py
import time
from typing import Callable, Optional


class Clock:
    """
    Resumable stopwatch: `pause()` freezes the elapsed time, `start()` picks
    it up where it left off, `stop()` zeroes it.
    """
    def __init__(self, time_source: Callable[[], float] = time.monotonic):
        self._now = time_source
        self._started_at: Optional[float] = None
        self._accumulated = 0.0

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    def start(self):
        if self._started_at is None:
            self._started_at = self._now()

    def pause(self):
        if self._started_at is not None:
            self._accumulated += self._now() - self._started_at
            self._started_at = None

    def stop(self):
        self._started_at = None
        self._accumulated = 0.0

    def elapsed(self) -> float:
        """Seconds spent running."""
        if self._started_at is None:
            return self._accumulated
        return self._accumulated + self._now() - self._started_at
