"""
Retry helpers for xrelay.

- Backoff: exponential delay used by watchers when a subscription drops.
- RetryDriver: timer thread that re-drives complete-but-unforwarded entries.
"""

import logging
import threading
from typing import Optional

log = logging.getLogger(__name__)


class Backoff:
    """Exponential backoff: initial, initial*factor, ... capped at maximum."""

    def __init__(self, initial: float = 1.0, maximum: float = 60.0, factor: float = 2.0):
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.failures = 0

    def next_delay(self) -> float:
        """Delay before the next attempt; counts one more failure."""
        delay = min(self.maximum, self.initial * (self.factor ** self.failures))
        self.failures += 1
        return delay

    def reset(self):
        self.failures = 0


def retry_spacing(attempts: int, interval: float, maximum: float) -> float:
    """Minimum seconds between forwarding attempts for an entry with `attempts` failures."""
    if attempts <= 0:
        return 0.0
    return min(maximum, interval * (2 ** (attempts - 1)))


class RetryDriver:
    """
    Periodically calls coordinator.retry_pending().

    Runs in a daemon thread; errors are logged and the loop keeps going.
    """

    def __init__(self, coordinator, interval: float = 30.0):
        self.coordinator = coordinator
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start retry loop in background thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retry-driver", daemon=True)
        self._thread.start()
        log.info(f"Retry driver started (every {self.interval}s)")

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Retry driver stopped")

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.coordinator.retry_pending()
            except Exception as e:
                log.error(f"Retry driver error: {e}")
