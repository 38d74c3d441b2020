"""
Direct Ingest – cancellable, deadline-aware waiting for report polling.
"""

import threading
import time
from typing import Optional


class SyncCancelled(Exception):
    pass


class RunDeadlineExceeded(Exception):
    pass


class CancelToken:
    """Shared by everything in one sync run. cancel() wakes any sleeper immediately."""

    def __init__(self, timeout_seconds: Optional[float] = None, clock=time.monotonic):
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout_seconds if timeout_seconds else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def check(self) -> None:
        if self._event.is_set():
            raise SyncCancelled("sync run cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise RunDeadlineExceeded("sync run exceeded its wall-clock ceiling")

    def sleep(self, seconds: float) -> None:
        """Wait up to `seconds`, never past the run deadline; raise if cancelled or out of time."""
        self.check()
        remaining = self.remaining()
        wait_for = seconds if remaining is None else min(seconds, remaining)
        if wait_for > 0:
            self._event.wait(wait_for)
        self.check()
