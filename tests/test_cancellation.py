import threading
import time

import pytest

from cancellation import CancelToken, RunDeadlineExceeded, SyncCancelled


class _Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_check_raises_after_cancel():
    token = CancelToken()
    token.check()
    token.cancel()
    assert token.cancelled
    with pytest.raises(SyncCancelled):
        token.check()


def test_deadline_is_enforced_by_check():
    clock = _Clock()
    token = CancelToken(timeout_seconds=10, clock=clock)
    clock.now = 9.5
    token.check()
    assert token.remaining() == pytest.approx(0.5)
    clock.now = 10.0
    with pytest.raises(RunDeadlineExceeded):
        token.check()


def test_no_deadline_means_no_remaining():
    assert CancelToken().remaining() is None


def test_sleep_wakes_early_on_cancel():
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()
    started = time.monotonic()
    with pytest.raises(SyncCancelled):
        token.sleep(30)
    assert time.monotonic() - started < 5


def test_sleep_never_outlasts_the_deadline():
    token = CancelToken(timeout_seconds=0.05)
    started = time.monotonic()
    with pytest.raises(RunDeadlineExceeded):
        token.sleep(30)
    assert time.monotonic() - started < 5
