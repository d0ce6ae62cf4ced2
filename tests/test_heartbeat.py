import threading
import time

import pytest

from apps.exporter.heartbeat import VisibilityHeartbeat


class CountingExtender:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.calls: list[tuple[str, int]] = []
        self.fail = fail
        self.delay = delay
        self._lock = threading.Lock()

    def extend(self, message_handle: str, seconds: int) -> None:
        with self._lock:
            self.calls.append((message_handle, seconds))
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ConnectionError("queue unreachable")

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.calls)


@pytest.fixture
def extender():
    return CountingExtender()


@pytest.fixture
def heartbeat(extender):
    hb = VisibilityHeartbeat(extender, interval=0.05, buffer=60)
    yield hb
    hb.shutdown(timeout=1.0)


def test_renews_repeatedly_with_interval_plus_buffer(heartbeat, extender):
    handle = heartbeat.start("1700000000000-0")
    time.sleep(0.35)
    handle.cancel()

    assert extender.count >= 3
    assert all(call == ("1700000000000-0", 60) for call in extender.calls)


def test_no_renewals_after_cancel(heartbeat, extender):
    handle = heartbeat.start("1700000000000-0")
    time.sleep(0.2)

    assert handle.cancel() is True
    time.sleep(0.1)
    settled = extender.count
    time.sleep(0.3)

    assert extender.count == settled
    assert handle.cancelled
    assert heartbeat.active_count == 0


def test_cancel_is_idempotent(heartbeat):
    handle = heartbeat.start("1700000000000-0")

    assert handle.cancel() is True
    assert handle.cancel() is False


def test_failed_renewal_does_not_stop_schedule():
    extender = CountingExtender(fail=True)
    hb = VisibilityHeartbeat(extender, interval=0.05, buffer=60)
    try:
        handle = hb.start("1700000000000-0")
        time.sleep(0.35)
        handle.cancel()
    finally:
        hb.shutdown(timeout=1.0)

    assert extender.count >= 3


def test_heartbeats_are_independent(heartbeat, extender):
    first = heartbeat.start("1-0")
    second = heartbeat.start("2-0")
    time.sleep(0.2)
    first.cancel()
    time.sleep(0.1)
    first_calls = sum(1 for handle, _ in extender.calls if handle == "1-0")
    time.sleep(0.2)
    second.cancel()

    assert sum(1 for handle, _ in extender.calls if handle == "1-0") == first_calls
    assert sum(1 for handle, _ in extender.calls if handle == "2-0") >= 3


def test_shutdown_cancels_outstanding_heartbeats(extender):
    hb = VisibilityHeartbeat(extender, interval=0.05, buffer=60)
    handle = hb.start("1700000000000-0")
    time.sleep(0.1)

    assert hb.shutdown(timeout=1.0) is True
    assert handle.cancelled
    settled = extender.count
    time.sleep(0.2)
    assert extender.count == settled

    with pytest.raises(RuntimeError):
        hb.start("1700000000000-1")


def test_shutdown_is_bounded_when_renewal_hangs():
    extender = CountingExtender(delay=1.0)
    hb = VisibilityHeartbeat(extender, interval=0.05, buffer=60)
    hb.start("1700000000000-0")
    time.sleep(0.15)

    started = time.monotonic()
    drained = hb.shutdown(timeout=0.1)

    assert drained is False
    assert time.monotonic() - started < 0.8


def test_interval_must_be_positive(extender):
    with pytest.raises(ValueError):
        VisibilityHeartbeat(extender, interval=0)
