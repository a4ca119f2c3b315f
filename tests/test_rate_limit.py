from __future__ import annotations

import threading

import pytest

from fakes import FakeClock
from heated_crawler.domain.entities import RateLimitInfo
from heated_crawler.domain.errors import CrawlCancelled, RateLimitError
from heated_crawler.infrastructure.rate_limit import RateLimitTracker


def _tracker(clock: FakeClock, **kwargs) -> RateLimitTracker:
    return RateLimitTracker(sleep=clock.sleep, clock=clock, **kwargs)


def test_unknown_quota_never_waits() -> None:
    clock = FakeClock()
    tracker = _tracker(clock)

    for _ in range(10):
        tracker.acquire("core")

    assert clock.sleeps == []
    assert tracker.snapshot("core") is None


def test_acquire_spends_local_quota() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock)
    tracker.update(RateLimitInfo(resource="core", limit=5000, remaining=2, reset_at=2000.0))

    tracker.acquire("core")
    tracker.acquire("core")

    assert tracker.snapshot("core").remaining == 0
    assert clock.sleeps == []

    tracker.acquire("core")

    assert clock.sleeps == [1001]
    assert tracker.waits == 1
    assert tracker.snapshot("core").remaining is None


def test_buffer_keeps_calls_in_reserve() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock, buffer=5)
    tracker.update(RateLimitInfo(resource="graphql", remaining=5, reset_at=1010.0))

    tracker.acquire("graphql")

    assert clock.sleeps == [11]


def test_resources_are_tracked_separately() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock)
    tracker.mark_exhausted("graphql", 1100.0)

    tracker.acquire("core")

    assert clock.sleeps == []


def test_fail_fast_raises_with_reset_time() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock, wait=False)
    tracker.mark_exhausted("core", 1200.0)

    with pytest.raises(RateLimitError) as excinfo:
        tracker.acquire("core")

    assert excinfo.value.reset_at == 1200.0
    assert "resets at" in str(excinfo.value)
    assert clock.sleeps == []


def test_reset_beyond_max_wait_raises() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock, max_wait=60)
    tracker.mark_exhausted("core", 5000.0)

    with pytest.raises(RateLimitError):
        tracker.acquire("core")
    assert clock.sleeps == []


def test_passed_reset_does_not_wait() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock)
    tracker.mark_exhausted("core", 900.0)

    tracker.acquire("core")

    assert clock.sleeps == []


def test_exhausted_without_reset_time_raises() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock)
    tracker.mark_exhausted("core", None)

    with pytest.raises(RateLimitError):
        tracker.acquire("core")


def test_reported_quota_never_rises_within_a_reset_window() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock)
    tracker.update(RateLimitInfo(resource="core", remaining=2, reset_at=1500.0))

    tracker.acquire("core")
    tracker.acquire("core")
    tracker.update(RateLimitInfo(resource="core", remaining=0, reset_at=1500.0))
    # Response of the first call arrives last
    tracker.update(RateLimitInfo(resource="core", remaining=1, reset_at=1500.0))

    assert tracker.snapshot("core").remaining == 0
    tracker.acquire("core")
    assert clock.sleeps == [501]


def test_report_after_reset_replaces_quota() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock)
    tracker.update(RateLimitInfo(resource="core", remaining=1, reset_at=1500.0))
    clock.now = 1600.0

    tracker.update(RateLimitInfo(resource="core", remaining=4999, reset_at=5200.0))

    assert tracker.snapshot("core").remaining == 4999


def test_secondary_block_survives_primary_quota_report() -> None:
    clock = FakeClock(now=1000.0)
    tracker = _tracker(clock)
    tracker.mark_exhausted("core", 1060.0)

    tracker.update(RateLimitInfo(resource="core", remaining=4000, reset_at=4600.0))
    tracker.acquire("core")

    assert clock.sleeps == [61]


def test_stop_signal_cancels_instead_of_waiting() -> None:
    clock = FakeClock(now=1000.0)
    stop = threading.Event()
    stop.set()
    tracker = _tracker(clock, stop_event=stop)
    tracker.mark_exhausted("core", 1200.0)

    with pytest.raises(CrawlCancelled):
        tracker.acquire("core")
    assert clock.sleeps == []


def test_stop_signal_during_wait_cancels() -> None:
    stop = threading.Event()
    tracker = RateLimitTracker(clock=lambda: 1000.0, stop_event=stop)
    tracker.mark_exhausted("core", 1200.0)
    timer = threading.Timer(0.05, stop.set)
    timer.start()

    with pytest.raises(CrawlCancelled):
        tracker.acquire("core")
    timer.join()


def test_other_workers_are_not_blocked_while_one_waits() -> None:
    clock = FakeClock(now=1000.0)
    reported = []

    def sleep(seconds: float) -> None:
        worker = threading.Thread(
            target=lambda: reported.append(tracker.snapshot("graphql")),
        )
        worker.start()
        worker.join(5)
        clock.sleep(seconds)

    tracker = RateLimitTracker(sleep=sleep, clock=clock)
    tracker.mark_exhausted("core", 1100.0)

    tracker.acquire("core")

    assert reported == [None]
    assert clock.sleeps == [101]
